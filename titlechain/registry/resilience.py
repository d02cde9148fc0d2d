"""
Titlechain Resilience Patterns

Fault tolerance around the two external collaborators of the transfer core:

    CircuitBreaker   Wraps ledger submission. While open, calls fail fast and
                     the anchor reports ``Unavailable``.
    RetryPolicy      Wraps content-store writes inside the certificate minter,
                     with exponential backoff and jitter.
    Timeout          Bounds the wait for a ledger receipt. Expiry is reported
                     as ``Unconfirmed`` so a reconciliation pass can retry.

Usage
─────

    breaker = CircuitBreaker("ledger-submit", failure_threshold=5)
    with breaker:
        tx_hash = client.submit(call, gas_limit)

    retry = RetryPolicy(max_attempts=3, retryable_exceptions=(StoreUnavailable,))
    digest = retry.execute(lambda: store.store(data, name))

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import concurrent.futures
import functools
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Callable, Optional, TypeVar

T = TypeVar("T")


# ════════════════════════════════════════════════════════════════════════════
# CIRCUIT BREAKER
# ════════════════════════════════════════════════════════════════════════════


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = auto()      # Normal operation, requests pass through
    OPEN = auto()        # Circuit tripped, requests fail fast
    HALF_OPEN = auto()   # Testing if service recovered


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration."""
    failure_threshold: int = 5
    success_threshold: int = 1
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 1
    excluded_exceptions: tuple = ()


@dataclass
class CircuitBreakerMetrics:
    """Circuit breaker metrics."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_transitions: int = 0
    consecutive_failures: int = 0
    consecutive_successes: int = 0


class CircuitBreakerError(Exception):
    """Raised when circuit breaker is open."""
    def __init__(self, breaker_name: str, state: CircuitState, message: str = ""):
        self.breaker_name = breaker_name
        self.state = state
        super().__init__(message or f"Circuit breaker '{breaker_name}' is {state.name}")


class CircuitBreaker:
    """
    Circuit breaker pattern implementation.

    Transitions between CLOSED (normal), OPEN (failing fast), and HALF_OPEN
    (testing recovery) states. Exceptions listed in ``excluded_exceptions``
    pass through without counting as failures; the anchor uses this so an
    explicit ledger refusal does not trip the breaker.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        success_threshold: int = 1,
        timeout_seconds: float = 30.0,
        half_open_max_calls: int = 1,
        excluded_exceptions: tuple = (),
        on_state_change: Optional[Callable[[CircuitState, CircuitState], None]] = None,
    ):
        self.name = name
        self.config = CircuitBreakerConfig(
            failure_threshold=failure_threshold,
            success_threshold=success_threshold,
            timeout_seconds=timeout_seconds,
            half_open_max_calls=half_open_max_calls,
            excluded_exceptions=excluded_exceptions,
        )
        self._state = CircuitState.CLOSED
        self._metrics = CircuitBreakerMetrics()
        self._lock = threading.RLock()
        self._last_state_change = datetime.now(timezone.utc)
        self._half_open_calls = 0
        self._on_state_change = on_state_change

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._check_state_timeout()
            return self._state

    @property
    def metrics(self) -> CircuitBreakerMetrics:
        with self._lock:
            return CircuitBreakerMetrics(**vars(self._metrics))

    def _check_state_timeout(self) -> None:
        if self._state == CircuitState.OPEN:
            elapsed = (datetime.now(timezone.utc) - self._last_state_change).total_seconds()
            if elapsed >= self.config.timeout_seconds:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state != new_state:
            self._state = new_state
            self._last_state_change = datetime.now(timezone.utc)
            self._metrics.state_transitions += 1

            if new_state == CircuitState.HALF_OPEN:
                self._half_open_calls = 0
                self._metrics.consecutive_successes = 0
            elif new_state == CircuitState.CLOSED:
                self._metrics.consecutive_failures = 0

            if self._on_state_change:
                self._on_state_change(old_state, new_state)

    def _record_success(self) -> None:
        with self._lock:
            self._metrics.total_calls += 1
            self._metrics.successful_calls += 1
            self._metrics.consecutive_successes += 1
            self._metrics.consecutive_failures = 0

            if self._state == CircuitState.HALF_OPEN:
                if self._metrics.consecutive_successes >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)

    def _record_failure(self, exc: BaseException) -> None:
        with self._lock:
            if isinstance(exc, self.config.excluded_exceptions):
                # Not a health signal, but it did reach the service.
                self._record_success()
                return

            self._metrics.total_calls += 1
            self._metrics.failed_calls += 1
            self._metrics.consecutive_failures += 1
            self._metrics.consecutive_successes = 0

            if self._state == CircuitState.CLOSED:
                if self._metrics.consecutive_failures >= self.config.failure_threshold:
                    self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)

    def _acquire(self) -> bool:
        with self._lock:
            self._check_state_timeout()

            if self._state == CircuitState.CLOSED:
                return True
            elif self._state == CircuitState.OPEN:
                self._metrics.rejected_calls += 1
                return False
            if self._half_open_calls < self.config.half_open_max_calls:
                self._half_open_calls += 1
                return True
            self._metrics.rejected_calls += 1
            return False

    def __enter__(self):
        if not self._acquire():
            raise CircuitBreakerError(self.name, self._state)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self._record_failure(exc_val)
        else:
            self._record_success()
        return False

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        """Decorator for circuit breaker protection."""
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            with self:
                return func(*args, **kwargs)
        return wrapper

    def reset(self) -> None:
        """Reset circuit breaker to closed state."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._metrics = CircuitBreakerMetrics()


# ════════════════════════════════════════════════════════════════════════════
# RETRY POLICY
# ════════════════════════════════════════════════════════════════════════════


class BackoffStrategy(Enum):
    """Retry backoff strategies."""
    FIXED = auto()
    EXPONENTIAL = auto()
    EXPONENTIAL_JITTER = auto()


@dataclass
class RetryMetrics:
    """Retry metrics."""
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    retries_exhausted: int = 0
    total_retry_delay_seconds: float = 0.0


class RetryExhaustedError(Exception):
    """Raised when all retry attempts are exhausted."""
    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Retry exhausted after {attempts} attempts: {last_exception}")


class RetryPolicy:
    """
    Retry policy with configurable backoff strategies.

    Only exceptions in ``retryable_exceptions`` are retried; anything else is
    re-raised on the first occurrence.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_seconds: float = 0.2,
        max_delay_seconds: float = 5.0,
        backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER,
        jitter_factor: float = 0.5,
        retryable_exceptions: tuple = (Exception,),
        on_retry: Optional[Callable[[int, Exception, float], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.backoff_strategy = backoff_strategy
        self.jitter_factor = jitter_factor
        self.retryable_exceptions = retryable_exceptions
        self._metrics = RetryMetrics()
        self._lock = threading.Lock()
        self._on_retry = on_retry
        self._sleep = sleep

    @property
    def metrics(self) -> RetryMetrics:
        with self._lock:
            return RetryMetrics(**vars(self._metrics))

    def _calculate_delay(self, attempt: int) -> float:
        base = self.base_delay_seconds
        if self.backoff_strategy == BackoffStrategy.FIXED:
            delay = base
        elif self.backoff_strategy == BackoffStrategy.EXPONENTIAL:
            delay = base * (2 ** (attempt - 1))
        else:
            exp_delay = base * (2 ** (attempt - 1))
            delay = exp_delay + random.uniform(0, self.jitter_factor * exp_delay)
        return min(delay, self.max_delay_seconds)

    def execute(self, func: Callable[[], T]) -> T:
        """Execute function with retry policy."""
        last_exception: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            with self._lock:
                self._metrics.total_attempts += 1
            try:
                result = func()
                with self._lock:
                    self._metrics.successful_attempts += 1
                return result
            except Exception as e:
                last_exception = e
                with self._lock:
                    self._metrics.failed_attempts += 1

                if not isinstance(e, self.retryable_exceptions):
                    raise

                if attempt < self.max_attempts:
                    delay = self._calculate_delay(attempt)
                    with self._lock:
                        self._metrics.total_retry_delay_seconds += delay
                    if self._on_retry:
                        self._on_retry(attempt, e, delay)
                    self._sleep(delay)

        with self._lock:
            self._metrics.retries_exhausted += 1

        assert last_exception is not None
        raise RetryExhaustedError(self.max_attempts, last_exception)

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        return wrapper


# ════════════════════════════════════════════════════════════════════════════
# TIMEOUT
# ════════════════════════════════════════════════════════════════════════════


class OperationTimeout(Exception):
    """Raised when operation exceeds timeout."""
    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Operation '{operation}' timed out after {timeout_seconds}s")


class Timeout:
    """
    Hard upper bound on a blocking call.

    The call runs on a worker thread; if it has not returned after
    ``seconds`` the caller gets OperationTimeout immediately and the worker is
    abandoned rather than joined.
    """

    def __init__(self, seconds: float, name: str = "operation"):
        self.seconds = seconds
        self.name = name
        self.timed_out_calls = 0
        self._lock = threading.Lock()

    def execute(self, func: Callable[[], T]) -> T:
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"timeout-{self.name}"
        )
        try:
            future = executor.submit(func)
            try:
                return future.result(timeout=self.seconds)
            except concurrent.futures.TimeoutError:
                with self._lock:
                    self.timed_out_calls += 1
                raise OperationTimeout(self.name, self.seconds) from None
        finally:
            executor.shutdown(wait=False)

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        return wrapper
