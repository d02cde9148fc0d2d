"""
Resilience pattern tests: circuit breaker, retry policy and timeout.
"""

import threading
import time

import pytest

from titlechain.registry.resilience import (
    BackoffStrategy,
    CircuitBreaker,
    CircuitBreakerError,
    CircuitState,
    OperationTimeout,
    RetryExhaustedError,
    RetryPolicy,
    Timeout,
)


class Refused(Exception):
    pass


def _fail(breaker, exc=ConnectionError):
    with pytest.raises(exc):
        with breaker:
            raise exc("boom")


class TestCircuitBreaker:

    def test_opens_at_threshold(self):
        breaker = CircuitBreaker("test", failure_threshold=3)
        for _ in range(3):
            _fail(breaker)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitBreakerError):
            with breaker:
                pass
        assert breaker.metrics.rejected_calls == 1

    def test_success_resets_consecutive_failures(self):
        breaker = CircuitBreaker("test", failure_threshold=2)
        _fail(breaker)
        with breaker:
            pass
        _fail(breaker)
        assert breaker.state == CircuitState.CLOSED

    def test_excluded_exceptions_do_not_count(self):
        breaker = CircuitBreaker("test", failure_threshold=1, excluded_exceptions=(Refused,))
        for _ in range(3):
            _fail(breaker, Refused)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.metrics.failed_calls == 0

    def test_half_open_probe(self):
        transitions = []
        breaker = CircuitBreaker(
            "test",
            failure_threshold=1,
            timeout_seconds=0.01,
            on_state_change=lambda old, new: transitions.append((old, new)),
        )
        _fail(breaker)
        time.sleep(0.02)
        assert breaker.state == CircuitState.HALF_OPEN

        with breaker:
            pass
        assert breaker.state == CircuitState.CLOSED
        assert transitions == [
            (CircuitState.CLOSED, CircuitState.OPEN),
            (CircuitState.OPEN, CircuitState.HALF_OPEN),
            (CircuitState.HALF_OPEN, CircuitState.CLOSED),
        ]

    def test_failed_probe_reopens(self):
        breaker = CircuitBreaker("test", failure_threshold=1, timeout_seconds=0.01)
        _fail(breaker)
        time.sleep(0.02)
        _fail(breaker)
        assert breaker._state == CircuitState.OPEN

    def test_decorator_and_reset(self):
        breaker = CircuitBreaker("test", failure_threshold=1)

        @breaker
        def call(x):
            if x < 0:
                raise ValueError(x)
            return x * 2

        assert call(2) == 4
        with pytest.raises(ValueError):
            call(-1)
        assert breaker.state == CircuitState.OPEN
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.metrics.total_calls == 0


class TestRetryPolicy:

    def _policy(self, **kwargs):
        delays = []
        kwargs.setdefault("sleep", delays.append)
        return RetryPolicy(**kwargs), delays

    def test_succeeds_after_transient_failures(self):
        policy, delays = self._policy(max_attempts=3, backoff_strategy=BackoffStrategy.EXPONENTIAL)
        outcomes = iter([ConnectionError("a"), ConnectionError("b"), "ok"])

        def call():
            outcome = next(outcomes)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        assert policy.execute(call) == "ok"
        assert delays == [0.2, 0.4]
        assert policy.metrics.successful_attempts == 1

    def test_exhaustion_wraps_last_exception(self):
        policy, delays = self._policy(max_attempts=2, retryable_exceptions=(ConnectionError,))

        def call():
            raise ConnectionError("down")

        with pytest.raises(RetryExhaustedError) as excinfo:
            policy.execute(call)
        assert excinfo.value.attempts == 2
        assert isinstance(excinfo.value.last_exception, ConnectionError)
        assert len(delays) == 1
        assert policy.metrics.retries_exhausted == 1

    def test_non_retryable_raises_immediately(self):
        policy, delays = self._policy(retryable_exceptions=(ConnectionError,))
        with pytest.raises(KeyError):
            policy.execute(lambda: {}["missing"])
        assert delays == []
        assert policy.metrics.total_attempts == 1

    def test_delay_is_capped(self):
        policy, _ = self._policy(base_delay_seconds=1.0, max_delay_seconds=3.0)
        for attempt in range(1, 8):
            assert policy._calculate_delay(attempt) <= 3.0

    def test_fixed_backoff_and_callback(self):
        seen = []
        policy, delays = self._policy(
            max_attempts=3,
            backoff_strategy=BackoffStrategy.FIXED,
            on_retry=lambda attempt, exc, delay: seen.append(attempt),
        )

        @policy
        def call():
            raise ConnectionError("x")

        with pytest.raises(RetryExhaustedError):
            call()
        assert delays == [0.2, 0.2]
        assert seen == [1, 2]

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestTimeout:

    def test_returns_result(self):
        assert Timeout(1.0).execute(lambda: 42) == 42

    def test_abandons_slow_call(self):
        release = threading.Event()
        bound = Timeout(0.05, name="slow")
        started = time.monotonic()
        try:
            with pytest.raises(OperationTimeout) as excinfo:
                bound.execute(lambda: release.wait(5))
        finally:
            release.set()
        assert time.monotonic() - started < 1.0
        assert excinfo.value.operation == "slow"
        assert bound.timed_out_calls == 1

    def test_propagates_worker_exceptions(self):
        @Timeout(1.0)
        def explode():
            raise ValueError("bad")

        with pytest.raises(ValueError, match="bad"):
            explode()
