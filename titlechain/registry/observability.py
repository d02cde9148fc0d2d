"""
Titlechain Observability

Structured logging and a tamper-evident audit trail for the transfer core.

Every log record is emitted as one JSON object per line carrying the
correlation id of the review action being processed, the registry layer
that produced it, and any structured context passed as keyword arguments:

    logger.info("Certificate minted", operation="mint", transfer_id=txn_id)

Audit events are hash-chained: each event's digest covers the previous
digest, so removing or editing an event breaks every later link.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import contextvars
import hashlib
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, List, Optional, TypeVar

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RegistryLayer(Enum):
    """Registry layers for categorization."""
    ASSET = "asset"
    TRANSFER = "transfer"
    STORE = "store"
    CERTIFICATE = "certificate"
    ANCHOR = "anchor"
    COORDINATOR = "coordinator"
    RECONCILER = "reconciler"
    REGISTRATION = "registration"
    ACTIONS = "actions"
    CONFIG = "config"
    CLI = "cli"
    AUDIT = "audit"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                correlation_id=correlation_id_var.get(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                duration_ms=getattr(record, "duration_ms", None),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            # Resolved per record so pytest's capsys/capfd replacement is honoured.
            stream = self.stream or sys.stderr
            stream.write(event.to_json() + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


class TextHandler(logging.Handler):
    """Human-oriented single-line handler used when log_format is ``text``."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            ctx = getattr(record, "context", {}) or {}
            extras = " ".join(f"{k}={v}" for k, v in sorted(ctx.items()))
            line = f"{record.levelname.lower():8s} {record.name}: {record.getMessage()}"
            if extras:
                line = f"{line} [{extras}]"
            stream = self.stream or sys.stderr
            stream.write(line + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


_root_lock = threading.Lock()
_root_configured = False


def configure_logging(level: str = "info", fmt: str = "json", stream: Any = None) -> None:
    """Install the registry handler on the ``titlechain`` logger tree."""
    global _root_configured
    root = logging.getLogger("titlechain")
    with _root_lock:
        for h in list(root.handlers):
            root.removeHandler(h)
        handler: logging.Handler = StructuredHandler(stream) if fmt == "json" else TextHandler(stream)
        root.addHandler(handler)
        root.setLevel(getattr(logging, level.upper()))
        root.propagate = False
        _root_configured = True


def _ensure_configured() -> None:
    if not _root_configured:
        configure_logging()


class RegistryLogger:
    """
    Structured logger for registry components.

    Automatically includes the correlation id and layer in all log events.
    """

    def __init__(self, name: str, layer: RegistryLayer):
        _ensure_configured()
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"titlechain.{layer.value}.{name}")

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion."""
        level = logging.INFO if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=round(duration_ms, 3),
            **context,
        )


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Get the current correlation ID, minting one if unset."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str, layer: RegistryLayer) -> RegistryLogger:
    return RegistryLogger(name, layer)


T = TypeVar("T")


def timed_operation(
    logger: RegistryLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator


class AuditAction(Enum):
    """Actions recorded on the audit trail."""
    TRANSFER_INITIATE = "TRANSFER_INITIATE"
    TRANSFER_DOCUMENTS = "TRANSFER_DOCUMENTS"
    TRANSFER_REVIEW_START = "TRANSFER_REVIEW_START"
    TRANSFER_APPROVE = "TRANSFER_APPROVE"
    TRANSFER_REJECT = "TRANSFER_REJECT"
    TRANSFER_COMPLETE = "TRANSFER_COMPLETE"
    TRANSFER_FORCE_REJECT = "TRANSFER_FORCE_REJECT"
    TRANSFER_RETRY = "TRANSFER_RETRY"
    ASSET_DIGITIZE = "ASSET_DIGITIZE"
    ASSET_VERIFY = "ASSET_VERIFY"
    ASSET_CERTIFY = "ASSET_CERTIFY"
    ASSET_LIST = "ASSET_LIST"
    ASSET_UNLIST = "ASSET_UNLIST"
    ASSET_DISPUTE = "ASSET_DISPUTE"
    ASSET_RESOLVE = "ASSET_RESOLVE"


@dataclass
class AuditEvent:
    """Audit event for the registry trail."""
    event_id: str
    timestamp: str
    actor_id: str
    action: str
    resource_type: str
    resource_id: str
    outcome: str  # success, failure, denied
    correlation_id: str = ""
    previous_hash: str = ""
    event_hash: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AuditLogger:
    """
    Append-only audit logging.

    Generates tamper-evident audit trail with hash chaining.
    """

    GENESIS = "genesis"

    def __init__(self, logger: Optional[RegistryLogger] = None):
        self._logger = logger or get_logger("audit", RegistryLayer.AUDIT)
        self._last_hash: str = self.GENESIS
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    @staticmethod
    def _compute_hash(event: AuditEvent, previous_hash: str) -> str:
        body = event.to_dict()
        body.pop("event_hash", None)
        data = json.dumps(body, sort_keys=True, default=str) + previous_hash
        return hashlib.sha256(data.encode()).hexdigest()

    def log(
        self,
        actor_id: str,
        action: AuditAction,
        resource_type: str,
        resource_id: str,
        outcome: str = "success",
        **details: Any,
    ) -> AuditEvent:
        """Append an audit event to the chain."""
        event = AuditEvent(
            event_id=uuid.uuid4().hex,
            timestamp=datetime.now(timezone.utc).isoformat(),
            actor_id=actor_id,
            action=action.value,
            resource_type=resource_type,
            resource_id=resource_id,
            outcome=outcome,
            correlation_id=get_correlation_id(),
            details=details,
        )

        with self._lock:
            event.previous_hash = self._last_hash
            event.event_hash = self._compute_hash(event, self._last_hash)
            self._last_hash = event.event_hash
            self._events.append(event)

        self._logger.info(
            f"AUDIT: {action.value} on {resource_type}/{resource_id}",
            operation="audit",
            **event.to_dict(),
        )
        return event

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)

    def verify_chain(self) -> bool:
        """Recompute every link and report whether the chain is intact."""
        previous = self.GENESIS
        for event in self.events:
            if event.previous_hash != previous:
                return False
            if self._compute_hash(event, previous) != event.event_hash:
                return False
            previous = event.event_hash
        return True
