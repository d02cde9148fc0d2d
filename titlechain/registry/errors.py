"""
Registry Error Taxonomy

Every failure the transfer core can report is a subclass of RegistryError and
carries two class-level facts:

    kind       Stable name surfaced to callers in ``{kind, message}`` payloads.
    retryable  Whether a reconciliation pass may re-drive the operation.

Retryable failures (Unavailable, Unconfirmed, StoreUnavailable) are recorded on
the transfer and retried later; everything else is surfaced immediately.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class RegistryError(Exception):
    """Base class for transfer-core failures."""

    kind: str = "RegistryError"
    retryable: bool = False

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class NotFound(RegistryError):
    """Referenced asset or transfer does not exist."""
    kind = "NotFound"


class InvalidState(RegistryError):
    """Illegal state transition attempted."""
    kind = "InvalidState"


class Unauthorized(RegistryError):
    """Actor lacks the authority or eligibility for the operation."""
    kind = "Unauthorized"


class Conflict(RegistryError):
    """Optimistic-concurrency violation or asset-holder mismatch."""
    kind = "Conflict"


class InvalidRequest(RegistryError):
    """Malformed or self-contradictory inbound request."""
    kind = "InvalidRequest"


class LedgerError(RegistryError):
    """Base class for failures reported by the ledger anchor."""
    kind = "LedgerError"

    def __init__(self, message: str, tx_hash: Optional[str] = None, **details: Any):
        self.tx_hash = tx_hash
        super().__init__(message, **details)


class Unconfirmed(LedgerError):
    """Submitted, but confirmation was not observed within the bounded wait."""
    kind = "Unconfirmed"
    retryable = True


class Rejected(LedgerError):
    """The ledger explicitly refused the call."""
    kind = "Rejected"


class Unavailable(LedgerError):
    """The call could not be submitted at all."""
    kind = "Unavailable"
    retryable = True


class StoreUnavailable(RegistryError):
    """The content-addressed certificate store could not be reached."""
    kind = "StoreUnavailable"
    retryable = True


ERROR_KINDS = {
    cls.kind: cls
    for cls in (
        NotFound,
        InvalidState,
        Unauthorized,
        Conflict,
        InvalidRequest,
        Unconfirmed,
        Rejected,
        Unavailable,
        StoreUnavailable,
    )
}


def error_from_dict(payload: Dict[str, Any]) -> RegistryError:
    """Rebuild an error recorded on a document (e.g. ``last_error``)."""
    cls = ERROR_KINDS.get(str(payload.get("kind", "")), RegistryError)
    return cls(str(payload.get("message", "")))
