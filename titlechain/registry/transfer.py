"""
Transfer Request

The authoritative record of one proposed ownership change and the durable
cursor of the approval saga.

State Machine:

    INITIATED ──▶ DOCUMENTS_SUBMITTED ──▶ UNDER_REVIEW ──▶ APPROVED ──▶ COMPLETED
        │                 │                    │              ┆
        └─────────────────┴────────────────────┴──▶ REJECTED ◀┘ (forced only)

APPROVED is reached only through an admin decision. From there the saga
advances on progress markers rather than on status:

    certificate set?  ──▶ ledger_tx_hash set?  ──▶ COMPLETED

The dotted edge is the one autonomous outcome: an approved request whose
source holder no longer holds the asset is force-rejected by the
coordinator. REJECTED and COMPLETED are terminal and immutable.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from titlechain.registry.asset import utc_now
from titlechain.registry.errors import InvalidState


# =============================================================================
# ENUMS
# =============================================================================

class TransferStatus(Enum):
    """Lifecycle states of a transfer request."""
    INITIATED = "INITIATED"
    DOCUMENTS_SUBMITTED = "DOCUMENTS_SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"

    def is_terminal(self) -> bool:
        return self in {TransferStatus.COMPLETED, TransferStatus.REJECTED}

    def allows_rejection(self) -> bool:
        """Admin rejection is only valid before approval."""
        return self in {
            TransferStatus.INITIATED,
            TransferStatus.DOCUMENTS_SUBMITTED,
            TransferStatus.UNDER_REVIEW,
        }


class TransferType(Enum):
    SALE = "SALE"
    TRANSFER = "TRANSFER"
    INHERITANCE = "INHERITANCE"
    GIFT = "GIFT"


class ReviewDecision(Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class TimelineEventType(Enum):
    INITIATED = "INITIATED"
    DOCUMENTS_UPLOADED = "DOCUMENTS_UPLOADED"
    REVIEW_STARTED = "REVIEW_STARTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CERTIFICATE_MINTED = "CERTIFICATE_MINTED"
    LEDGER_ANCHORED = "LEDGER_ANCHORED"
    COMPLETED = "COMPLETED"
    SAGA_DEFERRED = "SAGA_DEFERRED"


# Valid state transitions. APPROVED -> REJECTED is reachable only with
# forced=True (commit-time guard failure).
VALID_TRANSITIONS: Dict[TransferStatus, Set[TransferStatus]] = {
    TransferStatus.INITIATED: {
        TransferStatus.DOCUMENTS_SUBMITTED,
        TransferStatus.REJECTED,
    },
    TransferStatus.DOCUMENTS_SUBMITTED: {
        TransferStatus.DOCUMENTS_SUBMITTED,
        TransferStatus.UNDER_REVIEW,
        TransferStatus.REJECTED,
    },
    TransferStatus.UNDER_REVIEW: {
        TransferStatus.APPROVED,
        TransferStatus.REJECTED,
    },
    TransferStatus.APPROVED: {
        TransferStatus.COMPLETED,
    },
    TransferStatus.COMPLETED: set(),
    TransferStatus.REJECTED: set(),
}

FORCED_TRANSITIONS: Dict[TransferStatus, Set[TransferStatus]] = {
    TransferStatus.APPROVED: {TransferStatus.REJECTED},
}


def generate_transfer_id(now_ms: Optional[int] = None) -> str:
    """``TXN`` + last 8 digits of the millisecond clock + 4 random digits."""
    clock = str(now_ms if now_ms is not None else int(time.time() * 1000))[-8:].rjust(8, "0")
    return f"TXN{clock}{random.randint(0, 9999):04d}".upper()


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class TimelineEvent:
    event: TimelineEventType
    timestamp: str
    actor: str
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event.value,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TimelineEvent":
        return cls(
            event=TimelineEventType(d["event"]),
            timestamp=str(d["timestamp"]),
            actor=str(d.get("actor", "")),
            description=str(d.get("description", "")),
        )


@dataclass
class TransferDocument:
    """A supporting document stored in the content-addressed store."""
    document_type: str
    name: str
    content_hash: str
    url: str
    uploaded_by: str
    uploaded_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_type": self.document_type,
            "name": self.name,
            "content_hash": self.content_hash,
            "url": self.url,
            "uploaded_by": self.uploaded_by,
            "uploaded_at": self.uploaded_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TransferDocument":
        return cls(**{k: str(d[k]) for k in (
            "document_type", "name", "content_hash", "url", "uploaded_by", "uploaded_at"
        )})


@dataclass
class ReviewMetadata:
    reviewer_id: str
    reviewed_at: str
    decision: ReviewDecision
    comments: str = ""
    rejection_reason: Optional[str] = None
    forced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reviewer_id": self.reviewer_id,
            "reviewed_at": self.reviewed_at,
            "decision": self.decision.value,
            "comments": self.comments,
            "rejection_reason": self.rejection_reason,
            "forced": self.forced,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ReviewMetadata":
        return cls(
            reviewer_id=str(d["reviewer_id"]),
            reviewed_at=str(d["reviewed_at"]),
            decision=ReviewDecision(d["decision"]),
            comments=str(d.get("comments", "")),
            rejection_reason=d.get("rejection_reason"),
            forced=bool(d.get("forced", False)),
        )


@dataclass
class TransferRequest:
    """
    Working copy of a transfer document.

    The saga cursor is ``status`` plus three progress markers:
    ``certificate`` (mint done), ``ledger_pending_tx_hash`` (submitted,
    unconfirmed) and ``ledger_tx_hash`` (anchored).
    """
    transfer_id: str
    asset_id: str
    seller_id: str
    buyer_id: str
    amount: Decimal
    transfer_type: TransferType = TransferType.SALE
    status: TransferStatus = TransferStatus.INITIATED
    seller_name: str = ""
    buyer_name: str = ""
    chat_id: Optional[str] = None
    escrow_amount: Decimal = Decimal("0")
    documents: List[TransferDocument] = field(default_factory=list)
    review: Optional[ReviewMetadata] = None
    approved_at: Optional[str] = None
    certificate: Optional[Dict[str, Any]] = None
    ledger_pending_tx_hash: Optional[str] = None
    ledger_tx_hash: Optional[str] = None
    ledger_receipt: Optional[Dict[str, Any]] = None
    registration: Optional[Dict[str, Any]] = None
    completed_at: Optional[str] = None
    halted: bool = False
    last_error: Optional[Dict[str, Any]] = None
    saga_attempts: int = 0
    timeline: List[TimelineEvent] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    version: int = 0

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    @property
    def is_parked(self) -> bool:
        """Approved but not yet completed: a saga awaiting (re)drive."""
        return self.status == TransferStatus.APPROVED

    @property
    def saga_step(self) -> str:
        """Next saga step implied by the persisted markers."""
        if self.status == TransferStatus.COMPLETED:
            return "done"
        if self.status != TransferStatus.APPROVED:
            return "review"
        if not self.certificate:
            return "mint"
        if not self.ledger_tx_hash:
            return "anchor"
        return "commit"

    def can_transition_to(self, target: TransferStatus, forced: bool = False) -> bool:
        if target in VALID_TRANSITIONS.get(self.status, set()):
            return True
        return forced and target in FORCED_TRANSITIONS.get(self.status, set())

    def transition_to(self, target: TransferStatus, forced: bool = False) -> None:
        if not self.can_transition_to(target, forced=forced):
            raise InvalidState(
                f"transfer {self.transfer_id} cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def add_event(self, event: TimelineEventType, actor: str, description: str = "", at: Optional[str] = None) -> None:
        self.timeline.append(TimelineEvent(event, at or utc_now(), actor, description))

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.seller_id, self.buyer_id)

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transfer_id": self.transfer_id,
            "asset_id": self.asset_id,
            "seller_id": self.seller_id,
            "seller_name": self.seller_name,
            "buyer_id": self.buyer_id,
            "buyer_name": self.buyer_name,
            "amount": str(self.amount),
            "transfer_type": self.transfer_type.value,
            "status": self.status.value,
            "chat_id": self.chat_id,
            "escrow_amount": str(self.escrow_amount),
            "documents": [d.to_dict() for d in self.documents],
            "review": self.review.to_dict() if self.review else None,
            "approved_at": self.approved_at,
            "certificate": self.certificate,
            "ledger_pending_tx_hash": self.ledger_pending_tx_hash,
            "ledger_tx_hash": self.ledger_tx_hash,
            "ledger_receipt": self.ledger_receipt,
            "registration": self.registration,
            "completed_at": self.completed_at,
            "halted": self.halted,
            "last_error": self.last_error,
            "saga_attempts": self.saga_attempts,
            "timeline": [e.to_dict() for e in self.timeline],
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any], version: int = 0) -> "TransferRequest":
        review = d.get("review")
        return cls(
            transfer_id=str(d["transfer_id"]),
            asset_id=str(d["asset_id"]),
            seller_id=str(d["seller_id"]),
            seller_name=str(d.get("seller_name", "")),
            buyer_id=str(d["buyer_id"]),
            buyer_name=str(d.get("buyer_name", "")),
            amount=Decimal(str(d["amount"])),
            transfer_type=TransferType(d.get("transfer_type", TransferType.SALE.value)),
            status=TransferStatus(d.get("status", TransferStatus.INITIATED.value)),
            chat_id=d.get("chat_id"),
            escrow_amount=Decimal(str(d.get("escrow_amount", "0"))),
            documents=[TransferDocument.from_dict(x) for x in d.get("documents", [])],
            review=ReviewMetadata.from_dict(review) if review else None,
            approved_at=d.get("approved_at"),
            certificate=d.get("certificate"),
            ledger_pending_tx_hash=d.get("ledger_pending_tx_hash"),
            ledger_tx_hash=d.get("ledger_tx_hash"),
            ledger_receipt=d.get("ledger_receipt"),
            registration=d.get("registration"),
            completed_at=d.get("completed_at"),
            halted=bool(d.get("halted", False)),
            last_error=d.get("last_error"),
            saga_attempts=int(d.get("saga_attempts", 0)),
            timeline=[TimelineEvent.from_dict(x) for x in d.get("timeline", [])],
            created_at=str(d.get("created_at", "")),
            version=version,
        )
