"""
Asset Ledger Record

The off-chain authoritative record of one land asset: current holder, status,
listing flag and an append-only ownership history.

Ownership history is an arena-style log. The current holder is denormalized
onto the record (``holder_id``) and must always equal the holder of the one
history entry whose ``end`` is unset; every mutator below preserves that.

Status lifecycle:

    AVAILABLE ◀──────────▶ FOR_SALE
        │                     │
        └───────┬─────────────┘
                ▼
        UNDER_TRANSACTION ──(commit)──▶ AVAILABLE (new holder)
                │
                └──(reject/release)──▶ FOR_SALE | AVAILABLE

    any non-transaction state ◀──▶ DISPUTED

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import random
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from titlechain.registry.errors import Conflict, InvalidRequest, InvalidState


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# ENUMS
# =============================================================================

class AssetStatus(Enum):
    """Marketplace-visible status of an asset."""
    AVAILABLE = "AVAILABLE"
    FOR_SALE = "FOR_SALE"
    UNDER_TRANSACTION = "UNDER_TRANSACTION"
    SOLD = "SOLD"
    DISPUTED = "DISPUTED"


class VerificationStatus(Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


# =============================================================================
# IDENTIFIERS
# =============================================================================

_ALPHA_RE = re.compile(r"[^A-Za-z]")


def generate_asset_id(descriptors: Dict[str, Any], now_ms: Optional[int] = None) -> str:
    """
    Build an asset id from location descriptors.

    Two letters of the state, three of the district, the last six digits of
    the millisecond clock and three random digits. Descriptors without a
    usable state and district fall back to a ``LAND`` prefix.
    """
    state = _ALPHA_RE.sub("", str(descriptors.get("state") or ""))
    district = _ALPHA_RE.sub("", str(descriptors.get("district") or ""))
    if len(state) >= 2 and len(district) >= 3:
        prefix = f"{state[:2]}{district[:3]}"
    else:
        prefix = "LAND"
    clock = str(now_ms if now_ms is not None else int(time.time() * 1000))[-6:].rjust(6, "0")
    return f"{prefix}{clock}{random.randint(0, 999):03d}".upper()


# =============================================================================
# OWNERSHIP HISTORY
# =============================================================================

@dataclass
class OwnershipEntry:
    """One holder's tenure. ``end`` is None for the current holder."""
    holder_id: str
    holder_name: str
    start: str
    end: Optional[str] = None
    transfer_id: Optional[str] = None
    transfer_type: str = "INITIAL"
    amount: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.end is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "holder_id": self.holder_id,
            "holder_name": self.holder_name,
            "start": self.start,
            "end": self.end,
            "transfer_id": self.transfer_id,
            "transfer_type": self.transfer_type,
            "amount": self.amount,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "OwnershipEntry":
        return cls(
            holder_id=str(d["holder_id"]),
            holder_name=str(d.get("holder_name", "")),
            start=str(d["start"]),
            end=d.get("end"),
            transfer_id=d.get("transfer_id"),
            transfer_type=str(d.get("transfer_type", "INITIAL")),
            amount=d.get("amount"),
        )


# =============================================================================
# ASSET RECORD
# =============================================================================

@dataclass
class AssetRecord:
    """
    Working copy of an asset document.

    Instances are loaded from the document store, mutated through the methods
    below and written back with compare-and-swap by the asset repository.
    ``version`` is the concurrency token the record was read at.
    """
    asset_id: str
    holder_id: str
    holder_name: str
    added_by: str
    descriptors: Dict[str, Any] = field(default_factory=dict)
    status: AssetStatus = AssetStatus.AVAILABLE
    for_sale: bool = False
    asking_price: Optional[Decimal] = None
    listed_at: Optional[str] = None
    verification_status: VerificationStatus = VerificationStatus.PENDING
    verified_by: Optional[str] = None
    verified_at: Optional[str] = None
    verification_notes: str = ""
    digitized: bool = False
    base_certificate: Optional[Dict[str, Any]] = None
    ledger_registration_tx: Optional[str] = None
    ledger_pending_registration_tx: Optional[str] = None
    active_transfer_id: Optional[str] = None
    claimed_at: Optional[str] = None
    status_before_dispute: Optional[str] = None
    history: List[OwnershipEntry] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    version: int = 0

    # -------------------------------------------------------------------------
    # Invariants
    # -------------------------------------------------------------------------

    @property
    def current_entry(self) -> Optional[OwnershipEntry]:
        open_entries = [e for e in self.history if e.is_open]
        return open_entries[-1] if open_entries else None

    @property
    def last_transfer_id(self) -> Optional[str]:
        return self.history[-1].transfer_id if self.history else None

    @property
    def is_verified(self) -> bool:
        return self.verification_status == VerificationStatus.VERIFIED

    @property
    def in_transaction(self) -> bool:
        return self.status == AssetStatus.UNDER_TRANSACTION

    def invariant_violations(self) -> List[str]:
        """Return human-readable violations; empty when the record is sound."""
        problems: List[str] = []
        open_entries = [e for e in self.history if e.is_open]
        if len(open_entries) != 1:
            problems.append(f"expected exactly one open ownership entry, found {len(open_entries)}")
        elif self.history[-1] is not open_entries[0]:
            problems.append("open ownership entry is not the last history entry")
        elif open_entries[0].holder_id != self.holder_id:
            problems.append("current holder does not match the open ownership entry")
        if self.status == AssetStatus.UNDER_TRANSACTION and not self.active_transfer_id:
            problems.append("UNDER_TRANSACTION without an in-flight transfer")
        if self.active_transfer_id and self.status != AssetStatus.UNDER_TRANSACTION:
            problems.append("in-flight transfer pinned while not UNDER_TRANSACTION")
        return problems

    def assert_consistent(self) -> None:
        problems = self.invariant_violations()
        if problems:
            raise InvalidState(f"asset {self.asset_id} is inconsistent: {'; '.join(problems)}")

    # -------------------------------------------------------------------------
    # Transfer-coordinator mutators
    # -------------------------------------------------------------------------

    def claim(self, transfer_id: str, at: str) -> None:
        """Pin an in-flight transfer; fails if another one already holds the asset."""
        if self.active_transfer_id and self.active_transfer_id != transfer_id:
            raise Conflict(
                f"asset {self.asset_id} already has an in-flight transfer {self.active_transfer_id}"
            )
        if self.status == AssetStatus.DISPUTED:
            raise InvalidState(f"asset {self.asset_id} is under dispute")
        self.active_transfer_id = transfer_id
        self.claimed_at = at
        self.status = AssetStatus.UNDER_TRANSACTION

    def release(self, transfer_id: str) -> bool:
        """
        Unpin ``transfer_id`` and restore the listing status.

        Returns False without changing anything when a different transfer (or
        none) holds the asset.
        """
        if self.active_transfer_id != transfer_id:
            return False
        self.active_transfer_id = None
        self.claimed_at = None
        self.status = AssetStatus.FOR_SALE if self.for_sale else AssetStatus.AVAILABLE
        return True

    def transfer_holder(
        self,
        to_holder_id: str,
        to_holder_name: str,
        transfer_id: str,
        at: str,
        transfer_type: str,
        amount: Optional[Decimal] = None,
    ) -> None:
        """Close the current tenure and open one for the destination holder."""
        current = self.current_entry
        if current is None:
            raise InvalidState(f"asset {self.asset_id} has no current holder entry")
        current.end = at
        self.history.append(OwnershipEntry(
            holder_id=to_holder_id,
            holder_name=to_holder_name,
            start=at,
            transfer_id=transfer_id,
            transfer_type=transfer_type,
            amount=str(amount) if amount is not None else None,
        ))
        self.holder_id = to_holder_id
        self.holder_name = to_holder_name
        self.status = AssetStatus.AVAILABLE
        self.for_sale = False
        self.asking_price = None
        self.listed_at = None
        self.active_transfer_id = None
        self.claimed_at = None

    # -------------------------------------------------------------------------
    # Owner / registrar mutators
    # -------------------------------------------------------------------------

    def _require_owner_editable(self) -> None:
        if self.status == AssetStatus.UNDER_TRANSACTION:
            raise InvalidState(f"asset {self.asset_id} is under transaction")
        if self.status == AssetStatus.DISPUTED:
            raise InvalidState(f"asset {self.asset_id} is under dispute")

    def list_for_sale(self, price: Decimal, at: str) -> None:
        self._require_owner_editable()
        if not self.is_verified:
            raise InvalidState(f"asset {self.asset_id} is not verified")
        if price <= 0:
            raise InvalidRequest("asking price must be positive")
        self.for_sale = True
        self.asking_price = price
        self.listed_at = at
        self.status = AssetStatus.FOR_SALE

    def withdraw_listing(self) -> None:
        self._require_owner_editable()
        self.for_sale = False
        self.asking_price = None
        self.listed_at = None
        self.status = AssetStatus.AVAILABLE

    def mark_disputed(self) -> None:
        if self.status == AssetStatus.UNDER_TRANSACTION:
            raise InvalidState(f"asset {self.asset_id} is under transaction")
        if self.status == AssetStatus.DISPUTED:
            raise InvalidState(f"asset {self.asset_id} is already disputed")
        self.status_before_dispute = self.status.value
        self.status = AssetStatus.DISPUTED

    def resolve_dispute(self) -> None:
        if self.status != AssetStatus.DISPUTED:
            raise InvalidState(f"asset {self.asset_id} is not disputed")
        restored = AssetStatus(self.status_before_dispute or AssetStatus.AVAILABLE.value)
        if restored == AssetStatus.FOR_SALE and not self.for_sale:
            restored = AssetStatus.AVAILABLE
        self.status = restored
        self.status_before_dispute = None

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "holder_id": self.holder_id,
            "holder_name": self.holder_name,
            "added_by": self.added_by,
            "descriptors": self.descriptors,
            "status": self.status.value,
            "for_sale": self.for_sale,
            "asking_price": str(self.asking_price) if self.asking_price is not None else None,
            "listed_at": self.listed_at,
            "verification_status": self.verification_status.value,
            "verified_by": self.verified_by,
            "verified_at": self.verified_at,
            "verification_notes": self.verification_notes,
            "digitized": self.digitized,
            "base_certificate": self.base_certificate,
            "ledger_registration_tx": self.ledger_registration_tx,
            "ledger_pending_registration_tx": self.ledger_pending_registration_tx,
            "active_transfer_id": self.active_transfer_id,
            "claimed_at": self.claimed_at,
            "status_before_dispute": self.status_before_dispute,
            "history": [e.to_dict() for e in self.history],
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any], version: int = 0) -> "AssetRecord":
        price = d.get("asking_price")
        return cls(
            asset_id=str(d["asset_id"]),
            holder_id=str(d["holder_id"]),
            holder_name=str(d.get("holder_name", "")),
            added_by=str(d.get("added_by", "")),
            descriptors=dict(d.get("descriptors") or {}),
            status=AssetStatus(d.get("status", AssetStatus.AVAILABLE.value)),
            for_sale=bool(d.get("for_sale", False)),
            asking_price=Decimal(price) if price is not None else None,
            listed_at=d.get("listed_at"),
            verification_status=VerificationStatus(
                d.get("verification_status", VerificationStatus.PENDING.value)
            ),
            verified_by=d.get("verified_by"),
            verified_at=d.get("verified_at"),
            verification_notes=str(d.get("verification_notes", "")),
            digitized=bool(d.get("digitized", False)),
            base_certificate=d.get("base_certificate"),
            ledger_registration_tx=d.get("ledger_registration_tx"),
            ledger_pending_registration_tx=d.get("ledger_pending_registration_tx"),
            active_transfer_id=d.get("active_transfer_id"),
            claimed_at=d.get("claimed_at"),
            status_before_dispute=d.get("status_before_dispute"),
            history=[OwnershipEntry.from_dict(e) for e in d.get("history", [])],
            created_at=str(d.get("created_at", "")),
            version=version,
        )
