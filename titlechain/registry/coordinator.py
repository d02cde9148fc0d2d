"""
Transfer Coordinator

Owns the ordering, idempotency and partial-failure recovery of ownership
transfers. Admin decisions arrive from independent, possibly concurrent
handlers; there is no global serialization, only per-document
compare-and-swap.

Approve saga (fixed order, each step idempotent):

    1. GUARD    asset holder == seller and the asset is pinned to this request
    2. MINT     certificate reference persisted on the request before step 3
    3. ANCHOR   ledger reference persisted on the request before step 4
    4. COMMIT   asset ownership flips, then the request becomes COMPLETED

The request document is the saga's durable cursor. ``resume`` re-drives from
the persisted markers; the guard is re-evaluated immediately before step 4.
No step holds anything on the asset document while waiting on the minter or
the ledger; only the commit touches it.

Retryable failures (StoreUnavailable, Unavailable, Unconfirmed) park the
request in APPROVED with ``last_error`` recorded and are returned as a
deferred outcome. A ledger ``Rejected`` halts the saga until an operator
retries it. A commit-time guard failure force-rejects the request.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional, Union

from titlechain.artifacts import ContentStore
from titlechain.registry.anchor import LedgerAnchor
from titlechain.registry.asset import AssetRecord, AssetStatus, utc_now
from titlechain.registry.certificate import CertificateMinter
from titlechain.registry.errors import (
    Conflict,
    InvalidRequest,
    InvalidState,
    NotFound,
    Rejected,
    RegistryError,
    StoreUnavailable,
    Unauthorized,
    Unavailable,
    Unconfirmed,
)
from titlechain.registry.identity import IdentityService
from titlechain.registry.observability import (
    AuditAction,
    AuditLogger,
    RegistryLayer,
    get_logger,
    timed_operation,
)
from titlechain.registry.repositories import AssetRepository, TransferRepository
from titlechain.registry.transfer import (
    ReviewDecision,
    ReviewMetadata,
    TimelineEventType,
    TransferDocument,
    TransferRequest,
    TransferStatus,
    TransferType,
    generate_transfer_id,
)


logger = get_logger("coordinator", RegistryLayer.COORDINATOR)

SYSTEM_ACTOR = "system"
CONFLICTING_TRANSFER_REASON = "conflicting transfer completed first"
HOLDER_CHANGED_REASON = "source holder no longer holds the asset"

PRE_APPROVAL = (
    TransferStatus.INITIATED,
    TransferStatus.DOCUMENTS_SUBMITTED,
    TransferStatus.UNDER_REVIEW,
)

_CENTS = Decimal("0.01")


@dataclass
class ChargeSchedule:
    """Escrow and registration charges applied to every transfer."""
    escrow_rate: Decimal = Decimal("0.10")
    stamp_duty_rate: Decimal = Decimal("0.05")
    registration_fee: Decimal = Decimal("1000")

    @classmethod
    def from_config(cls, config: Any) -> "ChargeSchedule":
        return cls(
            escrow_rate=config.transfer.escrow_rate.get(),
            stamp_duty_rate=config.transfer.stamp_duty_rate.get(),
            registration_fee=config.transfer.registration_fee.get(),
        )

    def escrow(self, amount: Decimal) -> Decimal:
        return (amount * self.escrow_rate).quantize(_CENTS, rounding=ROUND_HALF_UP)

    def stamp_duty(self, amount: Decimal) -> Decimal:
        return (amount * self.stamp_duty_rate).quantize(_CENTS, rounding=ROUND_HALF_UP)


@dataclass
class ReviewOutcome:
    """Result of a review action or a saga re-drive."""
    transfer: TransferRequest
    deferred: Optional[RegistryError] = None

    @property
    def status(self) -> TransferStatus:
        return self.transfer.status

    @property
    def completed(self) -> bool:
        return self.transfer.status == TransferStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.transfer.status.value,
            "transferRequest": self.transfer.to_dict(),
            "deferred": self.deferred.to_dict() if self.deferred else None,
        }


class TransferCoordinator:
    """
    Admission, review and saga execution for transfer requests.

    Example:
        coordinator = TransferCoordinator(assets, transfers, identity, minter, anchor)
        request = coordinator.open_transfer(asset_id, seller, buyer, Decimal("500000"))
        coordinator.submit_documents(request.transfer_id, buyer, [...])
        coordinator.begin_review(request.transfer_id, admin)
        outcome = coordinator.review_transfer(request.transfer_id, "APPROVE", admin)
    """

    def __init__(
        self,
        assets: AssetRepository,
        transfers: TransferRepository,
        identity: IdentityService,
        minter: CertificateMinter,
        anchor: LedgerAnchor,
        audit: Optional[AuditLogger] = None,
        charges: Optional[ChargeSchedule] = None,
        documents: Optional[ContentStore] = None,
        clock: Callable[[], str] = utc_now,
    ):
        self.assets = assets
        self.transfers = transfers
        self.identity = identity
        self.minter = minter
        self.anchor = anchor
        self.audit = audit or AuditLogger()
        self.charges = charges or ChargeSchedule()
        self.documents = documents or minter.store
        self.clock = clock

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    @timed_operation(logger, "open_transfer")
    def open_transfer(
        self,
        asset_id: str,
        seller_id: str,
        buyer_id: str,
        amount: Union[Decimal, str, int],
        transfer_type: Union[TransferType, str] = TransferType.SALE,
        chat_id: Optional[str] = None,
    ) -> TransferRequest:
        """
        Admit a new transfer request and pin the asset to it.

        The asset claim is the mutual-exclusion point: it is a compare-and-swap
        on the asset document, so two admissions racing for the same asset
        cannot both succeed.
        """
        try:
            amount = Decimal(str(amount))
        except ArithmeticError as e:
            raise InvalidRequest(f"invalid amount: {amount!r}") from e
        if not amount.is_finite() or amount <= 0:
            raise InvalidRequest("amount must be a positive number")
        try:
            ttype = TransferType(transfer_type) if not isinstance(transfer_type, TransferType) else transfer_type
        except ValueError as e:
            raise InvalidRequest(f"unknown transfer type: {transfer_type}") from e
        if seller_id == buyer_id:
            raise InvalidRequest("seller and buyer must be different parties")

        asset = self.assets.get(asset_id)
        if asset.holder_id != seller_id:
            raise InvalidRequest(f"{seller_id} is not the current holder of asset {asset_id}")
        for party in (seller_id, buyer_id):
            if not self.identity.is_eligible(party):
                raise Unauthorized(f"party {party} is not eligible to transfer title")
        if not asset.is_verified:
            raise InvalidState(f"asset {asset_id} is not verified")
        if not asset.digitized:
            raise InvalidState(f"asset {asset_id} has no base certificate")
        if asset.status == AssetStatus.DISPUTED:
            raise InvalidState(f"asset {asset_id} is under dispute")
        if ttype == TransferType.SALE and not asset.for_sale:
            raise InvalidState(f"asset {asset_id} is not listed for sale")

        open_requests = self.transfers.open_for_asset(asset_id)
        if open_requests:
            raise Conflict(
                f"asset {asset_id} already has an open transfer {open_requests[0].transfer_id}"
            )

        transfer_id = self._new_transfer_id()
        now = self.clock()
        asset.claim(transfer_id, now)
        self.assets.save(asset)

        request = TransferRequest(
            transfer_id=transfer_id,
            asset_id=asset_id,
            seller_id=seller_id,
            seller_name=self.identity.display_name(seller_id),
            buyer_id=buyer_id,
            buyer_name=self.identity.display_name(buyer_id),
            amount=amount,
            transfer_type=ttype,
            chat_id=chat_id,
            escrow_amount=self.charges.escrow(amount),
            created_at=now,
        )
        request.add_event(TimelineEventType.INITIATED, buyer_id, "Transfer initiated", at=now)
        try:
            self.transfers.create(request)
        except Exception:
            self._release_asset(asset_id, transfer_id)
            raise

        self.audit.log(
            buyer_id, AuditAction.TRANSFER_INITIATE, "transfer", transfer_id,
            asset_id=asset_id, amount=str(amount), transfer_type=ttype.value,
        )
        logger.info(
            "Transfer admitted",
            operation="open_transfer",
            transfer_id=transfer_id,
            asset_id=asset_id,
        )
        return request

    def _new_transfer_id(self) -> str:
        for _ in range(10):
            candidate = generate_transfer_id()
            if self.transfers.find(candidate) is None:
                return candidate
        raise Conflict("could not allocate a unique transfer id")

    # -------------------------------------------------------------------------
    # Pre-approval lifecycle
    # -------------------------------------------------------------------------

    def submit_documents(
        self,
        transfer_id: str,
        actor_id: str,
        documents: List[Dict[str, Any]],
    ) -> TransferRequest:
        """
        Attach supporting documents.

        Each entry is ``{"document_type", "name", "content"}`` with ``content``
        as bytes. Bytes go to the content store; only references are kept.
        """
        request = self.transfers.get(transfer_id)
        if not request.is_participant(actor_id):
            raise Unauthorized(f"{actor_id} is not a party to transfer {transfer_id}")
        if request.status not in (TransferStatus.INITIATED, TransferStatus.DOCUMENTS_SUBMITTED):
            raise InvalidState(f"transfer {transfer_id} is {request.status.value}; documents are closed")
        if not documents:
            raise InvalidRequest("at least one document is required")

        prior = request.status
        now = self.clock()
        for doc in documents:
            content = doc.get("content")
            if not isinstance(content, (bytes, bytearray)) or not content:
                raise InvalidRequest(f"document {doc.get('name')!r} has no content")
            name = str(doc.get("name") or "document")
            digest = self.documents.store(bytes(content), name, "transfer-document")
            request.documents.append(TransferDocument(
                document_type=str(doc.get("document_type") or "OTHER"),
                name=name,
                content_hash=digest,
                url=self.documents.resolve(digest),
                uploaded_by=actor_id,
                uploaded_at=now,
            ))

        request.transition_to(TransferStatus.DOCUMENTS_SUBMITTED)
        request.add_event(
            TimelineEventType.DOCUMENTS_UPLOADED, actor_id,
            f"{len(documents)} document(s) uploaded", at=now,
        )
        self.transfers.save(request, expected_status=prior)
        self.audit.log(actor_id, AuditAction.TRANSFER_DOCUMENTS, "transfer", transfer_id, count=len(documents))
        return request

    def begin_review(self, transfer_id: str, reviewer_id: str) -> TransferRequest:
        request = self.transfers.get(transfer_id)
        if not self.identity.can_review(reviewer_id):
            raise Unauthorized(f"{reviewer_id} lacks reviewing authority")
        if request.status != TransferStatus.DOCUMENTS_SUBMITTED:
            raise InvalidState(f"transfer {transfer_id} is {request.status.value}; expected DOCUMENTS_SUBMITTED")
        request.transition_to(TransferStatus.UNDER_REVIEW)
        request.add_event(TimelineEventType.REVIEW_STARTED, reviewer_id, "Review started", at=self.clock())
        self.transfers.save(request, expected_status=TransferStatus.DOCUMENTS_SUBMITTED)
        self.audit.log(reviewer_id, AuditAction.TRANSFER_REVIEW_START, "transfer", transfer_id)
        return request

    # -------------------------------------------------------------------------
    # Review
    # -------------------------------------------------------------------------

    @timed_operation(logger, "review_transfer")
    def review_transfer(
        self,
        transfer_id: str,
        decision: Union[ReviewDecision, str],
        reviewer_id: str,
        comments: str = "",
        rejection_reason: Optional[str] = None,
    ) -> ReviewOutcome:
        """
        Apply an admin decision.

        Raises NotFound, Unauthorized, InvalidState, Conflict or Rejected.
        Retryable saga failures are returned in ``ReviewOutcome.deferred``.
        """
        try:
            decision = ReviewDecision(str(decision.value if isinstance(decision, ReviewDecision) else decision).upper())
        except ValueError as e:
            raise InvalidRequest(f"unknown decision: {decision}") from e

        request = self.transfers.get(transfer_id)
        if not self.identity.can_review(reviewer_id):
            raise Unauthorized(f"{reviewer_id} lacks reviewing authority")
        if request.is_terminal:
            raise InvalidState(f"transfer {transfer_id} is already {request.status.value}")

        if decision == ReviewDecision.REJECT:
            if not request.status.allows_rejection():
                raise InvalidState(
                    f"transfer {transfer_id} is {request.status.value}; rejection is only valid before approval"
                )
            reason = rejection_reason or comments or "Rejected by reviewer"
            self._reject(request, reviewer_id, comments, reason)
            return ReviewOutcome(request)

        if request.status == TransferStatus.APPROVED:
            raise Conflict(f"transfer {transfer_id} is already approved; its saga is in progress")
        if request.status != TransferStatus.UNDER_REVIEW:
            raise InvalidState(f"transfer {transfer_id} is {request.status.value}; expected UNDER_REVIEW")

        # Step 1: guard.
        asset = self.assets.get(request.asset_id)
        if not self._guard_holds(request, asset):
            self._reject(request, SYSTEM_ACTOR, "", HOLDER_CHANGED_REASON, forced=True)
            raise Conflict(f"transfer {transfer_id}: {HOLDER_CHANGED_REASON}")

        now = self.clock()
        request.transition_to(TransferStatus.APPROVED)
        request.review = ReviewMetadata(
            reviewer_id=reviewer_id,
            reviewed_at=now,
            decision=ReviewDecision.APPROVE,
            comments=comments,
        )
        request.approved_at = now
        request.add_event(TimelineEventType.APPROVED, reviewer_id, comments or "Approved", at=now)
        self.transfers.save(request, expected_status=TransferStatus.UNDER_REVIEW)
        self.audit.log(reviewer_id, AuditAction.TRANSFER_APPROVE, "transfer", transfer_id)
        logger.info("Transfer approved", operation="review_transfer", transfer_id=transfer_id)

        return self._drive(request)

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    def resume(self, transfer_id: str) -> ReviewOutcome:
        """Re-drive an approved transfer from its persisted markers."""
        request = self.transfers.get(transfer_id)
        if request.status == TransferStatus.COMPLETED:
            return ReviewOutcome(request)
        if request.status != TransferStatus.APPROVED:
            raise InvalidState(f"transfer {transfer_id} is {request.status.value}; nothing to resume")
        if request.halted:
            raise InvalidState(f"transfer {transfer_id} is halted; an operator must retry it")
        return self._drive(request)

    def retry_transfer(self, transfer_id: str, operator_id: str) -> ReviewOutcome:
        """Clear a halted saga and drive it again."""
        request = self.transfers.get(transfer_id)
        if not self.identity.can_review(operator_id):
            raise Unauthorized(f"{operator_id} lacks reviewing authority")
        if request.status != TransferStatus.APPROVED or not request.halted:
            raise InvalidState(f"transfer {transfer_id} is not a halted saga")
        request.halted = False
        request.last_error = None
        self.transfers.save(request, expected_status=TransferStatus.APPROVED)
        self.audit.log(operator_id, AuditAction.TRANSFER_RETRY, "transfer", transfer_id)
        return self._drive(request)

    # -------------------------------------------------------------------------
    # Saga
    # -------------------------------------------------------------------------

    def _drive(self, request: TransferRequest) -> ReviewOutcome:
        try:
            if not request.certificate:
                asset = self.assets.get(request.asset_id)
                ref = self.minter.mint(request, asset)
                request.certificate = ref.to_dict()
                request.last_error = None
                request.add_event(
                    TimelineEventType.CERTIFICATE_MINTED, SYSTEM_ACTOR, ref.content_hash, at=self.clock()
                )
                self.transfers.save(request, expected_status=TransferStatus.APPROVED)

            if not request.ledger_tx_hash:
                try:
                    receipt = self.anchor.record_transfer(
                        asset_id=request.asset_id,
                        from_holder=request.seller_id,
                        to_holder=request.buyer_id,
                        amount=request.amount,
                        transfer_id=request.transfer_id,
                        pending_tx_hash=request.ledger_pending_tx_hash,
                    )
                except Unconfirmed as e:
                    request.ledger_pending_tx_hash = e.tx_hash
                    raise
                request.ledger_tx_hash = receipt.tx_hash
                request.ledger_receipt = receipt.to_dict()
                request.ledger_pending_tx_hash = None
                request.last_error = None
                request.add_event(
                    TimelineEventType.LEDGER_ANCHORED, SYSTEM_ACTOR, receipt.tx_hash, at=self.clock()
                )
                self.transfers.save(request, expected_status=TransferStatus.APPROVED)
        except (StoreUnavailable, Unavailable, Unconfirmed) as e:
            return self._defer(request, e)
        except Rejected as e:
            self._halt(request, e)
            raise

        return self._commit(request)

    def _commit(self, request: TransferRequest, attempts: int = 3) -> ReviewOutcome:
        transfer_id = request.transfer_id
        for attempt in range(1, attempts + 1):
            asset = self.assets.get(request.asset_id)
            if asset.last_transfer_id == transfer_id and asset.holder_id == request.buyer_id:
                committed_at = asset.history[-1].start
                break
            if not self._guard_holds(request, asset):
                self._force_reject(request)
                raise Conflict(f"transfer {transfer_id}: {CONFLICTING_TRANSFER_REASON}")

            committed_at = self.clock()
            asset.transfer_holder(
                to_holder_id=request.buyer_id,
                to_holder_name=request.buyer_name,
                transfer_id=transfer_id,
                at=committed_at,
                transfer_type=request.transfer_type.value,
                amount=request.amount,
            )
            try:
                self.assets.save(asset)
                break
            except Conflict:
                if attempt == attempts:
                    raise
                logger.warning(
                    "Asset changed during commit; re-checking guard",
                    operation="commit",
                    transfer_id=transfer_id,
                    attempt=attempt,
                )

        request.registration = self._registration(request, asset, committed_at)
        request.completed_at = committed_at
        request.last_error = None
        request.transition_to(TransferStatus.COMPLETED)
        request.add_event(TimelineEventType.COMPLETED, SYSTEM_ACTOR, "Ownership transferred", at=committed_at)
        self.transfers.save(request, expected_status=TransferStatus.APPROVED)

        self.audit.log(
            SYSTEM_ACTOR, AuditAction.TRANSFER_COMPLETE, "transfer", transfer_id,
            asset_id=request.asset_id, holder_id=request.buyer_id, ledger_tx_hash=request.ledger_tx_hash,
        )
        logger.info(
            "Transfer completed",
            operation="commit",
            transfer_id=transfer_id,
            asset_id=request.asset_id,
        )
        return ReviewOutcome(request)

    def _registration(self, request: TransferRequest, asset: AssetRecord, at: str) -> Dict[str, Any]:
        day = datetime.fromisoformat(at).strftime("%Y%m%d")
        district = str(asset.descriptors.get("district") or "District")
        stamp_duty = self.charges.stamp_duty(request.amount)
        fee = self.charges.registration_fee
        return {
            "registration_number": f"REG-{day}-{request.transfer_id}",
            "registration_office": f"{district} Sub-Registrar Office",
            "stamp_duty": str(stamp_duty),
            "registration_fee": str(fee),
            "total_charges": str(stamp_duty + fee),
        }

    def _defer(self, request: TransferRequest, error: RegistryError) -> ReviewOutcome:
        """Record a retryable failure on the request and leave it parked."""
        previous_kind = (request.last_error or {}).get("kind")
        request.last_error = {"kind": error.kind, "message": error.message, "at": self.clock()}
        request.saga_attempts += 1
        if previous_kind != error.kind:
            request.add_event(
                TimelineEventType.SAGA_DEFERRED, SYSTEM_ACTOR,
                f"{error.kind}: {error.message}", at=request.last_error["at"],
            )
        self.transfers.save(request, expected_status=TransferStatus.APPROVED)
        logger.warning(
            "Saga deferred",
            operation="saga",
            error_code=error.kind,
            transfer_id=request.transfer_id,
            step=request.saga_step,
            attempts=request.saga_attempts,
        )
        return ReviewOutcome(request, deferred=error)

    def _halt(self, request: TransferRequest, error: Rejected) -> None:
        request.halted = True
        request.last_error = {"kind": error.kind, "message": error.message, "at": self.clock()}
        request.add_event(
            TimelineEventType.SAGA_DEFERRED, SYSTEM_ACTOR,
            f"halted: {error.message}", at=request.last_error["at"],
        )
        self.transfers.save(request, expected_status=TransferStatus.APPROVED)
        logger.error(
            "Saga halted by ledger rejection",
            error_code=error.kind,
            operation="saga",
            transfer_id=request.transfer_id,
        )

    # -------------------------------------------------------------------------
    # Rejection
    # -------------------------------------------------------------------------

    @staticmethod
    def _guard_holds(request: TransferRequest, asset: AssetRecord) -> bool:
        return asset.holder_id == request.seller_id and asset.active_transfer_id == request.transfer_id

    def _reject(
        self,
        request: TransferRequest,
        reviewer_id: str,
        comments: str,
        reason: str,
        forced: bool = False,
    ) -> None:
        prior = request.status
        now = self.clock()
        request.transition_to(TransferStatus.REJECTED, forced=forced)
        request.review = ReviewMetadata(
            reviewer_id=reviewer_id,
            reviewed_at=now,
            decision=ReviewDecision.REJECT,
            comments=comments,
            rejection_reason=reason,
            forced=forced,
        )
        request.halted = False
        request.add_event(TimelineEventType.REJECTED, reviewer_id, reason, at=now)
        self.transfers.save(request, expected_status=prior)
        self._release_asset(request.asset_id, request.transfer_id)

        action = AuditAction.TRANSFER_FORCE_REJECT if forced else AuditAction.TRANSFER_REJECT
        self.audit.log(reviewer_id, action, "transfer", request.transfer_id, reason=reason)
        logger.info(
            "Transfer rejected",
            operation="reject",
            transfer_id=request.transfer_id,
            forced=forced,
            reason=reason,
        )

    def _force_reject(self, request: TransferRequest) -> None:
        self._reject(request, SYSTEM_ACTOR, "", CONFLICTING_TRANSFER_REASON, forced=True)
        if request.ledger_tx_hash:
            # The ledger already carries this transfer; record the void on it.
            try:
                self.anchor.update_status(request.asset_id, f"VOID:{request.transfer_id}")
            except RegistryError as e:
                logger.error(
                    "Could not record void of anchored transfer on ledger",
                    error_code=e.kind,
                    transfer_id=request.transfer_id,
                    ledger_tx_hash=request.ledger_tx_hash,
                )
                self.audit.log(
                    SYSTEM_ACTOR, AuditAction.TRANSFER_FORCE_REJECT, "transfer", request.transfer_id,
                    outcome="failure", compensation="ledger void not recorded", error=e.message,
                )

    def _release_asset(self, asset_id: str, transfer_id: str, attempts: int = 3) -> bool:
        """Unpin the asset from ``transfer_id`` if it is still pinned to it."""
        for attempt in range(1, attempts + 1):
            asset = self.assets.find(asset_id)
            if asset is None or not asset.release(transfer_id):
                return False
            try:
                self.assets.save(asset)
                return True
            except Conflict:
                if attempt == attempts:
                    raise
        return False

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    def get_transfer(self, transfer_id: str) -> TransferRequest:
        return self.transfers.get(transfer_id)

    def verify_ownership(self, transfer_id: str) -> Dict[str, Any]:
        """Public check of a completed transfer."""
        request = self.transfers.get(transfer_id)
        if request.status != TransferStatus.COMPLETED:
            raise InvalidState(f"transfer {transfer_id} is not completed")
        return {
            "is_valid": True,
            "transfer_id": request.transfer_id,
            "asset_id": request.asset_id,
            "buyer": request.buyer_name or request.buyer_id,
            "seller": request.seller_name or request.seller_id,
            "amount": str(request.amount),
            "completed_at": request.completed_at,
            "registration_number": (request.registration or {}).get("registration_number"),
            "certificate_url": (request.certificate or {}).get("url"),
            "ledger_tx_hash": request.ledger_tx_hash,
        }

    def pending_review(self) -> List[TransferRequest]:
        return sorted(self.transfers.with_status(PRE_APPROVAL), key=lambda t: t.created_at)

    def parked(self) -> List[TransferRequest]:
        """Approved sagas that are not halted, oldest first."""
        return sorted(
            (t for t in self.transfers.with_status([TransferStatus.APPROVED]) if not t.halted),
            key=lambda t: t.approved_at or t.created_at,
        )

    def statistics(self, year: Optional[int] = None) -> Dict[str, Any]:
        requests = self.transfers.all()
        by_status = Counter(t.status.value for t in requests)
        completed = [t for t in requests if t.status == TransferStatus.COMPLETED]
        monthly: Dict[int, int] = {m: 0 for m in range(1, 13)}
        for t in completed:
            if not t.completed_at:
                continue
            at = datetime.fromisoformat(t.completed_at)
            if year is None or at.year == year:
                monthly[at.month] += 1
        return {
            "total": len(requests),
            "by_status": {s.value: by_status.get(s.value, 0) for s in TransferStatus},
            "parked": sum(1 for t in requests if t.status == TransferStatus.APPROVED and not t.halted),
            "halted": sum(1 for t in requests if t.halted),
            "completed_value": str(sum((t.amount for t in completed), Decimal("0"))),
            "monthly_completed": monthly,
        }
