"""
Asset Registration

Digitization lifecycle of a land parcel before it can change hands:

    digitize ──▶ verify ──▶ issue_base_certificate ──▶ (transferable)

plus the owner-side listing operations and registrar dispute handling.
Every write is a compare-and-swap through the asset repository; listing and
dispute changes are refused while a transfer holds the asset.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

from titlechain.registry.anchor import LedgerAnchor
from titlechain.registry.asset import (
    AssetRecord,
    AssetStatus,
    OwnershipEntry,
    VerificationStatus,
    generate_asset_id,
    utc_now,
)
from titlechain.registry.certificate import CertificateMinter
from titlechain.registry.errors import (
    Conflict,
    InvalidRequest,
    InvalidState,
    RegistryError,
    Unauthorized,
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
from titlechain.registry.repositories import AssetRepository


logger = get_logger("registrar", RegistryLayer.REGISTRATION)


def normalize_descriptors(value: Any) -> Any:
    """Descriptors end up in signed certificates, so floats become decimal strings."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float):
        return str(Decimal(repr(value)))
    if isinstance(value, dict):
        return {str(k): normalize_descriptors(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_descriptors(v) for v in value]
    return value


class AssetRegistrar:
    """Registrar-side operations on asset records."""

    def __init__(
        self,
        assets: AssetRepository,
        identity: IdentityService,
        minter: CertificateMinter,
        anchor: LedgerAnchor,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], str] = utc_now,
    ):
        self.assets = assets
        self.identity = identity
        self.minter = minter
        self.anchor = anchor
        self.audit = audit or AuditLogger()
        self.clock = clock

    # -------------------------------------------------------------------------
    # Digitization
    # -------------------------------------------------------------------------

    def digitize(
        self,
        holder_id: str,
        descriptors: Dict[str, Any],
        added_by: Optional[str] = None,
    ) -> AssetRecord:
        """Create a record awaiting verification, held by ``holder_id``."""
        if not isinstance(descriptors, dict) or not descriptors:
            raise InvalidRequest("descriptors must be a non-empty mapping")
        if not self.identity.is_eligible(holder_id):
            raise Unauthorized(f"party {holder_id} is not eligible to hold title")

        now = self.clock()
        clean = normalize_descriptors(descriptors)
        holder_name = self.identity.display_name(holder_id)
        for _ in range(10):
            record = AssetRecord(
                asset_id=generate_asset_id(clean),
                holder_id=holder_id,
                holder_name=holder_name,
                added_by=added_by or holder_id,
                descriptors=clean,
                history=[OwnershipEntry(holder_id=holder_id, holder_name=holder_name, start=now)],
                created_at=now,
            )
            try:
                self.assets.create(record)
                break
            except Conflict:
                continue
        else:
            raise Conflict("could not allocate a unique asset id")

        self.audit.log(record.added_by, AuditAction.ASSET_DIGITIZE, "asset", record.asset_id, holder_id=holder_id)
        logger.info("Asset digitized", operation="digitize", asset_id=record.asset_id)
        return record

    def verify(
        self,
        asset_id: str,
        reviewer_id: str,
        approve: bool,
        notes: str = "",
    ) -> AssetRecord:
        if not self.identity.can_review(reviewer_id):
            raise Unauthorized(f"{reviewer_id} lacks reviewing authority")
        asset = self.assets.get(asset_id)
        if asset.verification_status != VerificationStatus.PENDING:
            raise InvalidState(f"asset {asset_id} is already {asset.verification_status.value}")
        asset.verification_status = VerificationStatus.VERIFIED if approve else VerificationStatus.REJECTED
        asset.verified_by = reviewer_id
        asset.verified_at = self.clock()
        asset.verification_notes = notes
        self.assets.save(asset)
        self.audit.log(
            reviewer_id, AuditAction.ASSET_VERIFY, "asset", asset_id,
            decision=asset.verification_status.value,
        )
        return asset

    @timed_operation(logger, "issue_base_certificate")
    def issue_base_certificate(self, asset_id: str, actor_id: str = "system") -> AssetRecord:
        """
        Mint the land certificate and register the asset on the ledger.

        The certificate reference is persisted before the ledger call, so a
        retry after a ledger failure re-uses it. An unconfirmed registration
        keeps its transaction hash on the record and the next attempt waits on
        it instead of registering twice.
        """
        asset = self.assets.get(asset_id)
        if asset.digitized:
            return asset
        if not asset.is_verified:
            raise InvalidState(f"asset {asset_id} is not verified")

        if not asset.base_certificate:
            ref = self.minter.mint_land_certificate(asset)
            asset.base_certificate = ref.to_dict()
            self.assets.save(asset)

        if not asset.ledger_registration_tx:
            try:
                receipt = self.anchor.register_asset(
                    asset_id,
                    asset.holder_id,
                    asset.base_certificate["content_hash"],
                    pending_tx_hash=asset.ledger_pending_registration_tx,
                )
            except Unconfirmed as e:
                if e.tx_hash != asset.ledger_pending_registration_tx:
                    asset.ledger_pending_registration_tx = e.tx_hash
                    self.assets.save(asset)
                raise
            asset.ledger_registration_tx = receipt.tx_hash
            asset.ledger_pending_registration_tx = None

        asset.digitized = True
        self.assets.save(asset)
        self.audit.log(
            actor_id, AuditAction.ASSET_CERTIFY, "asset", asset_id,
            ledger_tx_hash=asset.ledger_registration_tx,
        )
        return asset

    # -------------------------------------------------------------------------
    # Owner operations
    # -------------------------------------------------------------------------

    def _owned(self, asset_id: str, owner_id: str) -> AssetRecord:
        asset = self.assets.get(asset_id)
        if asset.holder_id != owner_id:
            raise Unauthorized(f"{owner_id} does not hold asset {asset_id}")
        return asset

    def list_for_sale(self, asset_id: str, owner_id: str, price: Union[Decimal, str, int]) -> AssetRecord:
        asset = self._owned(asset_id, owner_id)
        try:
            amount = Decimal(str(price))
        except ArithmeticError as e:
            raise InvalidRequest(f"invalid price: {price!r}") from e
        asset.list_for_sale(amount, self.clock())
        self.assets.save(asset)
        self.audit.log(owner_id, AuditAction.ASSET_LIST, "asset", asset_id, price=str(amount))
        return asset

    def withdraw_listing(self, asset_id: str, owner_id: str) -> AssetRecord:
        asset = self._owned(asset_id, owner_id)
        asset.withdraw_listing()
        self.assets.save(asset)
        self.audit.log(owner_id, AuditAction.ASSET_UNLIST, "asset", asset_id)
        return asset

    # -------------------------------------------------------------------------
    # Disputes
    # -------------------------------------------------------------------------

    def mark_disputed(self, asset_id: str, reviewer_id: str, reason: str = "") -> AssetRecord:
        """
        Freeze the asset, then record the dispute on the ledger.

        The DISPUTED record is saved first; admission refuses disputed assets,
        so no transfer can claim the asset while the ledger call is in flight.
        If the ledger certainly did not take the update the record is put back.
        An Unconfirmed update may still land, so the record stays DISPUTED.
        """
        if not self.identity.can_review(reviewer_id):
            raise Unauthorized(f"{reviewer_id} lacks reviewing authority")
        asset = self.assets.get(asset_id)
        asset.mark_disputed()
        self.assets.save(asset)
        try:
            self.anchor.update_status(asset_id, AssetStatus.DISPUTED.value)
        except Unconfirmed as e:
            logger.warning(
                "Dispute not yet confirmed on ledger; record stays disputed",
                operation="mark_disputed",
                asset_id=asset_id,
                tx_hash=e.tx_hash,
            )
            raise
        except RegistryError:
            self._undo_dispute(asset_id)
            raise
        self.audit.log(reviewer_id, AuditAction.ASSET_DISPUTE, "asset", asset_id, reason=reason)
        return asset

    def _undo_dispute(self, asset_id: str, attempts: int = 3) -> None:
        for attempt in range(1, attempts + 1):
            asset = self.assets.get(asset_id)
            if asset.status != AssetStatus.DISPUTED:
                return
            asset.resolve_dispute()
            try:
                self.assets.save(asset)
                return
            except Conflict:
                if attempt == attempts:
                    raise

    def resolve_dispute(self, asset_id: str, reviewer_id: str, resolution: str = "") -> AssetRecord:
        # Ledger first: a disputed record cannot be claimed, so nothing but
        # another resolution races the save below.
        if not self.identity.can_review(reviewer_id):
            raise Unauthorized(f"{reviewer_id} lacks reviewing authority")
        asset = self.assets.get(asset_id)
        asset.resolve_dispute()
        self.anchor.update_status(asset_id, asset.status.value)
        self.assets.save(asset)
        self.audit.log(reviewer_id, AuditAction.ASSET_RESOLVE, "asset", asset_id, resolution=resolution)
        return asset

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, asset_id: str) -> AssetRecord:
        return self.assets.get(asset_id)

    def held_by(self, holder_id: str) -> List[AssetRecord]:
        return [a for a in self.assets.all() if a.holder_id == holder_id]

    def marketplace(self) -> List[AssetRecord]:
        return sorted(
            (a for a in self.assets.all() if a.status == AssetStatus.FOR_SALE),
            key=lambda a: a.listed_at or "",
        )

    def pending_verification(self) -> List[AssetRecord]:
        return [a for a in self.assets.all() if a.verification_status == VerificationStatus.PENDING]
