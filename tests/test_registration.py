"""
Asset registration tests: digitization, verification, certification,
listings and disputes.
"""

from decimal import Decimal

import pytest

from titlechain.registry.anchor import LedgerOperation
from titlechain.registry.asset import AssetStatus, VerificationStatus
from titlechain.registry.errors import (
    InvalidRequest,
    InvalidState,
    NotFound,
    Unauthorized,
    Unavailable,
    Unconfirmed,
)
from titlechain.registry.observability import AuditAction
from titlechain.registry.registration import normalize_descriptors


PLOT = {"state": "Karnataka", "district": "Mysuru", "survey_number": "88/2"}


class TestDigitize:

    def test_digitize_creates_pending_record(self, runtime):
        asset = runtime.registrar.digitize("seller", dict(PLOT), added_by="admin")

        assert asset.asset_id.startswith("KAMYS")
        assert asset.holder_name == "Asha Rao"
        assert asset.added_by == "admin"
        assert asset.verification_status == VerificationStatus.PENDING
        assert asset.digitized is False
        assert [e.holder_id for e in asset.history] == ["seller"]
        assert asset.history[0].transfer_type == "INITIAL"
        assert asset.invariant_violations() == []
        assert runtime.registrar.pending_verification()[0].asset_id == asset.asset_id

    def test_floats_become_decimal_strings(self, runtime):
        asset = runtime.registrar.digitize("seller", {**PLOT, "area_acres": 2.5, "coords": [12.31, 76.64]})
        assert asset.descriptors["area_acres"] == "2.5"
        assert asset.descriptors["coords"] == ["12.31", "76.64"]

    def test_normalize_leaves_other_types(self):
        assert normalize_descriptors({"a": 1, "b": True, "c": None, "d": "x"}) == {
            "a": 1, "b": True, "c": None, "d": "x",
        }

    def test_empty_descriptors(self, runtime):
        with pytest.raises(InvalidRequest):
            runtime.registrar.digitize("seller", {})

    def test_unverified_holder(self, runtime):
        with pytest.raises(Unauthorized):
            runtime.registrar.digitize("unverified", dict(PLOT))


class TestVerifyAndCertify:

    def test_verify_requires_reviewer(self, runtime):
        asset = runtime.registrar.digitize("seller", dict(PLOT))
        with pytest.raises(Unauthorized):
            runtime.registrar.verify(asset.asset_id, "buyer", approve=True)

    def test_verify_once(self, runtime):
        asset = runtime.registrar.digitize("seller", dict(PLOT))
        verified = runtime.registrar.verify(asset.asset_id, "admin", approve=True, notes="survey matches")
        assert verified.verification_status == VerificationStatus.VERIFIED
        assert verified.verification_notes == "survey matches"
        assert verified.verified_at
        with pytest.raises(InvalidState):
            runtime.registrar.verify(asset.asset_id, "admin", approve=False)

    def test_rejected_asset_cannot_be_certified(self, runtime):
        asset = runtime.registrar.digitize("seller", dict(PLOT))
        runtime.registrar.verify(asset.asset_id, "admin", approve=False)
        with pytest.raises(InvalidState, match="not verified"):
            runtime.registrar.issue_base_certificate(asset.asset_id)

    def test_certify_mints_and_registers(self, runtime):
        asset = runtime.registrar.digitize("seller", dict(PLOT))
        runtime.registrar.verify(asset.asset_id, "admin", approve=True)

        certified = runtime.registrar.issue_base_certificate(asset.asset_id, "admin")

        assert certified.digitized is True
        assert certified.base_certificate["name"] == f"land-certificate-{asset.asset_id}.json"
        registrations = runtime.ledger.transactions(LedgerOperation.REGISTER)
        assert len(registrations) == 1
        assert registrations[0]["tx_hash"] == certified.ledger_registration_tx
        assert registrations[0]["call"]["args"]["certificate_hash"] == certified.base_certificate["content_hash"]

        again = runtime.registrar.issue_base_certificate(asset.asset_id)
        assert again.ledger_registration_tx == certified.ledger_registration_tx
        assert len(runtime.ledger.transactions(LedgerOperation.REGISTER)) == 1

    def test_ledger_outage_keeps_certificate_for_retry(self, runtime):
        asset = runtime.registrar.digitize("seller", dict(PLOT))
        runtime.registrar.verify(asset.asset_id, "admin", approve=True)
        runtime.ledger.fail_next_submissions = 1

        with pytest.raises(Unavailable):
            runtime.registrar.issue_base_certificate(asset.asset_id)

        stored = runtime.assets.get(asset.asset_id)
        assert stored.base_certificate is not None
        assert stored.digitized is False
        minted = runtime.minter.minted

        certified = runtime.registrar.issue_base_certificate(asset.asset_id)
        assert certified.digitized is True
        assert certified.base_certificate == stored.base_certificate
        assert runtime.minter.minted == minted

    def test_unconfirmed_registration_is_not_resubmitted(self, runtime):
        asset = runtime.registrar.digitize("seller", dict(PLOT))
        runtime.registrar.verify(asset.asset_id, "admin", approve=True)
        runtime.ledger.hold_confirmations = True

        with pytest.raises(Unconfirmed) as excinfo:
            runtime.registrar.issue_base_certificate(asset.asset_id)
        pending = runtime.assets.get(asset.asset_id).ledger_pending_registration_tx
        assert pending == excinfo.value.tx_hash

        with pytest.raises(Unconfirmed):
            runtime.registrar.issue_base_certificate(asset.asset_id)
        assert runtime.ledger.submit_count == 1

        runtime.ledger.release()
        certified = runtime.registrar.issue_base_certificate(asset.asset_id)
        assert certified.ledger_registration_tx == pending
        assert certified.ledger_pending_registration_tx is None
        assert len(runtime.ledger.transactions(LedgerOperation.REGISTER)) == 1


class TestListings:

    def test_list_and_withdraw(self, certified_asset, runtime):
        asset = certified_asset(listed=False)

        listed = runtime.registrar.list_for_sale(asset.asset_id, "seller", "750000.50")
        assert listed.status == AssetStatus.FOR_SALE
        assert listed.asking_price == Decimal("750000.50")
        assert [a.asset_id for a in runtime.registrar.marketplace()] == [asset.asset_id]

        withdrawn = runtime.registrar.withdraw_listing(asset.asset_id, "seller")
        assert withdrawn.status == AssetStatus.AVAILABLE
        assert withdrawn.asking_price is None
        assert runtime.registrar.marketplace() == []

    def test_only_holder_may_list(self, certified_asset, runtime):
        asset = certified_asset(listed=False)
        with pytest.raises(Unauthorized):
            runtime.registrar.list_for_sale(asset.asset_id, "buyer", "100")

    @pytest.mark.parametrize("price", ["0", "-1"])
    def test_price_must_be_positive(self, certified_asset, runtime, price):
        asset = certified_asset(listed=False)
        with pytest.raises(InvalidRequest):
            runtime.registrar.list_for_sale(asset.asset_id, "seller", price)

    def test_listing_frozen_during_transfer(self, listed_asset, runtime):
        runtime.coordinator.open_transfer(listed_asset.asset_id, "seller", "buyer", "500000")
        with pytest.raises(InvalidState, match="under transaction"):
            runtime.registrar.withdraw_listing(listed_asset.asset_id, "seller")

    def test_held_by(self, certified_asset, runtime):
        asset = certified_asset()
        assert [a.asset_id for a in runtime.registrar.held_by("seller")] == [asset.asset_id]
        assert runtime.registrar.held_by("buyer") == []

    def test_unknown_asset(self, runtime):
        with pytest.raises(NotFound):
            runtime.registrar.get("KAMYS000000000")


class TestDisputes:

    def test_dispute_and_resolve_restore_listing(self, listed_asset, runtime):
        disputed = runtime.registrar.mark_disputed(listed_asset.asset_id, "admin", "boundary claim")
        assert disputed.status == AssetStatus.DISPUTED

        resolved = runtime.registrar.resolve_dispute(listed_asset.asset_id, "admin", "claim withdrawn")
        assert resolved.status == AssetStatus.FOR_SALE

        updates = runtime.ledger.transactions(LedgerOperation.STATUS_UPDATE)
        assert [tx["call"]["args"]["status"] for tx in updates] == ["DISPUTED", "FOR_SALE"]

    def test_dispute_blocked_during_transfer(self, listed_asset, runtime):
        runtime.coordinator.open_transfer(listed_asset.asset_id, "seller", "buyer", "500000")
        with pytest.raises(InvalidState):
            runtime.registrar.mark_disputed(listed_asset.asset_id, "admin")

    def test_ledger_failure_restores_record(self, listed_asset, runtime):
        runtime.ledger.fail_next_submissions = 1
        with pytest.raises(Unavailable):
            runtime.registrar.mark_disputed(listed_asset.asset_id, "admin")
        assert runtime.assets.get(listed_asset.asset_id).status == AssetStatus.FOR_SALE

    def test_admission_refused_while_dispute_reaches_ledger(self, listed_asset, runtime, monkeypatch):
        asset_id = listed_asset.asset_id
        update_status = runtime.anchor.update_status
        attempts = []

        def racing_update(target, status):
            with pytest.raises(InvalidState, match="under dispute") as excinfo:
                runtime.coordinator.open_transfer(asset_id, "seller", "buyer", "500000")
            attempts.append(excinfo.value)
            return update_status(target, status)

        monkeypatch.setattr(runtime.anchor, "update_status", racing_update)
        disputed = runtime.registrar.mark_disputed(asset_id, "admin", "boundary claim")

        assert len(attempts) == 1
        stored = runtime.assets.get(asset_id)
        assert stored.status == AssetStatus.DISPUTED == disputed.status
        assert stored.active_transfer_id is None
        assert runtime.transfers.open_for_asset(asset_id) == []
        updates = runtime.ledger.transactions(LedgerOperation.STATUS_UPDATE)
        assert [tx["call"]["args"]["status"] for tx in updates] == ["DISPUTED"]

    def test_unconfirmed_dispute_keeps_record_frozen(self, listed_asset, runtime):
        runtime.ledger.hold_confirmations = True
        with pytest.raises(Unconfirmed):
            runtime.registrar.mark_disputed(listed_asset.asset_id, "admin")
        assert runtime.assets.get(listed_asset.asset_id).status == AssetStatus.DISPUTED

        runtime.ledger.release()
        resolved = runtime.registrar.resolve_dispute(listed_asset.asset_id, "admin")
        assert resolved.status == AssetStatus.FOR_SALE

    def test_dispute_requires_reviewer(self, listed_asset, runtime):
        with pytest.raises(Unauthorized):
            runtime.registrar.mark_disputed(listed_asset.asset_id, "seller")

    def test_resolve_requires_dispute(self, listed_asset, runtime):
        with pytest.raises(InvalidState, match="not disputed"):
            runtime.registrar.resolve_dispute(listed_asset.asset_id, "admin")


def test_registration_is_audited(runtime, listed_asset):
    actions = [e.action for e in runtime.audit.events]
    assert actions[:4] == [
        AuditAction.ASSET_DIGITIZE.value,
        AuditAction.ASSET_VERIFY.value,
        AuditAction.ASSET_CERTIFY.value,
        AuditAction.ASSET_LIST.value,
    ]
    assert runtime.audit.verify_chain()
