"""
Inbound action handler tests: schema validation and the success/failure
payload contract.
"""

import pytest

from titlechain.registry.actions import (
    OPEN_TRANSFER_SCHEMA,
    REVIEW_ACTION_SCHEMA,
    SCHEMAS_DIR,
    handle_open_transfer,
    handle_review_action,
    schema_validator,
    validate_with_schema,
)


def _review(transfer_id, decision="APPROVE", reviewer="admin", **extra):
    payload = {"transferRequestId": transfer_id, "decision": decision, "reviewerId": reviewer}
    payload.update(extra)
    return payload


class TestSchemas:

    def test_shipped_schemas_exist(self):
        names = sorted(p.name for p in SCHEMAS_DIR.glob("*.schema.json"))
        assert names == [
            "common.schema.json",
            OPEN_TRANSFER_SCHEMA,
            REVIEW_ACTION_SCHEMA,
        ]

    def test_review_schema_resolves_common_refs(self):
        validator = schema_validator(REVIEW_ACTION_SCHEMA)
        assert validate_with_schema(_review("TXN1"), validator) == []
        errors = validate_with_schema(_review("bad id with spaces"), validator)
        assert errors and "transferRequestId" in errors[0]

    @pytest.mark.parametrize("payload", [
        {},
        {"transferRequestId": "TXN1", "decision": "APPROVE"},
        {"transferRequestId": "TXN1", "decision": "MAYBE", "reviewerId": "admin"},
        {"transferRequestId": "TXN1", "decision": "APPROVE", "reviewerId": "admin", "extra": 1},
        {"transferRequestId": "TXN1", "decision": "APPROVE", "reviewerId": "admin", "comments": "x" * 2001},
        "not an object",
    ])
    def test_invalid_review_payloads(self, runtime, payload):
        result = handle_review_action(runtime.coordinator, payload)
        assert result["kind"] == "InvalidRequest"
        assert result["message"].startswith("invalid payload")

    @pytest.mark.parametrize("amount", ["12.5.0", -3, 0, 1.5, "1e6"])
    def test_invalid_amounts(self, runtime, listed_asset, amount):
        result = handle_open_transfer(runtime.coordinator, {
            "assetId": listed_asset.asset_id, "sellerId": "seller", "buyerId": "buyer", "amount": amount,
        })
        assert result["kind"] == "InvalidRequest"


class TestReviewAction:

    def test_approve_success_payload(self, runtime, listed_asset, under_review):
        request = under_review(listed_asset.asset_id)
        result = handle_review_action(runtime.coordinator, _review(request.transfer_id, comments="all good"))

        assert set(result) == {"status", "transferRequest", "deferred"}
        assert result["status"] == "COMPLETED"
        assert result["transferRequest"]["review"]["comments"] == "all good"
        assert result["deferred"] is None

    def test_deferred_payload(self, runtime, listed_asset, under_review):
        request = under_review(listed_asset.asset_id)
        runtime.ledger.fail_next_submissions = 1
        result = handle_review_action(runtime.coordinator, _review(request.transfer_id))

        assert result["status"] == "APPROVED"
        assert result["deferred"]["kind"] == "Unavailable"

    def test_reject_payload(self, runtime, listed_asset, under_review):
        request = under_review(listed_asset.asset_id)
        result = handle_review_action(
            runtime.coordinator,
            _review(request.transfer_id, "REJECT", rejectionReason="Forged signature"),
        )
        assert result["status"] == "REJECTED"
        assert result["transferRequest"]["review"]["rejection_reason"] == "Forged signature"

    def test_unknown_transfer_payload(self, runtime):
        result = handle_review_action(runtime.coordinator, _review("TXN999"))
        assert result == {"kind": "NotFound", "message": "transfer TXN999 not found"}

    def test_unauthorized_payload(self, runtime, listed_asset, under_review):
        request = under_review(listed_asset.asset_id)
        result = handle_review_action(runtime.coordinator, _review(request.transfer_id, reviewer="buyer"))
        assert result["kind"] == "Unauthorized"
        assert set(result) == {"kind", "message"}

    def test_ledger_rejection_payload(self, runtime, listed_asset, under_review):
        request = under_review(listed_asset.asset_id)
        runtime.ledger.reject_reason = "contract paused"
        result = handle_review_action(runtime.coordinator, _review(request.transfer_id))
        assert result["kind"] == "Rejected"

    def test_unexpected_errors_propagate(self, runtime, listed_asset, under_review, monkeypatch):
        request = under_review(listed_asset.asset_id)

        def explode(**kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(runtime.coordinator, "review_transfer", explode)
        with pytest.raises(RuntimeError):
            handle_review_action(runtime.coordinator, _review(request.transfer_id))


class TestOpenTransferAction:

    def test_open_success(self, runtime, listed_asset):
        result = handle_open_transfer(runtime.coordinator, {
            "assetId": listed_asset.asset_id,
            "sellerId": "seller",
            "buyerId": "buyer",
            "amount": "500000",
            "chatId": "chat-17",
        })
        assert result["status"] == "INITIATED"
        assert result["transferRequest"]["chat_id"] == "chat-17"
        assert result["transferRequest"]["escrow_amount"] == "50000.00"

    def test_open_conflict(self, runtime, listed_asset):
        payload = {"assetId": listed_asset.asset_id, "sellerId": "seller", "buyerId": "buyer", "amount": 500000}
        handle_open_transfer(runtime.coordinator, payload)
        result = handle_open_transfer(runtime.coordinator, dict(payload, buyerId="buyer2"))
        assert result == {"kind": "Conflict", "message": result["message"]}
