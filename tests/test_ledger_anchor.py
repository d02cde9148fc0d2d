"""
Ledger anchor tests: gas sizing, failure classification, duplicate
detection, the circuit breaker and the bounded confirmation wait.
"""

import json
import threading
import time
from decimal import Decimal

import pytest

from titlechain.registry.anchor import (
    LedgerAnchor,
    LedgerCall,
    LedgerOperation,
    SimulatedLedger,
    holder_address,
)
from titlechain.registry.errors import Rejected, Unavailable, Unconfirmed
from titlechain.registry.resilience import CircuitBreaker, CircuitState


CONTRACT = "0x" + "ab" * 20


@pytest.fixture
def ledger():
    return SimulatedLedger()


@pytest.fixture
def anchor(ledger):
    return LedgerAnchor(ledger, CONTRACT, confirmation_timeout=0.05, timeout_grace=0.5)


def _record(anchor, transfer_id="TXN000000010001", pending=None):
    return anchor.record_transfer(
        asset_id="KAMYS123456789",
        from_holder="seller",
        to_holder="buyer",
        amount=Decimal("500000"),
        transfer_id=transfer_id,
        pending_tx_hash=pending,
    )


class TestGas:

    @pytest.mark.parametrize("estimate", [1, 21000, 50017, 123457])
    def test_limit_is_ceiling_of_estimate_times_margin(self, anchor, estimate):
        assert anchor.gas_limit_for(estimate) == -(-estimate * 12 // 10)

    def test_submitted_limit_uses_margin(self, anchor, ledger):
        _record(anchor)
        tx = ledger.transactions(LedgerOperation.TRANSFER)[0]
        assert tx["gas_limit"] == anchor.gas_limit_for(tx["gas_used"])

    def test_margin_below_one_is_rejected(self, ledger):
        with pytest.raises(ValueError):
            LedgerAnchor(ledger, CONTRACT, gas_safety_margin=Decimal("0.9"))

    def test_margin_absorbs_an_underestimate(self, ledger):
        client = LowballClient(ledger)
        with pytest.raises(Rejected, match="out of gas"):
            _record(LedgerAnchor(client, CONTRACT, gas_safety_margin=Decimal("1"), confirmation_timeout=0.05))

        receipt = _record(LedgerAnchor(client, CONTRACT, confirmation_timeout=0.05))
        assert receipt.succeeded


class LowballClient:
    """Reports gas estimates slightly below what the ledger will charge."""

    def __init__(self, inner):
        self.inner = inner

    def estimate_gas(self, call):
        return self.inner.estimate_gas(call) - 1

    def __getattr__(self, name):
        return getattr(self.inner, name)


class TestRecordTransfer:

    def test_receipt_fields(self, anchor, ledger):
        receipt = _record(anchor)

        assert receipt.succeeded
        assert receipt.tx_hash.startswith("0x")
        assert receipt.chain == "simulated"
        assert receipt.duplicate is False
        record = ledger.get_transfer_record("KAMYS123456789")
        assert record["from"] == holder_address("seller")
        assert record["to"] == holder_address("buyer")
        assert record["amount"] == "500000"

    def test_duplicate_is_not_resubmitted(self, anchor, ledger):
        first = _record(anchor)
        second = _record(anchor)

        assert second.duplicate is True
        assert second.tx_hash == first.tx_hash
        assert ledger.submit_count == 1

    def test_different_transfer_is_submitted(self, anchor, ledger):
        _record(anchor, "TXN000000010001")
        _record(anchor, "TXN000000010002")
        assert len(ledger.transfer_records("KAMYS123456789")) == 2

    def test_connection_error_is_unavailable(self, anchor, ledger):
        ledger.fail_next_submissions = 1
        with pytest.raises(Unavailable):
            _record(anchor)
        assert ledger.submit_count == 0

    def test_revert_is_rejected(self, anchor, ledger):
        ledger.reject_reason = "not authorised"
        with pytest.raises(Rejected, match="not authorised"):
            _record(anchor)

    def test_missing_receipt_is_unconfirmed_with_hash(self, anchor, ledger):
        ledger.hold_confirmations = True
        with pytest.raises(Unconfirmed) as excinfo:
            _record(anchor)
        assert excinfo.value.tx_hash
        assert ledger.transactions()[0]["tx_hash"] == excinfo.value.tx_hash

    def test_pending_hash_is_waited_on(self, anchor, ledger):
        ledger.hold_confirmations = True
        with pytest.raises(Unconfirmed) as excinfo:
            _record(anchor)
        pending = excinfo.value.tx_hash

        timer = threading.Timer(0.01, ledger.release)
        timer.start()
        anchor.confirmation_timeout = 2.0
        try:
            receipt = _record(anchor, pending=pending)
        finally:
            timer.cancel()

        assert receipt.tx_hash == pending
        assert ledger.submit_count == 1

    def test_dropped_pending_hash_resubmits(self, anchor, ledger):
        ledger.hold_confirmations = True
        with pytest.raises(Unconfirmed) as excinfo:
            _record(anchor)
        ledger.release(drop=True)

        receipt = _record(anchor, pending=excinfo.value.tx_hash)
        assert receipt.tx_hash != excinfo.value.tx_hash
        assert ledger.submit_count == 2

    def test_pending_registration_is_not_resubmitted(self, anchor, ledger):
        ledger.hold_confirmations = True
        with pytest.raises(Unconfirmed) as excinfo:
            anchor.register_asset("KAMYS123456789", "seller", "ab" * 32)
        pending = excinfo.value.tx_hash

        with pytest.raises(Unconfirmed, match="still unconfirmed"):
            anchor.register_asset("KAMYS123456789", "seller", "ab" * 32, pending_tx_hash=pending)
        ledger.release()
        receipt = anchor.register_asset("KAMYS123456789", "seller", "ab" * 32, pending_tx_hash=pending)

        assert receipt.tx_hash == pending
        assert ledger.submit_count == 1

    def test_hanging_client_is_bounded(self):
        class HangingLedger(SimulatedLedger):
            def wait_for_confirmation(self, tx_hash, timeout):
                time.sleep(1.0)
                return None

        anchor = LedgerAnchor(HangingLedger(), CONTRACT, confirmation_timeout=0.05, timeout_grace=0.05)
        started = time.monotonic()
        with pytest.raises(Unconfirmed):
            _record(anchor)
        assert time.monotonic() - started < 0.9


class TestBreaker:

    def test_breaker_opens_after_consecutive_failures(self, ledger):
        breaker = CircuitBreaker("ledger-submit", failure_threshold=2, timeout_seconds=60)
        anchor = LedgerAnchor(ledger, CONTRACT, breaker=breaker, confirmation_timeout=0.05)
        ledger.fail_next_submissions = 2
        for _ in range(2):
            with pytest.raises(Unavailable):
                _record(anchor)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(Unavailable, match="circuit open"):
            _record(anchor)
        assert ledger.submit_count == 0

    def test_reverts_do_not_trip_default_breaker(self, anchor, ledger):
        ledger.reject_reason = "paused"
        for _ in range(6):
            with pytest.raises(Rejected):
                _record(anchor)
        assert anchor.breaker.state == CircuitState.CLOSED


class TestOtherOperations:

    def test_register_asset(self, anchor, ledger):
        receipt = anchor.register_asset("KAMYS123456789", "seller", "c" * 64)
        assert receipt.succeeded
        tx = ledger.transactions(LedgerOperation.REGISTER)[0]
        assert tx["call"]["args"]["certificate_hash"] == "c" * 64

    def test_update_status(self, anchor, ledger):
        anchor.update_status("KAMYS123456789", "DISPUTED")
        tx = ledger.transactions(LedgerOperation.STATUS_UPDATE)[0]
        assert tx["call"]["args"] == {"status": "DISPUTED"}


class TestSimulatedLedger:

    def test_state_survives_reload(self, tmp_path):
        path = tmp_path / "ledger.json"
        anchor = LedgerAnchor(SimulatedLedger(path=path), CONTRACT, confirmation_timeout=0.05)
        first = _record(anchor)

        reopened = SimulatedLedger(path=path)
        assert reopened.get_transfer_record("KAMYS123456789")["tx_hash"] == first.tx_hash
        assert json.loads(path.read_text())["nonce"] == 1

    def test_calldata_is_stable(self):
        call = LedgerCall(
            operation=LedgerOperation.TRANSFER,
            contract_address=CONTRACT,
            asset_id="KAMYS123456789",
            args={"to": "b", "from": "a"},
        )
        again = LedgerCall.from_dict(call.to_dict())
        assert call.calldata == again.calldata
