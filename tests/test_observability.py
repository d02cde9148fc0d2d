"""
Observability tests: structured log output, correlation ids and the
hash-chained audit trail.
"""

import io
import json

import pytest

from titlechain.registry.observability import (
    AuditAction,
    AuditLogger,
    RegistryLayer,
    configure_logging,
    correlation_id_var,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    timed_operation,
)


@pytest.fixture
def log_stream():
    stream = io.StringIO()
    configure_logging(level="debug", fmt="json", stream=stream)
    yield stream
    configure_logging()


def _lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


class TestStructuredLogging:

    def test_json_line_carries_context(self, log_stream):
        token = set_correlation_id("corr-review-1")
        try:
            get_logger("mint", RegistryLayer.CERTIFICATE).info(
                "Certificate minted", operation="mint", transfer_id="TXN1",
            )
        finally:
            correlation_id_var.reset(token)

        [event] = _lines(log_stream)
        assert event["message"] == "Certificate minted"
        assert event["level"] == "info"
        assert event["logger"] == "titlechain.certificate.mint"
        assert event["layer"] == "certificate"
        assert event["operation"] == "mint"
        assert event["correlation_id"] == "corr-review-1"
        assert event["context"] == {"transfer_id": "TXN1"}

    def test_error_with_traceback(self, log_stream):
        logger = get_logger("anchor", RegistryLayer.ANCHOR)
        try:
            raise ConnectionError("rpc down")
        except ConnectionError:
            logger.error("Submission failed", error_code="Unavailable", exc_info=True)

        [event] = _lines(log_stream)
        assert event["error_code"] == "Unavailable"
        assert "ConnectionError: rpc down" in event["exception"]

    def test_level_filtering(self):
        stream = io.StringIO()
        configure_logging(level="warning", stream=stream)
        try:
            logger = get_logger("quiet", RegistryLayer.STORE)
            logger.info("hidden")
            logger.warning("shown")
        finally:
            configure_logging()
        assert [e["message"] for e in _lines(stream)] == ["shown"]

    def test_text_format(self):
        stream = io.StringIO()
        configure_logging(fmt="text", stream=stream)
        try:
            get_logger("cli", RegistryLayer.CLI).info("Party added", party_id="p1")
        finally:
            configure_logging()
        assert stream.getvalue().strip() == "info     titlechain.cli.cli: Party added [party_id=p1]"

    def test_timed_operation(self, log_stream):
        logger = get_logger("saga", RegistryLayer.COORDINATOR)

        @timed_operation(logger, "drive")
        def work(fail=False):
            if fail:
                raise RuntimeError("x")
            return "done"

        assert work() == "done"
        with pytest.raises(RuntimeError):
            work(fail=True)

        ok, failed = _lines(log_stream)
        assert ok["message"] == "Operation drive completed"
        assert ok["duration_ms"] >= 0
        assert failed["level"] == "warning"
        assert failed["message"] == "Operation drive failed"


def test_correlation_id_is_minted_once():
    token = correlation_id_var.set("")
    try:
        first = get_correlation_id()
        assert first.startswith("corr-")
        assert get_correlation_id() == first
    finally:
        correlation_id_var.reset(token)


class TestAuditTrail:

    def test_events_are_chained(self, log_stream):
        audit = AuditLogger()
        first = audit.log("admin", AuditAction.TRANSFER_APPROVE, "transfer", "TXN1")
        second = audit.log("admin", AuditAction.TRANSFER_COMPLETE, "transfer", "TXN1", tx_hash="0xabc")

        assert first.previous_hash == AuditLogger.GENESIS
        assert second.previous_hash == first.event_hash
        assert second.details == {"tx_hash": "0xabc"}
        assert audit.verify_chain()

        logged = [e for e in _lines(log_stream) if e.get("operation") == "audit"]
        assert [e["context"]["action"] for e in logged] == ["TRANSFER_APPROVE", "TRANSFER_COMPLETE"]

    def test_tampering_is_detected(self):
        audit = AuditLogger()
        audit.log("admin", AuditAction.TRANSFER_APPROVE, "transfer", "TXN1")
        audit.log("admin", AuditAction.TRANSFER_COMPLETE, "transfer", "TXN1")

        audit._events[0].outcome = "failure"
        assert not audit.verify_chain()

    def test_removal_is_detected(self):
        audit = AuditLogger()
        for action in (AuditAction.ASSET_DIGITIZE, AuditAction.ASSET_VERIFY, AuditAction.ASSET_CERTIFY):
            audit.log("admin", action, "asset", "KAMYS1")

        del audit._events[1]
        assert not audit.verify_chain()
