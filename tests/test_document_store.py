"""
Document store tests.

Both backends share one optimistic-locking contract, so every contract test
runs against the in-memory store and the JSON file store.
"""

import json
import threading
from decimal import Decimal

import pytest

from titlechain.registry.asset import AssetRecord, OwnershipEntry, VerificationStatus
from titlechain.registry.errors import Conflict, InvalidRequest, InvalidState, NotFound
from titlechain.registry.repositories import AssetRepository, TransferRepository
from titlechain.registry.store import InMemoryDocumentStore, JsonFileDocumentStore
from titlechain.registry.transfer import TransferRequest, TransferStatus


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryDocumentStore()
    return JsonFileDocumentStore(tmp_path / "docs")


class TestContract:

    def test_insert_starts_at_version_one(self, store):
        created, doc = store.insert("assets", "A1", {"n": 1})
        assert created is True
        assert doc.version == 1
        assert store.get("assets", "A1").data == {"n": 1}

    def test_insert_does_not_overwrite(self, store):
        store.insert("assets", "A1", {"n": 1})
        created, doc = store.insert("assets", "A1", {"n": 2})
        assert created is False
        assert doc.data == {"n": 1}

    def test_swap_bumps_version(self, store):
        store.insert("assets", "A1", {"n": 1})
        swapped, doc = store.compare_and_swap("assets", "A1", 1, {"n": 2})
        assert swapped is True
        assert doc.version == 2
        assert store.get("assets", "A1").data == {"n": 2}

    def test_stale_swap_returns_current(self, store):
        store.insert("assets", "A1", {"n": 1})
        store.compare_and_swap("assets", "A1", 1, {"n": 2})

        swapped, doc = store.compare_and_swap("assets", "A1", 1, {"n": 3})
        assert swapped is False
        assert doc.version == 2
        assert doc.data == {"n": 2}

    def test_swap_on_missing_key(self, store):
        assert store.compare_and_swap("assets", "nope", 1, {}) == (False, None)
        assert store.get("assets", "nope") is None

    @pytest.mark.parametrize("key", ["", "../escape", "has space", ".hidden"])
    def test_invalid_keys(self, store, key):
        with pytest.raises(InvalidRequest):
            store.insert("assets", key, {})

    def test_returned_documents_are_copies(self, store):
        store.insert("assets", "A1", {"nested": {"n": 1}})
        doc = store.get("assets", "A1")
        doc.data["nested"]["n"] = 99
        assert store.get("assets", "A1").data == {"nested": {"n": 1}}

    def test_keys_and_scan(self, store):
        for key in ("B", "A", "C"):
            store.insert("assets", key, {"k": key})
        store.insert("transfers", "T", {})
        assert store.keys("assets") == ["A", "B", "C"]
        assert [d.data["k"] for d in store.scan("assets")] == ["A", "B", "C"]
        assert store.keys("empty") == []

    def test_concurrent_swaps_have_one_winner(self, store):
        store.insert("assets", "A1", {"winner": None})
        barrier = threading.Barrier(8)
        results = []

        def contender(n):
            barrier.wait()
            swapped, _ = store.compare_and_swap("assets", "A1", 1, {"winner": n})
            results.append(swapped)

        threads = [threading.Thread(target=contender, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert store.get("assets", "A1").version == 2


def test_file_layout(tmp_path):
    store = JsonFileDocumentStore(tmp_path)
    store.insert("transfers", "TXN1", {"status": "INITIATED"})
    body = json.loads((tmp_path / "transfers" / "TXN1.json").read_text())
    assert body["version"] == 1
    assert body["data"] == {"status": "INITIATED"}
    assert not list((tmp_path / "transfers").glob(".tmp-*"))

    reopened = JsonFileDocumentStore(tmp_path)
    assert reopened.get("transfers", "TXN1").version == 1


def _asset(asset_id="KAMYS123456001"):
    return AssetRecord(
        asset_id=asset_id,
        holder_id="seller",
        holder_name="Asha Rao",
        added_by="seller",
        verification_status=VerificationStatus.VERIFIED,
        history=[OwnershipEntry("seller", "Asha Rao", "2026-01-05T08:00:00+00:00")],
    )


class TestAssetRepository:

    def test_create_and_get(self, store):
        repo = AssetRepository(store)
        repo.create(_asset())
        record = repo.get("KAMYS123456001")
        assert record.version == 1
        assert record.holder_id == "seller"

    def test_duplicate_create(self, store):
        repo = AssetRepository(store)
        repo.create(_asset())
        with pytest.raises(Conflict):
            repo.create(_asset())

    def test_stale_working_copy_conflicts(self, store):
        repo = AssetRepository(store)
        repo.create(_asset())
        first = repo.get("KAMYS123456001")
        second = repo.get("KAMYS123456001")

        first.list_for_sale(Decimal("10"), "2026-03-01T00:00:00+00:00")
        repo.save(first)
        second.mark_disputed()
        with pytest.raises(Conflict, match="expected version 1, found 2"):
            repo.save(second)

    def test_inconsistent_record_is_not_written(self, store):
        repo = AssetRepository(store)
        repo.create(_asset())
        with pytest.raises(InvalidState):
            repo.update("KAMYS123456001", lambda a: setattr(a, "holder_id", "buyer"))
        assert repo.get("KAMYS123456001").version == 1

    def test_missing(self, store):
        repo = AssetRepository(store)
        assert repo.find("KAMYS000000000") is None
        with pytest.raises(NotFound):
            repo.get("KAMYS000000000")


class TestTransferRepository:

    def _request(self, transfer_id, asset_id="KAMYS123456001", status=TransferStatus.INITIATED):
        return TransferRequest(
            transfer_id=transfer_id,
            asset_id=asset_id,
            seller_id="seller",
            buyer_id="buyer",
            amount=Decimal("1"),
            status=status,
        )

    def test_stale_save_names_prior_status(self, store):
        repo = TransferRepository(store)
        repo.create(self._request("TXN1"))
        first = repo.get("TXN1")
        second = repo.get("TXN1")
        first.transition_to(TransferStatus.REJECTED)
        repo.save(first)

        second.transition_to(TransferStatus.DOCUMENTS_SUBMITTED)
        with pytest.raises(Conflict, match="from INITIATED .now REJECTED"):
            repo.save(second, expected_status=TransferStatus.INITIATED)

    def test_queries(self, store):
        repo = TransferRepository(store)
        repo.create(self._request("TXN1"))
        repo.create(self._request("TXN2", status=TransferStatus.COMPLETED))
        repo.create(self._request("TXN3", asset_id="KAMYS999999001", status=TransferStatus.APPROVED))

        assert [t.transfer_id for t in repo.with_status([TransferStatus.APPROVED])] == ["TXN3"]
        assert [t.transfer_id for t in repo.for_asset("KAMYS123456001")] == ["TXN1", "TXN2"]
        assert [t.transfer_id for t in repo.open_for_asset("KAMYS123456001")] == ["TXN1"]
