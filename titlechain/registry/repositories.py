"""
Guarded accessors for asset and transfer documents.

Every write is a compare-and-swap against the version the working copy was
read at. A lost race surfaces as ``Conflict``; callers re-fetch and decide
whether the operation still applies.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import Callable, Iterable, List, Optional

from titlechain.registry.asset import AssetRecord
from titlechain.registry.errors import Conflict, NotFound
from titlechain.registry.store import DocumentStore
from titlechain.registry.transfer import TransferRequest, TransferStatus


class AssetRepository:
    COLLECTION = "assets"

    def __init__(self, store: DocumentStore):
        self.store = store

    def find(self, asset_id: str) -> Optional[AssetRecord]:
        doc = self.store.get(self.COLLECTION, asset_id)
        if doc is None:
            return None
        return AssetRecord.from_dict(doc.data, version=doc.version)

    def get(self, asset_id: str) -> AssetRecord:
        record = self.find(asset_id)
        if record is None:
            raise NotFound(f"asset {asset_id} not found")
        return record

    def create(self, record: AssetRecord) -> AssetRecord:
        record.assert_consistent()
        created, doc = self.store.insert(self.COLLECTION, record.asset_id, record.to_dict())
        if not created:
            raise Conflict(f"asset {record.asset_id} already exists")
        record.version = doc.version
        return record

    def save(self, record: AssetRecord) -> AssetRecord:
        """Write back a working copy; fails with Conflict if it is stale."""
        record.assert_consistent()
        swapped, doc = self.store.compare_and_swap(
            self.COLLECTION, record.asset_id, record.version, record.to_dict()
        )
        if doc is None:
            raise NotFound(f"asset {record.asset_id} not found")
        if not swapped:
            raise Conflict(
                f"asset {record.asset_id} was modified concurrently "
                f"(expected version {record.version}, found {doc.version})"
            )
        record.version = doc.version
        return record

    def update(self, asset_id: str, mutate: Callable[[AssetRecord], None]) -> AssetRecord:
        """Read, apply ``mutate`` and write back in one optimistic step."""
        record = self.get(asset_id)
        mutate(record)
        return self.save(record)

    def all(self) -> List[AssetRecord]:
        return [AssetRecord.from_dict(doc.data, version=doc.version) for doc in self.store.scan(self.COLLECTION)]


class TransferRepository:
    COLLECTION = "transfers"

    def __init__(self, store: DocumentStore):
        self.store = store

    def find(self, transfer_id: str) -> Optional[TransferRequest]:
        doc = self.store.get(self.COLLECTION, transfer_id)
        if doc is None:
            return None
        return TransferRequest.from_dict(doc.data, version=doc.version)

    def get(self, transfer_id: str) -> TransferRequest:
        request = self.find(transfer_id)
        if request is None:
            raise NotFound(f"transfer {transfer_id} not found")
        return request

    def create(self, request: TransferRequest) -> TransferRequest:
        created, doc = self.store.insert(self.COLLECTION, request.transfer_id, request.to_dict())
        if not created:
            raise Conflict(f"transfer {request.transfer_id} already exists")
        request.version = doc.version
        return request

    def save(self, request: TransferRequest, expected_status: Optional[TransferStatus] = None) -> TransferRequest:
        """
        Write back a working copy.

        ``request.version`` is the concurrency token. ``expected_status`` is
        informational: it names the prior status in the Conflict message.
        """
        swapped, doc = self.store.compare_and_swap(
            self.COLLECTION, request.transfer_id, request.version, request.to_dict()
        )
        if doc is None:
            raise NotFound(f"transfer {request.transfer_id} not found")
        if not swapped:
            current = doc.data.get("status")
            expected = f" from {expected_status.value}" if expected_status else ""
            raise Conflict(
                f"transfer {request.transfer_id} changed concurrently{expected} "
                f"(now {current}, version {doc.version})"
            )
        request.version = doc.version
        return request

    def all(self) -> List[TransferRequest]:
        return [TransferRequest.from_dict(doc.data, version=doc.version) for doc in self.store.scan(self.COLLECTION)]

    def with_status(self, statuses: Iterable[TransferStatus]) -> List[TransferRequest]:
        wanted = set(statuses)
        return [t for t in self.all() if t.status in wanted]

    def for_asset(self, asset_id: str) -> List[TransferRequest]:
        return [t for t in self.all() if t.asset_id == asset_id]

    def open_for_asset(self, asset_id: str) -> List[TransferRequest]:
        return [t for t in self.for_asset(asset_id) if not t.is_terminal]
