"""
Versioned Document Stores

The Asset Ledger Record and the Transfer Request are independently addressable
JSON documents. Every write is conditioned on the version the writer last read
(compare-and-swap); blind overwrites are not offered.

    get(collection, key)                          -> VersionedDocument | None
    insert(collection, key, data)                 -> (created, current)
    compare_and_swap(collection, key, v, data)    -> (swapped, current)

Versions start at 1 on insert and increase by one per successful swap.
Documents are deep-copied on the way in and out, so callers can never mutate
stored state except through compare_and_swap.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import copy
import json
import os
import re
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple

from titlechain.registry.errors import InvalidRequest


_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def _validate_key(kind: str, value: str) -> str:
    if not isinstance(value, str) or not _KEY_RE.match(value):
        raise InvalidRequest(f"invalid {kind}: {value!r}")
    return value


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class VersionedDocument:
    """A stored document together with its concurrency token."""
    key: str
    version: int
    updated_at: str
    data: Dict[str, Any] = field(default_factory=dict)

    def copy_data(self) -> Dict[str, Any]:
        return copy.deepcopy(self.data)


class DocumentStore(Protocol):
    def get(self, collection: str, key: str) -> Optional[VersionedDocument]:
        ...

    def insert(self, collection: str, key: str, data: Dict[str, Any]) -> Tuple[bool, VersionedDocument]:
        ...

    def compare_and_swap(
        self,
        collection: str,
        key: str,
        expected_version: int,
        data: Dict[str, Any],
    ) -> Tuple[bool, Optional[VersionedDocument]]:
        ...

    def keys(self, collection: str) -> List[str]:
        ...

    def scan(self, collection: str) -> Iterator[VersionedDocument]:
        ...


class InMemoryDocumentStore:
    """
    Thread-safe in-process document store.

    Mirrors the optimistic locking contract of the file store; used by tests
    and by embedders that bring their own persistence.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, VersionedDocument]] = {}
        self._lock = threading.RLock()

    def get(self, collection: str, key: str) -> Optional[VersionedDocument]:
        with self._lock:
            doc = self._data.get(collection, {}).get(key)
            if doc is None:
                return None
            return VersionedDocument(doc.key, doc.version, doc.updated_at, doc.copy_data())

    def insert(self, collection: str, key: str, data: Dict[str, Any]) -> Tuple[bool, VersionedDocument]:
        _validate_key("collection", collection)
        _validate_key("key", key)
        with self._lock:
            bucket = self._data.setdefault(collection, {})
            current = bucket.get(key)
            if current is not None:
                return (False, VersionedDocument(current.key, current.version, current.updated_at, current.copy_data()))
            doc = VersionedDocument(key, 1, _now(), copy.deepcopy(data))
            bucket[key] = doc
            return (True, VersionedDocument(key, 1, doc.updated_at, doc.copy_data()))

    def compare_and_swap(
        self,
        collection: str,
        key: str,
        expected_version: int,
        data: Dict[str, Any],
    ) -> Tuple[bool, Optional[VersionedDocument]]:
        """
        Atomically replace the document if its version still matches.

        Returns (success, new document or current document). A missing key
        returns (False, None).
        """
        with self._lock:
            bucket = self._data.get(collection, {})
            current = bucket.get(key)
            if current is None:
                return (False, None)
            if current.version != expected_version:
                return (False, VersionedDocument(current.key, current.version, current.updated_at, current.copy_data()))
            doc = VersionedDocument(key, current.version + 1, _now(), copy.deepcopy(data))
            bucket[key] = doc
            return (True, VersionedDocument(key, doc.version, doc.updated_at, doc.copy_data()))

    def keys(self, collection: str) -> List[str]:
        with self._lock:
            return sorted(self._data.get(collection, {}).keys())

    def scan(self, collection: str) -> Iterator[VersionedDocument]:
        for key in self.keys(collection):
            doc = self.get(collection, key)
            if doc is not None:
                yield doc


class JsonFileDocumentStore:
    """
    One JSON file per document under ``<root>/<collection>/<key>.json``.

    Each file holds ``{"version", "updated_at", "data"}``. Writes go through a
    temporary file and ``os.replace``; the version check and the replace run
    under a process-wide lock, so compare-and-swap is atomic for every writer
    sharing this store instance.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = threading.RLock()

    def _path(self, collection: str, key: str) -> Path:
        return self.root / _validate_key("collection", collection) / f"{_validate_key('key', key)}.json"

    def _read(self, path: Path, key: str) -> Optional[VersionedDocument]:
        if not path.exists():
            return None
        raw = json.loads(path.read_text(encoding="utf-8"))
        return VersionedDocument(
            key=key,
            version=int(raw["version"]),
            updated_at=str(raw.get("updated_at", "")),
            data=raw.get("data", {}),
        )

    def _write(self, path: Path, doc: VersionedDocument) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        body = {"version": doc.version, "updated_at": doc.updated_at, "data": doc.data}
        fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(body, fh, indent=2, sort_keys=True)
                fh.write("\n")
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get(self, collection: str, key: str) -> Optional[VersionedDocument]:
        with self._lock:
            return self._read(self._path(collection, key), key)

    def insert(self, collection: str, key: str, data: Dict[str, Any]) -> Tuple[bool, VersionedDocument]:
        path = self._path(collection, key)
        with self._lock:
            current = self._read(path, key)
            if current is not None:
                return (False, current)
            doc = VersionedDocument(key, 1, _now(), copy.deepcopy(data))
            self._write(path, doc)
            return (True, doc)

    def compare_and_swap(
        self,
        collection: str,
        key: str,
        expected_version: int,
        data: Dict[str, Any],
    ) -> Tuple[bool, Optional[VersionedDocument]]:
        path = self._path(collection, key)
        with self._lock:
            current = self._read(path, key)
            if current is None:
                return (False, None)
            if current.version != expected_version:
                return (False, current)
            doc = VersionedDocument(key, current.version + 1, _now(), copy.deepcopy(data))
            self._write(path, doc)
            return (True, doc)

    def keys(self, collection: str) -> List[str]:
        cdir = self.root / _validate_key("collection", collection)
        if not cdir.is_dir():
            return []
        return sorted(p.stem for p in cdir.glob("*.json") if not p.name.startswith("."))

    def scan(self, collection: str) -> Iterator[VersionedDocument]:
        for key in self.keys(collection):
            doc = self.get(collection, key)
            if doc is not None:
                yield doc
