#!/usr/bin/env python3
"""Content-addressed artifact storage (CAS) for registry documents.

Certificates and supporting documents are stored once and read many times,
addressed by the lowercase sha256 hex digest of their bytes:

  ``<store_root>/<type>/<digest>.<name>``

Where:
- ``<type>`` is a short lowercase artifact category (``land-certificate``,
  ``transfer-certificate``, ``transfer-document``)
- ``<digest>`` is the sha256 of the stored bytes
- ``<name>`` is the free-form filename supplied by the caller

Retrieval URLs are produced by joining the digest onto a gateway base URL, the
same way an IPFS gateway resolves a CID.

Both stores raise :class:`StoreUnavailable` for transient I/O failures so the
caller can retry; a digest that does not resolve raises ``FileNotFoundError``.
"""

from __future__ import annotations

import hashlib
import os
import pathlib
import re
import tempfile
import threading
from typing import Dict, List, Optional, Protocol, Tuple

from titlechain.registry.errors import StoreUnavailable


SHA256_HEX_RE = re.compile(r"^[a-f0-9]{64}$")
ARTIFACT_TYPE_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,63}$")
DEFAULT_GATEWAY_URL = "https://ipfs.io/ipfs/"


def normalize_artifact_type(t: str) -> str:
    """Normalize and validate an artifact type string."""
    tt = str(t or "").strip().lower()
    if not tt:
        raise ValueError("artifact_type is required")
    if not ARTIFACT_TYPE_RE.match(tt):
        raise ValueError(
            "artifact_type must match ^[a-z0-9][a-z0-9-]{0,63}$ (lowercase, no slashes)"
        )
    return tt


def normalize_digest(digest_sha256: str) -> str:
    dd = str(digest_sha256 or "").strip().lower()
    if not SHA256_HEX_RE.match(dd):
        raise ValueError("digest must be 64 lowercase hex chars")
    return dd


def content_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _safe_name(name: str) -> str:
    nn = str(name or "").strip()
    if os.path.sep in nn or "/" in nn or "\\" in nn:
        raise ValueError("artifact name must be a simple filename")
    return nn


def gateway_url(gateway: str, digest_sha256: str) -> str:
    base = gateway if gateway.endswith("/") else gateway + "/"
    return base + normalize_digest(digest_sha256)


class ContentStore(Protocol):
    """Store-once, read-many collaborator used by the certificate minter."""

    def store(self, data: bytes, name: str, artifact_type: str = "transfer-certificate") -> str:
        """Store bytes and return their content hash."""
        ...

    def resolve(self, digest_sha256: str) -> str:
        """Return a retrieval URL for a content hash."""
        ...

    def fetch(self, digest_sha256: str) -> bytes:
        """Return the stored bytes for a content hash."""
        ...


class InMemoryContentStore:
    """
    Process-local content store.

    Writing identical bytes twice is a no-op that returns the same digest;
    ``objects`` exposes the number of distinct stored blobs.
    """

    def __init__(self, gateway: str = DEFAULT_GATEWAY_URL):
        self._gateway = gateway
        self._blobs: Dict[str, Tuple[str, str, bytes]] = {}
        self._lock = threading.Lock()
        self.available = True

    def store(self, data: bytes, name: str, artifact_type: str = "transfer-certificate") -> str:
        if not self.available:
            raise StoreUnavailable("content store is unavailable")
        tt = normalize_artifact_type(artifact_type)
        digest = content_digest(data)
        with self._lock:
            self._blobs.setdefault(digest, (tt, _safe_name(name), bytes(data)))
        return digest

    def resolve(self, digest_sha256: str) -> str:
        dd = normalize_digest(digest_sha256)
        with self._lock:
            if dd not in self._blobs:
                raise FileNotFoundError(f"artifact not found in CAS: {dd}")
        return gateway_url(self._gateway, dd)

    def fetch(self, digest_sha256: str) -> bytes:
        dd = normalize_digest(digest_sha256)
        with self._lock:
            entry = self._blobs.get(dd)
        if entry is None:
            raise FileNotFoundError(f"artifact not found in CAS: {dd}")
        return entry[2]

    @property
    def objects(self) -> int:
        with self._lock:
            return len(self._blobs)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(entry[1] for entry in self._blobs.values())


class FileContentStore:
    """
    Directory-backed content store using the ``<type>/<digest>.<name>`` layout.

    Writes go through a temporary file and ``os.replace`` so a reader never
    observes a partially written artifact.
    """

    def __init__(self, root: pathlib.Path, gateway: str = DEFAULT_GATEWAY_URL):
        self.root = pathlib.Path(root)
        self._gateway = gateway

    def _candidates(self, digest_sha256: str) -> List[pathlib.Path]:
        dd = normalize_digest(digest_sha256)
        if not self.root.exists():
            return []
        out: List[pathlib.Path] = []
        for tdir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            for cand in sorted(tdir.glob(f"{dd}.*")):
                if cand.is_file():
                    out.append(cand)
        return out

    def store(self, data: bytes, name: str, artifact_type: str = "transfer-certificate") -> str:
        tt = normalize_artifact_type(artifact_type)
        digest = content_digest(data)
        dest = self.root / tt / f"{digest}.{_safe_name(name) or 'bin'}"
        try:
            if dest.exists():
                existing_hash = content_digest(dest.read_bytes())
                if existing_hash != digest:
                    raise ValueError(
                        f"Hash collision detected: existing artifact at {dest} has content hash "
                        f"{existing_hash} but expected {digest}"
                    )
                return digest
            dest.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=str(dest.parent), prefix=".tmp-")
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp, dest)
        except OSError as e:
            raise StoreUnavailable(f"failed to write artifact {dest.name}: {e}") from e
        return digest

    def locate(self, digest_sha256: str) -> Optional[pathlib.Path]:
        cands = self._candidates(digest_sha256)
        return cands[0] if cands else None

    def resolve(self, digest_sha256: str) -> str:
        if self.locate(digest_sha256) is None:
            raise FileNotFoundError(f"artifact not found in CAS: {normalize_digest(digest_sha256)}")
        return gateway_url(self._gateway, digest_sha256)

    def fetch(self, digest_sha256: str) -> bytes:
        path = self.locate(digest_sha256)
        if path is None:
            raise FileNotFoundError(f"artifact not found in CAS: {normalize_digest(digest_sha256)}")
        try:
            data = path.read_bytes()
        except OSError as e:
            raise StoreUnavailable(f"failed to read artifact {path.name}: {e}") from e
        if content_digest(data) != normalize_digest(digest_sha256):
            raise ValueError(f"CAS integrity failure for artifact {path}")
        return data
