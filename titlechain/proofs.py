#!/usr/bin/env python3
"""titlechain.proofs

Ed25519 proofs over canonical JSON, used to sign land and transfer
certificates so that anyone holding the certificate bytes can check that the
registry issued them.

Profile / invariants:
- issuer identifiers are `did:key` (Ed25519 only)
- the proof object carries a raw Ed25519 signature as base64url (`jws`, no
  JOSE header)
- the signing input is the canonical JSON bytes of the document with `proof`
  removed; canonicalization is byte-for-byte deterministic, which is what makes
  a re-minted certificate hash to the same digest
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import pathlib
import re
from dataclasses import dataclass
from decimal import Decimal
from datetime import datetime, timezone
from typing import Any, Dict, Tuple, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey


PROOF_TYPE = "TitlechainEd25519Signature2026"

B58_ALPHABET = b"123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
B58_MAP = {c: i for i, c in enumerate(B58_ALPHABET)}

_B64URL_RE = re.compile(r"^[A-Za-z0-9_-]*$")


def b58encode(b: bytes) -> str:
    n_pad = len(b) - len(b.lstrip(b"\x00"))
    num = int.from_bytes(b, "big")
    out = bytearray()
    while num > 0:
        num, rem = divmod(num, 58)
        out.append(B58_ALPHABET[rem])
    out.extend(B58_ALPHABET[0] for _ in range(n_pad))
    out.reverse()
    return out.decode("ascii")


def b58decode(s: str) -> bytes:
    raw = s.encode("ascii")
    num = 0
    for c in raw:
        if c not in B58_MAP:
            raise ValueError("Invalid base58 character")
        num = num * 58 + B58_MAP[c]
    n_pad = len(raw) - len(raw.lstrip(B58_ALPHABET[:1]))
    full = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * n_pad + full


def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    pad = "=" * ((4 - len(s) % 4) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


# ---------------------------------------------------------------------------
# Canonical bytes
# ---------------------------------------------------------------------------


def _coerce_json_types(obj: Any) -> Any:
    if isinstance(obj, float):
        raise ValueError("floats are not allowed in canonical JSON; use Decimal or str")
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, datetime):
        if obj.tzinfo is None:
            obj = obj.replace(tzinfo=timezone.utc)
        return obj.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(obj, dict):
        return {str(k): _coerce_json_types(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_coerce_json_types(v) for v in obj]
    return obj


def canonicalize_json(obj: Any) -> bytes:
    """Return canonical JSON bytes for hashing/signing.

    Properties:
    - keys sorted
    - no insignificant whitespace
    - UTF-8
    - rejects floats (monetary values travel as decimal strings)
    - coerces datetimes to RFC3339 UTC strings
    """
    clean = _coerce_json_types(obj)
    return json.dumps(clean, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def signing_input(document: Dict[str, Any]) -> bytes:
    """Canonical signing input: the document without its `proof` member."""
    return canonicalize_json({k: v for k, v in document.items() if k != "proof"})


# ---------------------------------------------------------------------------
# did:key (Ed25519)
# ---------------------------------------------------------------------------


def did_key_from_ed25519_public_key(pub: bytes) -> str:
    # multicodec 0xed01 + 32-byte pubkey
    return "did:key:z" + b58encode(bytes([0xED, 0x01]) + pub)


def ed25519_public_key_from_did_key(did: str) -> Ed25519PublicKey:
    base = did.split("#", 1)[0]
    if not base.startswith("did:key:z"):
        raise ValueError(f"unsupported DID: {did}")
    raw = b58decode(base[len("did:key:z"):])
    if len(raw) != 34 or raw[:2] != bytes([0xED, 0x01]):
        raise ValueError("did:key is not an Ed25519 public key")
    return Ed25519PublicKey.from_public_bytes(raw[2:])


@dataclass
class ProofResult:
    verification_method: str
    ok: bool
    error: str = ""


def add_ed25519_proof(
    document: Dict[str, Any],
    private_key: Ed25519PrivateKey,
    verification_method: str,
    created: str,
) -> Dict[str, Any]:
    """Attach an Ed25519 proof to the document and return it.

    `created` is supplied by the caller rather than read from the clock so the
    signed bytes stay a pure function of the document contents.
    """
    sig = private_key.sign(signing_input(document))
    document["proof"] = {
        "type": PROOF_TYPE,
        "created": created,
        "verificationMethod": verification_method,
        "proofPurpose": "assertionMethod",
        "jws": b64url_encode(sig),
    }
    return document


def verify_document(document: Dict[str, Any]) -> ProofResult:
    """Verify the single proof carried by a signed document."""
    proof = document.get("proof")
    if not isinstance(proof, dict):
        return ProofResult(verification_method="", ok=False, error="document has no proof")

    vm = str(proof.get("verificationMethod") or "")
    try:
        t = proof.get("type")
        if not isinstance(t, str) or not hmac.compare_digest(t, PROOF_TYPE):
            raise ValueError(f"Unsupported proof.type: {t!r}")
        jws = str(proof.get("jws") or "")
        if not jws or not _B64URL_RE.match(jws):
            raise ValueError("proof.jws must be a non-empty base64url string")
        sig = b64url_decode(jws)
        if len(sig) != 64:
            raise ValueError(f"Ed25519 signature must be 64 bytes, got {len(sig)}")
        ed25519_public_key_from_did_key(vm).verify(sig, signing_input(document))
    except Exception as ex:
        return ProofResult(verification_method=vm, ok=False, error=str(ex) or type(ex).__name__)
    return ProofResult(verification_method=vm, ok=True)


# ---------------------------------------------------------------------------
# Key material
# ---------------------------------------------------------------------------


def generate_ed25519_jwk(kid: str = "registry-1") -> Dict[str, Any]:
    """Generate a new Ed25519 OKP JWK keypair."""
    priv = Ed25519PrivateKey.generate()
    priv_bytes = priv.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    pub_bytes = priv.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return {
        "kty": "OKP",
        "crv": "Ed25519",
        "x": b64url_encode(pub_bytes),
        "d": b64url_encode(priv_bytes),
        "kid": kid,
    }


def load_ed25519_private_key_from_jwk(jwk: Dict[str, Any]) -> Tuple[Ed25519PrivateKey, str]:
    """Load an Ed25519 private key from an OKP JWK.

    Returns (private_key, verification_method).
    """
    if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
        raise ValueError("Only OKP/Ed25519 JWK is supported")
    d = jwk.get("d")
    x = jwk.get("x")
    if not d or not x:
        raise ValueError("JWK must include both 'd' (private) and 'x' (public)")

    priv = Ed25519PrivateKey.from_private_bytes(b64url_decode(d))
    did = did_key_from_ed25519_public_key(b64url_decode(x))
    kid = str(jwk.get("kid") or "registry-1")
    return priv, f"{did}#{kid}"


def load_or_create_signing_key(path: Union[str, pathlib.Path]) -> Tuple[Ed25519PrivateKey, str]:
    """Load the registry signing key, generating and persisting one if absent."""
    p = pathlib.Path(path)
    if not p.exists():
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(generate_ed25519_jwk(), indent=2), encoding="utf-8")
    jwk = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(jwk, dict):
        raise ValueError(f"signing key file must contain a JWK object: {p}")
    return load_ed25519_private_key_from_jwk(jwk)
