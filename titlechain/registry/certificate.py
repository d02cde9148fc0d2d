"""
Certificate Minter

Produces the signed, QR-bearing certificate for an approved transfer and
stores it in the content-addressed store.

Minting is idempotent per transfer id in two independent ways:

1. A transfer that already carries a certificate reference is returned
   unchanged; nothing is rendered or stored.
2. The certificate body is a pure function of the transfer's persisted data
   (the proof's ``created`` is the approval time and Ed25519 signatures are
   deterministic), so re-minting after a crash that lost the reference
   produces byte-identical content and therefore the same content hash.

Store failures surface as ``StoreUnavailable`` (retryable); the minter never
touches the transfer document itself.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

import qrcode
import qrcode.constants
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from qrcode.image.svg import SvgPathImage

from titlechain.artifacts import ContentStore
from titlechain.proofs import add_ed25519_proof, canonicalize_json, verify_document
from titlechain.registry.asset import AssetRecord
from titlechain.registry.errors import InvalidState, StoreUnavailable
from titlechain.registry.observability import RegistryLayer, get_logger
from titlechain.registry.resilience import RetryExhaustedError, RetryPolicy
from titlechain.registry.transfer import TransferRequest, TransferStatus


logger = get_logger("minter", RegistryLayer.CERTIFICATE)

TRANSFER_CERTIFICATE_TYPE = "transfer-certificate"
LAND_CERTIFICATE_TYPE = "land-certificate"

_ERROR_CORRECTION = {
    "L": qrcode.constants.ERROR_CORRECT_L,
    "M": qrcode.constants.ERROR_CORRECT_M,
    "Q": qrcode.constants.ERROR_CORRECT_Q,
    "H": qrcode.constants.ERROR_CORRECT_H,
}


@dataclass(frozen=True)
class CertificateReference:
    """Where a minted certificate lives."""
    content_hash: str
    url: str
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"content_hash": self.content_hash, "url": self.url, "name": self.name}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CertificateReference":
        return cls(content_hash=str(d["content_hash"]), url=str(d["url"]), name=str(d.get("name", "")))


def render_qr_svg(payload: str, error_correction: str = "M") -> str:
    """Encode ``payload`` as an SVG QR code (no raster backend required)."""
    qr = qrcode.QRCode(
        error_correction=_ERROR_CORRECTION[error_correction],
        box_size=10,
        border=4,
        image_factory=SvgPathImage,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    svg = qr.make_image().to_string()
    return svg.decode("utf-8") if isinstance(svg, bytes) else svg


class CertificateMinter:
    """
    Renders and stores certificates.

    ``retry`` wraps each content-store write; exhausting it raises
    ``StoreUnavailable`` to the caller.
    """

    def __init__(
        self,
        store: ContentStore,
        signing_key: Ed25519PrivateKey,
        verification_method: str,
        verify_base_url: str = "https://titlechain.local/verify/",
        qr_error_correction: str = "M",
        retry: Optional[RetryPolicy] = None,
    ):
        if qr_error_correction not in _ERROR_CORRECTION:
            raise ValueError(f"unknown QR error correction level: {qr_error_correction}")
        self.store = store
        self.signing_key = signing_key
        self.verification_method = verification_method
        self.verify_base_url = verify_base_url if verify_base_url.endswith("/") else verify_base_url + "/"
        self.qr_error_correction = qr_error_correction
        self.retry = retry or RetryPolicy(max_attempts=3, retryable_exceptions=(StoreUnavailable,))
        self.minted = 0

    @property
    def issuer(self) -> str:
        return self.verification_method.split("#", 1)[0]

    # -------------------------------------------------------------------------
    # Transfer certificates
    # -------------------------------------------------------------------------

    def verification_payload(self, request: TransferRequest) -> Dict[str, Any]:
        return {
            "asset_id": request.asset_id,
            "holder_id": request.buyer_id,
            "holder_name": request.buyer_name,
            "transfer_id": request.transfer_id,
            "verify_url": f"{self.verify_base_url}{request.transfer_id}",
        }

    def build_transfer_certificate(self, request: TransferRequest, asset: AssetRecord) -> Dict[str, Any]:
        if request.status != TransferStatus.APPROVED or not request.approved_at:
            raise InvalidState(f"transfer {request.transfer_id} is not approved")
        payload = self.verification_payload(request)
        document: Dict[str, Any] = {
            "type": "LandTransferCertificate",
            "issuer": self.issuer,
            "issued_at": request.approved_at,
            "asset": {
                "asset_id": asset.asset_id,
                "descriptors": asset.descriptors,
            },
            "transfer": {
                "transfer_id": request.transfer_id,
                "transfer_type": request.transfer_type.value,
                "amount": str(request.amount),
                "approved_at": request.approved_at,
                "approved_by": request.review.reviewer_id if request.review else "",
            },
            "holder": {"holder_id": request.buyer_id, "holder_name": request.buyer_name},
            "previous_holder": {"holder_id": request.seller_id, "holder_name": request.seller_name},
            "verification": {
                "payload": payload,
                "qr_svg": render_qr_svg(canonicalize_json(payload).decode("utf-8"), self.qr_error_correction),
            },
        }
        return add_ed25519_proof(document, self.signing_key, self.verification_method, request.approved_at)

    def mint(self, request: TransferRequest, asset: AssetRecord) -> CertificateReference:
        """Return the transfer's certificate, minting and storing it if absent."""
        if request.certificate:
            logger.debug(
                "Certificate already recorded; skipping mint",
                operation="mint",
                transfer_id=request.transfer_id,
            )
            return CertificateReference.from_dict(request.certificate)

        document = self.build_transfer_certificate(request, asset)
        name = f"transfer-certificate-{request.transfer_id}.json"
        ref = self._store(canonicalize_json(document), name, TRANSFER_CERTIFICATE_TYPE)
        self.minted += 1
        logger.info(
            "Transfer certificate minted",
            operation="mint",
            transfer_id=request.transfer_id,
            asset_id=request.asset_id,
            content_hash=ref.content_hash,
        )
        return ref

    # -------------------------------------------------------------------------
    # Base land certificates
    # -------------------------------------------------------------------------

    def mint_land_certificate(self, asset: AssetRecord) -> CertificateReference:
        """Mint the digitization certificate for a verified asset."""
        if asset.base_certificate:
            return CertificateReference.from_dict(asset.base_certificate)
        if not asset.is_verified or not asset.verified_at:
            raise InvalidState(f"asset {asset.asset_id} is not verified")

        payload = {
            "asset_id": asset.asset_id,
            "holder_id": asset.holder_id,
            "holder_name": asset.holder_name,
            "verify_url": f"{self.verify_base_url}asset/{asset.asset_id}",
        }
        document: Dict[str, Any] = {
            "type": "LandTitleCertificate",
            "issuer": self.issuer,
            "issued_at": asset.verified_at,
            "asset": {"asset_id": asset.asset_id, "descriptors": asset.descriptors},
            "holder": {"holder_id": asset.holder_id, "holder_name": asset.holder_name},
            "verified_by": asset.verified_by,
            "verification": {
                "payload": payload,
                "qr_svg": render_qr_svg(canonicalize_json(payload).decode("utf-8"), self.qr_error_correction),
            },
        }
        add_ed25519_proof(document, self.signing_key, self.verification_method, asset.verified_at)
        ref = self._store(canonicalize_json(document), f"land-certificate-{asset.asset_id}.json", LAND_CERTIFICATE_TYPE)
        self.minted += 1
        logger.info(
            "Land certificate minted",
            operation="mint_land",
            asset_id=asset.asset_id,
            content_hash=ref.content_hash,
        )
        return ref

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------

    def _store(self, data: bytes, name: str, artifact_type: str) -> CertificateReference:
        def write() -> CertificateReference:
            try:
                digest = self.store.store(data, name, artifact_type)
                return CertificateReference(content_hash=digest, url=self.store.resolve(digest), name=name)
            except OSError as e:
                raise StoreUnavailable(f"certificate store write failed: {e}") from e

        try:
            return self.retry.execute(write)
        except RetryExhaustedError as e:
            logger.warning(
                "Certificate store unavailable",
                operation="mint",
                artifact=name,
                attempts=e.attempts,
                error=str(e.last_exception),
            )
            raise StoreUnavailable(str(e.last_exception)) from e


def load_certificate(store: ContentStore, reference: Dict[str, Any]) -> Dict[str, Any]:
    """Fetch a stored certificate and check its content hash and proof."""
    ref = CertificateReference.from_dict(reference)
    document = json.loads(store.fetch(ref.content_hash).decode("utf-8"))
    result = verify_document(document)
    if not result.ok:
        raise InvalidState(f"certificate {ref.content_hash} failed verification: {result.error}")
    return document
