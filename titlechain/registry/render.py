"""Render signed certificates to printable PDF.

The signed JSON document in the content store is the certificate of record;
the PDF is a derived view of it. The QR code encodes the same verification
payload as the SVG embedded in the document.
"""

from __future__ import annotations

import io
import pathlib
from typing import Any, Dict, List, Optional, Tuple, Union

from titlechain.proofs import canonicalize_json


TITLES = {
    "LandTitleCertificate": "LAND TITLE CERTIFICATE",
    "LandTransferCertificate": "TRANSFER CERTIFICATE",
}


def certificate_lines(document: Dict[str, Any]) -> List[Tuple[str, str]]:
    """Label/value rows printed on the certificate body."""
    rows: List[Tuple[str, str]] = []
    asset = document.get("asset") or {}
    holder = document.get("holder") or {}
    rows.append(("Asset ID", str(asset.get("asset_id", ""))))
    for key, value in sorted((asset.get("descriptors") or {}).items()):
        if isinstance(value, (dict, list)):
            continue
        rows.append((key.replace("_", " ").title(), str(value)))
    transfer = document.get("transfer")
    if transfer:
        previous = document.get("previous_holder") or {}
        rows.append(("Transfer ID", str(transfer.get("transfer_id", ""))))
        rows.append(("Transfer Type", str(transfer.get("transfer_type", ""))))
        rows.append(("Amount", str(transfer.get("amount", ""))))
        rows.append(("Approved", str(transfer.get("approved_at", ""))))
        rows.append(("Previous Holder", str(previous.get("holder_name") or previous.get("holder_id", ""))))
    rows.append(("Holder", str(holder.get("holder_name") or holder.get("holder_id", ""))))
    rows.append(("Issued", str(document.get("issued_at", ""))))
    return rows


def render_certificate_pdf(
    document: Dict[str, Any],
    out_pdf: Optional[Union[str, pathlib.Path]] = None,
) -> bytes:
    """Draw the certificate; returns the PDF bytes and writes them to ``out_pdf`` if given."""
    from reportlab.graphics import renderPDF
    from reportlab.graphics.barcode.qr import QrCodeWidget
    from reportlab.graphics.shapes import Drawing
    from reportlab.lib.pagesizes import A4
    from reportlab.pdfgen import canvas

    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=A4, invariant=1)
    width, height = A4

    c.setFont("Helvetica-Bold", 18)
    c.drawCentredString(width / 2, height - 72, "DIGITAL LAND REGISTRY")
    c.setFont("Helvetica-Bold", 14)
    c.drawCentredString(width / 2, height - 96, TITLES.get(str(document.get("type")), "CERTIFICATE"))

    y = height - 140
    c.setFont("Helvetica", 11)
    for label, value in certificate_lines(document):
        c.drawString(72, y, f"{label}:")
        c.drawString(200, y, value[:70])
        y -= 16

    payload = (document.get("verification") or {}).get("payload")
    if payload:
        widget = QrCodeWidget(canonicalize_json(payload).decode("utf-8"))
        x0, y0, x1, y1 = widget.getBounds()
        size = 120.0
        drawing = Drawing(size, size, transform=[size / (x1 - x0), 0, 0, size / (y1 - y0), 0, 0])
        drawing.add(widget)
        renderPDF.draw(drawing, c, width - 72 - size, 110)
        c.setFont("Helvetica", 9)
        c.drawCentredString(width - 72 - size / 2, 98, "Scan to verify")

    proof = document.get("proof") or {}
    c.setFont("Helvetica", 8)
    c.drawString(72, 84, f"Issuer: {document.get('issuer', '')}"[:110])
    c.drawString(72, 72, f"Signature: {str(proof.get('jws', ''))[:48]}...")
    c.showPage()
    c.save()

    data = buf.getvalue()
    if out_pdf is not None:
        path = pathlib.Path(out_pdf)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    return data
