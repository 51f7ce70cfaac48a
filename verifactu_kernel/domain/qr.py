"""
QR payload -- the verification URL printed on every registered invoice.

The payload is a URL on the authority's verification host carrying the
issuer identifier, the invoice number, the issue date, the total and the
leading characters of the record's chain hash.  ``ver`` is ``1`` for
records of a business running in self-verifiable mode, ``0`` otherwise.

Rendering uses ``qrcode`` with the SVG factory so no imaging library is
required; the result is stored on the record as a data URI.
"""

from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from urllib.parse import parse_qs, urlencode, urlsplit

import qrcode
import qrcode.constants
import qrcode.image.svg

from verifactu_kernel.db.types import format_amount
from verifactu_kernel.domain.canonical import DATE_FORMAT
from verifactu_kernel.domain.snapshot import InvoiceSnapshot
from verifactu_kernel.exceptions import ValidationError
from verifactu_kernel.utils.hashing import VERIFICATION_FRAGMENT_LENGTH, verification_fragment

DEFAULT_QR_BASE_URL = "https://www2.agenciatributaria.gob.es/es13/h/qr"

QR_PARAMS = ("nif", "numserie", "fecha", "importe", "hash", "ver")


@dataclass(frozen=True)
class QrPayload:
    """Decoded QR payload."""

    nif: str
    numserie: str
    fecha: str
    importe: str
    hash: str
    verifiable: bool


def build_qr_payload(
    snapshot: InvoiceSnapshot,
    current_hash: str,
    *,
    verifiable: bool,
    base_url: str = DEFAULT_QR_BASE_URL,
) -> str:
    """Verification URL for a chain record."""
    query = urlencode(
        [
            ("nif", snapshot.issuer.normalized_legal_id),
            ("numserie", snapshot.number),
            ("fecha", snapshot.issue_date.strftime(DATE_FORMAT)),
            ("importe", format_amount(snapshot.total)),
            ("hash", verification_fragment(current_hash)),
            ("ver", "1" if verifiable else "0"),
        ]
    )
    return f"{base_url}?{query}"


def parse_qr_payload(payload: str) -> QrPayload:
    """
    Decode and check a QR payload.

    Raises:
        ValidationError: naming each missing or malformed parameter.
    """
    params = parse_qs(urlsplit(payload).query, keep_blank_values=True)
    errors = [f"{name}: required" for name in QR_PARAMS if not params.get(name, [""])[0]]
    values = {name: params.get(name, [""])[0] for name in QR_PARAMS}
    if values["hash"] and len(values["hash"]) != VERIFICATION_FRAGMENT_LENGTH:
        errors.append(f"hash: expected {VERIFICATION_FRAGMENT_LENGTH} characters")
    if values["ver"] and values["ver"] not in ("0", "1"):
        errors.append("ver: must be 0 or 1")
    if errors:
        raise ValidationError(errors, subject="QR payload")
    return QrPayload(
        nif=values["nif"],
        numserie=values["numserie"],
        fecha=values["fecha"],
        importe=values["importe"],
        hash=values["hash"],
        verifiable=values["ver"] == "1",
    )


def render_qr_svg(payload: str, border: int = 2) -> bytes:
    """SVG document for the payload (error correction level M)."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=border,
        image_factory=qrcode.image.svg.SvgPathImage,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    buffer = io.BytesIO()
    qr.make_image().save(buffer)
    return buffer.getvalue()


def render_qr_data_uri(payload: str) -> str:
    """SVG rendering as a ``data:`` URI, the form stored on chain records."""
    encoded = base64.b64encode(render_qr_svg(payload)).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"
