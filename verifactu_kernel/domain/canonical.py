"""
Canonicalizer -- the byte sequence every chain hash is computed over.

Responsibility:
    Serializes the legally relevant fields of an ``InvoiceSnapshot`` into a
    fixed ``key=value&key=value`` form.  Same snapshot, same bytes, in any
    process, at any time, regardless of the order the invoicing module
    listed fields or lines in.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Format (UTF-8):

    IDEmisorFactura=<issuer id>&NumSerieFactura=<number>
    &FechaExpedicionFactura=<DD-MM-YYYY>&TipoFactura=<type>
    &IDDestinatario=<recipient id>&Direccion=<issued|received>&Moneda=<ISO>
    &BaseImponible=<0.00>&CuotaTotal=<0.00>&ImporteTotal=<0.00>
    &Desglose=<rate:base:tax;...>

    - identifiers upper-cased, '-' and whitespace removed
    - amounts ROUND_HALF_UP to two decimals, '.' separator, no grouping
    - Desglose groups sorted by ascending rate
    - '%', '&' and '=' inside free-text values are percent-escaped
"""

from verifactu_kernel.db.types import format_amount
from verifactu_kernel.domain.snapshot import InvoiceSnapshot

CANONICAL_FIELDS = (
    "IDEmisorFactura",
    "NumSerieFactura",
    "FechaExpedicionFactura",
    "TipoFactura",
    "IDDestinatario",
    "Direccion",
    "Moneda",
    "BaseImponible",
    "CuotaTotal",
    "ImporteTotal",
    "Desglose",
)

DATE_FORMAT = "%d-%m-%Y"


def _escape(value: str) -> str:
    return value.replace("%", "%25").replace("&", "%26").replace("=", "%3D")


def canonical_fields(snapshot: InvoiceSnapshot) -> list[tuple[str, str]]:
    """Ordered (key, value) pairs of the canonical form."""
    breakdown = ";".join(
        f"{format_amount(group.rate)}:{format_amount(group.base)}:{format_amount(group.tax)}"
        for group in snapshot.tax_breakdown()
    )
    values = {
        "IDEmisorFactura": snapshot.issuer.normalized_legal_id,
        "NumSerieFactura": _escape(snapshot.number),
        "FechaExpedicionFactura": snapshot.issue_date.strftime(DATE_FORMAT),
        "TipoFactura": _escape(snapshot.invoice_type),
        "IDDestinatario": snapshot.recipient.normalized_legal_id,
        "Direccion": snapshot.direction.value,
        "Moneda": snapshot.currency,
        "BaseImponible": format_amount(snapshot.subtotal),
        "CuotaTotal": format_amount(snapshot.tax_total),
        "ImporteTotal": format_amount(snapshot.total),
        "Desglose": breakdown,
    }
    return [(key, values[key]) for key in CANONICAL_FIELDS]


def canonicalize(snapshot: InvoiceSnapshot) -> bytes:
    """
    Canonical bytes of an invoice snapshot.

    Pure and deterministic: the chain hash and the verifier both call this.
    """
    return "&".join(f"{key}={value}" for key, value in canonical_fields(snapshot)).encode("utf-8")
