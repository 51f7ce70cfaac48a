"""
XML Codec -- the fixed-schema registration document.

Responsibility:
    ``encode`` renders an ``InvoiceSnapshot`` plus both party profiles into
    the ``RegFactuSistemaFacturacion`` document; ``validate`` checks a
    document before it may leave the process (download or submission);
    ``parse_authority_response`` reads the authority's per-record verdicts.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Built on lxml.

Invariants enforced:
    - Encoding is deterministic: same inputs, same bytes (no timestamps,
      fixed element order, fixed number formats).
    - A document failing ``validate`` is never released; ``require_valid``
      raises ``ValidationError`` naming each missing/invalid field.

Document layout (default namespace SUMINISTRO_NS)::

    RegFactuSistemaFacturacion[@Version]
      Cabecera/ObligadoEmision/{NombreRazon, NIF}
      RegistroFacturacion
        IDFactura/{IDEmisorFactura, NumSerieFactura, FechaExpedicionFactura}
        TipoFactura, ClaveRegimenEspecialOTrascendencia, Direccion
        Contraparte/{NombreRazon, NIF, Domicilio, CodigoPais}
        Lineas/Linea*/{Descripcion, Cantidad, PrecioUnitario,
                       TipoImpositivo, ImporteLinea, CuotaLinea}
        Desglose/DetalleIVA*/{TipoImpositivo, BaseImponible, CuotaRepercutida}
        BaseImponibleTotal, CuotaTotal, ImporteTotal, Moneda
        Encadenamiento/{NumRegistro, Huella, HuellaAnterior}   (optional)
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation

from lxml import etree

from verifactu_kernel.db.types import ISO_4217_CURRENCIES, format_amount, round_amount
from verifactu_kernel.domain.canonical import DATE_FORMAT
from verifactu_kernel.domain.snapshot import ROUNDING_TOLERANCE, InvoiceSnapshot, PartySnapshot
from verifactu_kernel.domain.submission import SubmissionResponse
from verifactu_kernel.exceptions import ValidationError

SUMINISTRO_NS = (
    "https://www2.agenciatributaria.gob.es/static_files/common/internet/dep/"
    "aplicaciones/es/aeat/tike/cont/ws/SuministroLR.xsd"
)
RESPUESTA_NS = (
    "https://www2.agenciatributaria.gob.es/static_files/common/internet/dep/"
    "aplicaciones/es/aeat/tike/cont/ws/RespuestaSuministro.xsd"
)
_NS = {"s": SUMINISTRO_NS}
_RNS = {"r": RESPUESTA_NS}

SCHEMA_VERSION = "1.0"
SUPPORTED_SCHEMA_VERSIONS = frozenset({"1.0"})
CONTENT_TYPE = "application/xml"
SPECIAL_REGIME_KEY = "01"

# Paths relative to RegFactuSistemaFacturacion; reported as-is on failure
REQUIRED_ELEMENTS = (
    "Cabecera/ObligadoEmision/NombreRazon",
    "Cabecera/ObligadoEmision/NIF",
    "RegistroFacturacion/IDFactura/IDEmisorFactura",
    "RegistroFacturacion/IDFactura/NumSerieFactura",
    "RegistroFacturacion/IDFactura/FechaExpedicionFactura",
    "RegistroFacturacion/TipoFactura",
    "RegistroFacturacion/Contraparte/NombreRazon",
    "RegistroFacturacion/Contraparte/NIF",
    "RegistroFacturacion/Lineas/Linea",
    "RegistroFacturacion/Desglose/DetalleIVA",
    "RegistroFacturacion/BaseImponibleTotal",
    "RegistroFacturacion/CuotaTotal",
    "RegistroFacturacion/ImporteTotal",
    "RegistroFacturacion/Moneda",
)


_AMOUNT_RE = re.compile(r"^-?\d+\.\d{2}$")
_DECIMAL_RE = re.compile(r"^-?\d+(\.\d+)?$")
_DATE_RE = re.compile(r"^\d{2}-\d{2}-\d{4}$")
_HASH_RE = re.compile(r"^[0-9A-F]{64}$")


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChainLink:
    """Chain position rendered into Encadenamiento."""

    sequence_number: int
    current_hash: str
    previous_hash: str


@dataclass(frozen=True)
class ComplianceDocument:
    """An encoded document plus its download conventions."""

    content: bytes
    invoice_number: str
    schema_version: str = SCHEMA_VERSION
    content_type: str = CONTENT_TYPE

    @property
    def filename(self) -> str:
        safe = re.sub(r"[^A-Za-z0-9._-]", "_", self.invoice_number)
        return f"Factura-{safe}.xml"


@dataclass(frozen=True)
class XmlFieldError:
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


@dataclass(frozen=True)
class XmlValidationResult:
    valid: bool
    errors: tuple[XmlFieldError, ...] = ()

    @property
    def fields(self) -> tuple[str, ...]:
        return tuple(e.field for e in self.errors)


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def _tag(name: str) -> str:
    return f"{{{SUMINISTRO_NS}}}{name}"


def _child(parent: etree._Element, name: str, text: str | None = None) -> etree._Element | None:
    """Append a child; an empty text value omits the element entirely."""
    if text is not None and not text.strip():
        return None
    element = etree.SubElement(parent, _tag(name))
    if text is not None:
        element.text = text
    return element


def format_decimal(value: Decimal) -> str:
    """Plain decimal text without exponent or trailing zeros."""
    text = f"{value.normalize():f}"
    return "0" if text in ("-0", "0") else text


def encode(
    snapshot: InvoiceSnapshot,
    business_profile: PartySnapshot,
    counterparty_profile: PartySnapshot,
    *,
    chain: ChainLink | None = None,
    schema_version: str = SCHEMA_VERSION,
) -> ComplianceDocument:
    """
    Render the registration document.

    ``business_profile`` is the obligated party (the reporting business);
    ``counterparty_profile`` fills Contraparte.  Empty profile values leave
    the element out, which ``validate`` then reports.
    """
    if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
        raise ValueError(f"Unsupported schema version {schema_version!r}")

    root = etree.Element(_tag("RegFactuSistemaFacturacion"), nsmap={None: SUMINISTRO_NS})
    root.set("Version", schema_version)

    header = _child(root, "Cabecera")
    obligated = _child(header, "ObligadoEmision")
    _child(obligated, "NombreRazon", business_profile.name)
    _child(obligated, "NIF", business_profile.normalized_legal_id)

    record = _child(root, "RegistroFacturacion")
    identity = _child(record, "IDFactura")
    _child(identity, "IDEmisorFactura", snapshot.issuer.normalized_legal_id)
    _child(identity, "NumSerieFactura", snapshot.number)
    _child(identity, "FechaExpedicionFactura", snapshot.issue_date.strftime(DATE_FORMAT))
    _child(record, "TipoFactura", snapshot.invoice_type)
    _child(record, "ClaveRegimenEspecialOTrascendencia", SPECIAL_REGIME_KEY)
    _child(record, "Direccion", snapshot.direction.value)

    counterparty = _child(record, "Contraparte")
    _child(counterparty, "NombreRazon", counterparty_profile.name)
    _child(counterparty, "NIF", counterparty_profile.normalized_legal_id)
    _child(counterparty, "Domicilio", counterparty_profile.address)
    _child(counterparty, "CodigoPais", counterparty_profile.country_code)

    lines = _child(record, "Lineas")
    for line in snapshot.lines:
        element = _child(lines, "Linea")
        _child(element, "Descripcion", line.description)
        _child(element, "Cantidad", format_decimal(line.quantity))
        _child(element, "PrecioUnitario", format_decimal(line.unit_price))
        _child(element, "TipoImpositivo", format_amount(line.tax_rate))
        _child(element, "ImporteLinea", format_amount(line.base_amount))
        _child(element, "CuotaLinea", format_amount(line.tax_amount))

    breakdown = _child(record, "Desglose")
    for group in snapshot.tax_breakdown():
        detail = _child(breakdown, "DetalleIVA")
        _child(detail, "TipoImpositivo", format_amount(group.rate))
        _child(detail, "BaseImponible", format_amount(group.base))
        _child(detail, "CuotaRepercutida", format_amount(group.tax))

    _child(record, "BaseImponibleTotal", format_amount(snapshot.subtotal))
    _child(record, "CuotaTotal", format_amount(snapshot.tax_total))
    _child(record, "ImporteTotal", format_amount(snapshot.total))
    _child(record, "Moneda", snapshot.currency)

    if chain is not None:
        link = _child(record, "Encadenamiento")
        _child(link, "NumRegistro", str(chain.sequence_number))
        _child(link, "Huella", chain.current_hash)
        _child(link, "HuellaAnterior", chain.previous_hash)

    content = etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True)
    return ComplianceDocument(
        content=content,
        invoice_number=snapshot.number,
        schema_version=schema_version,
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _parser() -> etree.XMLParser:
    return etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=True)


def _path(relative: str) -> str:
    return "/".join(f"s:{part}" for part in relative.split("/"))


def _decimal(text: str) -> Decimal | None:
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


class _Checker:
    """Collects field errors while walking a parsed document."""

    def __init__(self) -> None:
        self.errors: list[XmlFieldError] = []

    def add(self, field: str, message: str) -> None:
        self.errors.append(XmlFieldError(field, message))

    def text(self, element: etree._Element, relative: str, field: str) -> str | None:
        found = element.find(_path(relative), _NS)
        if found is None or not (found.text or "").strip():
            self.add(field, "required")
            return None
        return found.text.strip()

    def amount(self, element: etree._Element, relative: str, field: str) -> Decimal | None:
        value = self.text(element, relative, field)
        if value is None:
            return None
        if not _AMOUNT_RE.match(value):
            self.add(field, f"invalid amount {value!r}; expected two decimals")
            return None
        return Decimal(value)

    def number(self, element: etree._Element, relative: str, field: str) -> Decimal | None:
        value = self.text(element, relative, field)
        if value is None:
            return None
        if not _DECIMAL_RE.match(value):
            self.add(field, f"invalid number {value!r}")
            return None
        return _decimal(value)


def _display(relative: str) -> str:
    return relative.removeprefix("RegistroFacturacion/")


def validate(document: ComplianceDocument | bytes) -> XmlValidationResult:
    """
    Structural and arithmetic validation.

    Checks well-formedness, required elements, numeric and date formats,
    hash formats, and that line totals agree with the declared subtotal,
    tax and total within 0.01 per line.
    """
    content = document.content if isinstance(document, ComplianceDocument) else document
    check = _Checker()

    try:
        root = etree.fromstring(content, _parser())
    except etree.XMLSyntaxError as exc:
        check.add("document", f"not well-formed: {exc}")
        return XmlValidationResult(valid=False, errors=tuple(check.errors))

    if root.tag != _tag("RegFactuSistemaFacturacion"):
        check.add("document", f"unexpected root element {root.tag}")
        return XmlValidationResult(valid=False, errors=tuple(check.errors))

    if root.get("Version") not in SUPPORTED_SCHEMA_VERSIONS:
        check.add("Version", f"unsupported schema version {root.get('Version')!r}")

    for relative in REQUIRED_ELEMENTS:
        if relative in ("RegistroFacturacion/Lineas/Linea", "RegistroFacturacion/Desglose/DetalleIVA"):
            if root.find(_path(relative), _NS) is None:
                check.add(_display(relative), "at least one element required")
            continue
        if relative.endswith(("Total", "CuotaTotal")):
            continue  # checked as amounts below
        check.text(root, relative, _display(relative))

    issue_date = root.findtext(_path("RegistroFacturacion/IDFactura/FechaExpedicionFactura"), None, _NS)
    if issue_date:
        if not _DATE_RE.match(issue_date.strip()):
            check.add("IDFactura/FechaExpedicionFactura", f"invalid date {issue_date!r}; expected DD-MM-YYYY")
        else:
            try:
                datetime.strptime(issue_date.strip(), DATE_FORMAT)
            except ValueError:
                check.add("IDFactura/FechaExpedicionFactura", f"invalid date {issue_date!r}")

    currency = root.findtext(_path("RegistroFacturacion/Moneda"), None, _NS)
    if currency and currency.strip() not in ISO_4217_CURRENCIES:
        check.add("Moneda", f"unknown currency {currency!r}")

    record = root.find("s:RegistroFacturacion", _NS)
    if record is None:
        return XmlValidationResult(valid=False, errors=tuple(check.errors))

    subtotal = check.amount(record, "BaseImponibleTotal", "BaseImponibleTotal")
    tax_total = check.amount(record, "CuotaTotal", "CuotaTotal")
    total = check.amount(record, "ImporteTotal", "ImporteTotal")

    line_bases: list[Decimal] = []
    line_taxes: list[Decimal] = []
    lines = record.findall("s:Lineas/s:Linea", _NS)
    for i, line in enumerate(lines):
        prefix = f"Lineas/Linea[{i}]"
        check.text(line, "Descripcion", f"{prefix}/Descripcion")
        quantity = check.number(line, "Cantidad", f"{prefix}/Cantidad")
        unit_price = check.number(line, "PrecioUnitario", f"{prefix}/PrecioUnitario")
        rate = check.amount(line, "TipoImpositivo", f"{prefix}/TipoImpositivo")
        base = check.amount(line, "ImporteLinea", f"{prefix}/ImporteLinea")
        tax = check.amount(line, "CuotaLinea", f"{prefix}/CuotaLinea")
        if base is not None:
            line_bases.append(base)
            if quantity is not None and unit_price is not None:
                if abs(round_amount(quantity * unit_price) - base) > ROUNDING_TOLERANCE:
                    check.add(f"{prefix}/ImporteLinea", f"{base} != Cantidad x PrecioUnitario")
        if tax is not None:
            line_taxes.append(tax)
            if base is not None and rate is not None:
                if abs(round_amount(base * rate / Decimal(100)) - tax) > ROUNDING_TOLERANCE:
                    check.add(f"{prefix}/CuotaLinea", f"{tax} != ImporteLinea x TipoImpositivo")

    detail_bases: list[Decimal] = []
    detail_taxes: list[Decimal] = []
    for i, detail in enumerate(record.findall("s:Desglose/s:DetalleIVA", _NS)):
        prefix = f"Desglose/DetalleIVA[{i}]"
        check.amount(detail, "TipoImpositivo", f"{prefix}/TipoImpositivo")
        base = check.amount(detail, "BaseImponible", f"{prefix}/BaseImponible")
        tax = check.amount(detail, "CuotaRepercutida", f"{prefix}/CuotaRepercutida")
        if base is not None:
            detail_bases.append(base)
        if tax is not None:
            detail_taxes.append(tax)

    tolerance = ROUNDING_TOLERANCE * max(len(lines), 1)
    if subtotal is not None and lines and len(line_bases) == len(lines):
        if abs(sum(line_bases) - subtotal) > tolerance:
            check.add("BaseImponibleTotal", f"{subtotal} != sum of ImporteLinea {sum(line_bases)}")
    if tax_total is not None and lines and len(line_taxes) == len(lines):
        if abs(sum(line_taxes) - tax_total) > tolerance:
            check.add("CuotaTotal", f"{tax_total} != sum of CuotaLinea {sum(line_taxes)}")
    if subtotal is not None and detail_bases and abs(sum(detail_bases) - subtotal) > tolerance:
        check.add("Desglose", f"BaseImponible sum {sum(detail_bases)} != {subtotal}")
    if tax_total is not None and detail_taxes and abs(sum(detail_taxes) - tax_total) > tolerance:
        check.add("Desglose", f"CuotaRepercutida sum {sum(detail_taxes)} != {tax_total}")
    if None not in (subtotal, tax_total, total):
        if abs(subtotal + tax_total - total) > ROUNDING_TOLERANCE:
            check.add("ImporteTotal", f"{total} != BaseImponibleTotal + CuotaTotal")

    link = record.find("s:Encadenamiento", _NS)
    if link is not None:
        sequence = check.text(link, "NumRegistro", "Encadenamiento/NumRegistro")
        if sequence is not None and (not sequence.isdigit() or int(sequence) < 1):
            check.add("Encadenamiento/NumRegistro", f"invalid sequence {sequence!r}")
        for name in ("Huella", "HuellaAnterior"):
            value = check.text(link, name, f"Encadenamiento/{name}")
            if value is not None and not _HASH_RE.match(value):
                check.add(f"Encadenamiento/{name}", "expected 64 upper-case hex characters")

    return XmlValidationResult(valid=not check.errors, errors=tuple(check.errors))


def require_valid(document: ComplianceDocument) -> ComplianceDocument:
    """
    Gate for any release of a document.

    Raises:
        ValidationError: with one entry per invalid field.
    """
    result = validate(document)
    if not result.valid:
        raise ValidationError([str(e) for e in result.errors], subject="XML document")
    return document


# ---------------------------------------------------------------------------
# Authority responses
# ---------------------------------------------------------------------------


def parse_authority_response(content: bytes) -> tuple[str | None, list[SubmissionResponse]]:
    """
    Read a RespuestaRegFactuSistemaFacturacion document.

    Returns:
        (submission CSV or None, one SubmissionResponse per RespuestaLinea).
        A line whose EstadoRegistro is ``Correcto`` (or
        ``AceptadoConErrores``) is accepted under the submission CSV.

    Raises:
        ValidationError: if the response is not well-formed.
    """
    try:
        root = etree.fromstring(content, _parser())
    except etree.XMLSyntaxError as exc:
        raise ValidationError([f"response: not well-formed: {exc}"], subject="authority response") from exc

    csv = (root.findtext("r:CSV", None, _RNS) or "").strip() or None
    responses = []
    for line in root.findall("r:RespuestaLinea", _RNS):
        number = (line.findtext("r:IDFactura/r:NumSerieFactura", "", _RNS) or "").strip()
        status = (line.findtext("r:EstadoRegistro", "", _RNS) or "").strip()
        if status in ("Correcto", "AceptadoConErrores"):
            responses.append(SubmissionResponse.accept(number, csv or ""))
            continue
        responses.append(
            SubmissionResponse.reject(
                number,
                error_code=(line.findtext("r:CodigoErrorRegistro", "", _RNS) or "").strip() or "UNKNOWN",
                error_message=(line.findtext("r:DescripcionErrorRegistro", "", _RNS) or "").strip()
                or f"EstadoRegistro {status or 'missing'}",
            )
        )
    return csv, responses


def canonical_xml(document: ComplianceDocument | bytes) -> bytes:
    """Exclusive C14N form of a document; the bytes a signature covers."""
    content = document.content if isinstance(document, ComplianceDocument) else document
    root = etree.fromstring(content, _parser())
    return etree.tostring(root, method="c14n", exclusive=True)
