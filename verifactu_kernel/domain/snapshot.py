"""
InvoiceSnapshot -- the one immutable invoice type the kernel consumes.

Responsibility:
    Defines the read-only view of an invoice handed over by the invoicing
    module, and the boundary validation that turns a loosely-typed mapping
    into it.  The canonicalizer, the XML codec and the QR builder consume
    only this type.

Architecture position:
    Kernel > Domain -- pure, zero I/O.

Invariants enforced:
    - Amounts are Decimal (floats are refused at the boundary).
    - A snapshot that passes ``from_mapping`` has non-empty identifiers,
      at least one line, a valid ISO 4217 currency, and declared totals
      that agree with the lines within rounding tolerance.

Failure modes:
    - ValidationError listing every offending field (``field: reason``).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any

from verifactu_kernel.db.types import (
    RATE_DECIMAL_PLACES,
    InvalidCurrencyError,
    normalize_legal_id,
    round_amount,
    to_decimal,
    validate_currency,
)
from verifactu_kernel.exceptions import ValidationError

# Tolerance per line when comparing declared totals with line totals
ROUNDING_TOLERANCE = Decimal("0.01")

# Amounts, quantities and rates must stay below this in absolute value so
# line products still quantize to two places at the default precision.
AMOUNT_MAGNITUDE_LIMIT = Decimal("1E+12")


class InvoiceDirection(str, Enum):
    """Whether the business issued or received the invoice."""

    ISSUED = "issued"
    RECEIVED = "received"


@dataclass(frozen=True)
class PartySnapshot:
    """A party to the invoice, as printed on it."""

    legal_id: str
    name: str
    address: str = ""
    country_code: str = "ES"

    @property
    def normalized_legal_id(self) -> str:
        return normalize_legal_id(self.legal_id)


@dataclass(frozen=True)
class InvoiceLine:
    """One invoice line. ``tax_rate`` is a percentage (21 means 21%)."""

    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal

    @property
    def base_amount(self) -> Decimal:
        return round_amount(self.quantity * self.unit_price)

    @property
    def tax_amount(self) -> Decimal:
        return round_amount(self.base_amount * self.tax_rate / Decimal(100))


@dataclass(frozen=True)
class TaxBreakdown:
    """Base and tax grouped by rate."""

    rate: Decimal
    base: Decimal
    tax: Decimal


@dataclass(frozen=True)
class InvoiceSnapshot:
    """
    Immutable snapshot of an invoice at registration time.

    Contract:
        Built through ``from_mapping`` (or ``from_payload``) so the boundary
        validation always runs.  ``to_payload`` gives the JSON form stored
        next to the chain record.
    """

    invoice_id: str
    number: str
    issue_date: date
    direction: InvoiceDirection
    business: PartySnapshot
    counterparty: PartySnapshot
    lines: tuple[InvoiceLine, ...]
    subtotal: Decimal
    tax_total: Decimal
    total: Decimal
    currency: str = "EUR"
    invoice_type: str = "F1"

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    @property
    def issuer(self) -> PartySnapshot:
        """The party that issued the invoice."""
        if self.direction == InvoiceDirection.ISSUED:
            return self.business
        return self.counterparty

    @property
    def recipient(self) -> PartySnapshot:
        if self.direction == InvoiceDirection.ISSUED:
            return self.counterparty
        return self.business

    def tax_breakdown(self) -> tuple[TaxBreakdown, ...]:
        """Per-rate totals, sorted by ascending rate."""
        groups: dict[Decimal, tuple[Decimal, Decimal]] = {}
        for line in self.lines:
            rate = round_amount(line.tax_rate)
            base, tax = groups.get(rate, (Decimal("0.00"), Decimal("0.00")))
            groups[rate] = (base + line.base_amount, tax + line.tax_amount)
        return tuple(
            TaxBreakdown(rate=rate, base=base, tax=tax)
            for rate, (base, tax) in sorted(groups.items())
        )

    def lines_subtotal(self) -> Decimal:
        return sum((line.base_amount for line in self.lines), Decimal("0.00"))

    def lines_tax(self) -> Decimal:
        return sum((line.tax_amount for line in self.lines), Decimal("0.00"))

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe dict; amounts as exact decimal strings."""
        return {
            "invoice_id": self.invoice_id,
            "number": self.number,
            "issue_date": self.issue_date.isoformat(),
            "direction": self.direction.value,
            "business": _party_payload(self.business),
            "counterparty": _party_payload(self.counterparty),
            "lines": [
                {
                    "description": line.description,
                    "quantity": str(line.quantity),
                    "unit_price": str(line.unit_price),
                    "tax_rate": str(line.tax_rate),
                }
                for line in self.lines
            ],
            "subtotal": str(self.subtotal),
            "tax_total": str(self.tax_total),
            "total": str(self.total),
            "currency": self.currency,
            "invoice_type": self.invoice_type,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> InvoiceSnapshot:
        return cls.from_mapping(payload)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> InvoiceSnapshot:
        """
        Validate a mapping and build a snapshot.

        Raises:
            ValidationError: listing every offending field.
        """
        errors: list[str] = []

        def text(source: Mapping[str, Any], key: str, path: str, required: bool = True) -> str:
            value = source.get(key)
            if value is None or (isinstance(value, str) and not value.strip()):
                if required:
                    errors.append(f"{path}: required")
                return ""
            return str(value).strip()

        def amount(source: Mapping[str, Any], key: str, path: str) -> Decimal:
            if source.get(key) is None:
                errors.append(f"{path}: required")
                return Decimal("0")
            try:
                value = to_decimal(source[key])
            except (TypeError, ValueError) as exc:
                errors.append(f"{path}: {exc}")
                return Decimal("0")
            if abs(value) >= AMOUNT_MAGNITUDE_LIMIT:
                errors.append(f"{path}: out of range")
                return Decimal("0")
            return value

        def party(key: str) -> PartySnapshot:
            raw = data.get(key)
            if not isinstance(raw, Mapping):
                errors.append(f"{key}: required")
                return PartySnapshot(legal_id="", name="")
            legal_id = text(raw, "legal_id", f"{key}.legal_id")
            if legal_id and not normalize_legal_id(legal_id):
                errors.append(f"{key}.legal_id: empty after normalization")
            return PartySnapshot(
                legal_id=legal_id,
                name=text(raw, "name", f"{key}.name"),
                address=text(raw, "address", f"{key}.address", required=False),
                country_code=text(raw, "country_code", f"{key}.country_code", required=False) or "ES",
            )

        invoice_id = text(data, "invoice_id", "invoice_id")
        number = text(data, "number", "number")

        issue_date = date(1970, 1, 1)
        raw_date = data.get("issue_date")
        if isinstance(raw_date, date):
            issue_date = raw_date
        elif isinstance(raw_date, str) and raw_date.strip():
            try:
                issue_date = date.fromisoformat(raw_date.strip()[:10])
            except ValueError:
                errors.append(f"issue_date: not an ISO date: {raw_date!r}")
        else:
            errors.append("issue_date: required")

        direction = InvoiceDirection.ISSUED
        try:
            direction = InvoiceDirection(data.get("direction", InvoiceDirection.ISSUED.value))
        except ValueError:
            errors.append("direction: must be one of issued, received")

        business = party("business")
        counterparty = party("counterparty")

        lines: list[InvoiceLine] = []
        raw_lines = data.get("lines")
        if not raw_lines:
            errors.append("lines: at least one line is required")
            raw_lines = []
        for i, raw in enumerate(raw_lines):
            path = f"lines[{i}]"
            if not isinstance(raw, Mapping):
                errors.append(f"{path}: not a mapping")
                continue
            line = InvoiceLine(
                description=text(raw, "description", f"{path}.description"),
                quantity=amount(raw, "quantity", f"{path}.quantity"),
                unit_price=amount(raw, "unit_price", f"{path}.unit_price"),
                tax_rate=amount(raw, "tax_rate", f"{path}.tax_rate"),
            )
            if line.quantity == 0:
                errors.append(f"{path}.quantity: must be non-zero")
            if not Decimal(0) <= line.tax_rate <= Decimal(100):
                errors.append(f"{path}.tax_rate: must be between 0 and 100")
            elif line.tax_rate.normalize().as_tuple().exponent < -RATE_DECIMAL_PLACES:
                errors.append(f"{path}.tax_rate: at most {RATE_DECIMAL_PLACES} decimal places")
            lines.append(line)

        subtotal = amount(data, "subtotal", "subtotal")
        tax_total = amount(data, "tax_total", "tax_total")
        total = amount(data, "total", "total")

        currency = "EUR"
        try:
            currency = validate_currency(data.get("currency") or "EUR")
        except InvalidCurrencyError as exc:
            errors.append(f"currency: {exc}")

        snapshot = cls(
            invoice_id=invoice_id,
            number=number,
            issue_date=issue_date,
            direction=direction,
            business=business,
            counterparty=counterparty,
            lines=tuple(lines),
            subtotal=subtotal,
            tax_total=tax_total,
            total=total,
            currency=currency,
            invoice_type=text(data, "invoice_type", "invoice_type", required=False) or "F1",
        )

        if lines and not errors:
            errors.extend(snapshot.total_errors())

        if errors:
            raise ValidationError(errors)
        return snapshot

    def total_errors(self) -> list[str]:
        """Declared totals vs line totals, within the per-line tolerance."""
        tolerance = ROUNDING_TOLERANCE * max(len(self.lines), 1)
        errors = []
        if abs(self.lines_subtotal() - self.subtotal) > tolerance:
            errors.append(
                f"subtotal: declared {self.subtotal} but lines sum to {self.lines_subtotal()}"
            )
        if abs(self.lines_tax() - self.tax_total) > tolerance:
            errors.append(
                f"tax_total: declared {self.tax_total} but lines sum to {self.lines_tax()}"
            )
        if abs(self.subtotal + self.tax_total - self.total) > ROUNDING_TOLERANCE:
            errors.append(
                f"total: declared {self.total} but subtotal + tax is "
                f"{self.subtotal + self.tax_total}"
            )
        return errors


def _party_payload(party: PartySnapshot) -> dict[str, str]:
    return {
        "legal_id": party.legal_id,
        "name": party.name,
        "address": party.address,
        "country_code": party.country_code,
    }
