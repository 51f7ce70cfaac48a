"""
Property-based tests for the canonical form and the XML codec.

Boundaries fuzzed here:
- Line amounts, quantities and VAT rates: any well-formed invoice encodes
  to a document that passes validation.
- Party names and invoice numbers with XML and query-string metacharacters.
- Line order: never changes the canonical form or the chain hash.
"""

from datetime import date
from decimal import Decimal

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from verifactu_kernel.db.types import round_amount
from verifactu_kernel.domain.canonical import canonicalize
from verifactu_kernel.domain.snapshot import InvoiceSnapshot
from verifactu_kernel.domain.xml_codec import ChainLink, encode, validate
from verifactu_kernel.utils.hashing import GENESIS_HASH, chain_hash

pytestmark = pytest.mark.slow

TEXT_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyzñáéíóú0123456789 &<>'\"/-.=%"

names = st.text(alphabet=TEXT_ALPHABET, min_size=1, max_size=40).filter(lambda s: s.strip())

numbers = st.text(
    alphabet="ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-/ &", min_size=1, max_size=30
).filter(lambda s: s.strip())

lines = st.fixed_dictionaries({
    "description": names,
    "quantity": st.integers(min_value=1, max_value=500).map(str),
    "unit_price": st.decimals(
        min_value=Decimal("0.01"), max_value=Decimal("99999.99"), places=2, allow_nan=False, allow_infinity=False
    ).map(str),
    "tax_rate": st.sampled_from(["0", "4", "5.5", "10", "10.25", "21", "7.50"]),
})


@st.composite
def invoices(draw):
    """An internally consistent invoice mapping."""
    drawn_lines = draw(st.lists(lines, min_size=1, max_size=8))
    bases = [round_amount(Decimal(l["quantity"]) * Decimal(l["unit_price"])) for l in drawn_lines]
    taxes = [
        round_amount(base * Decimal(l["tax_rate"]) / Decimal(100))
        for base, l in zip(bases, drawn_lines)
    ]
    subtotal = sum(bases, Decimal("0.00"))
    tax_total = sum(taxes, Decimal("0.00"))
    return {
        "invoice_id": "INV-FUZZ",
        "number": draw(numbers),
        "issue_date": draw(st.dates(min_value=date(2000, 1, 1), max_value=date(2099, 12, 31))).isoformat(),
        "direction": draw(st.sampled_from(["issued", "received"])),
        "business": {"legal_id": "B12345678", "name": draw(names)},
        "counterparty": {"legal_id": "A87654321", "name": draw(names)},
        "lines": drawn_lines,
        "subtotal": str(subtotal),
        "tax_total": str(tax_total),
        "total": str(subtotal + tax_total),
        "currency": "EUR",
        "invoice_type": "F1",
    }


class TestCanonicalProperties:

    @given(mapping=invoices())
    @settings(max_examples=150, suppress_health_check=[HealthCheck.too_slow])
    def test_canonical_form_is_deterministic(self, mapping):
        first = InvoiceSnapshot.from_mapping(mapping)
        second = InvoiceSnapshot.from_mapping(mapping)

        assert canonicalize(first) == canonicalize(second)

    @given(mapping=invoices(), data=st.data())
    @settings(max_examples=150, suppress_health_check=[HealthCheck.too_slow])
    def test_line_order_never_changes_hash(self, mapping, data):
        shuffled = dict(mapping, lines=data.draw(st.permutations(mapping["lines"])))

        original = InvoiceSnapshot.from_mapping(mapping)
        reordered = InvoiceSnapshot.from_mapping(shuffled)

        assert chain_hash(canonicalize(original), GENESIS_HASH) == chain_hash(
            canonicalize(reordered), GENESIS_HASH
        )

    @given(mapping=invoices())
    @settings(max_examples=100, suppress_health_check=[HealthCheck.too_slow])
    def test_payload_round_trip_preserves_canonical_form(self, mapping):
        snapshot = InvoiceSnapshot.from_mapping(mapping)

        restored = InvoiceSnapshot.from_payload(snapshot.to_payload())

        assert canonicalize(restored) == canonicalize(snapshot)


class TestCodecProperties:

    @given(mapping=invoices())
    @settings(max_examples=150, suppress_health_check=[HealthCheck.too_slow])
    def test_encoded_documents_always_validate(self, mapping):
        snapshot = InvoiceSnapshot.from_mapping(mapping)
        current = chain_hash(canonicalize(snapshot), GENESIS_HASH)

        document = encode(
            snapshot,
            snapshot.business,
            snapshot.counterparty,
            chain=ChainLink(sequence_number=1, current_hash=current, previous_hash=GENESIS_HASH),
        )
        result = validate(document)

        assert result.valid, result.errors
        assert "/" not in document.filename
