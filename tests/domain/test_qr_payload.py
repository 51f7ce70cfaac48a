"""Tests for the QR verification payload and its SVG rendering."""

import base64

import pytest

from verifactu_kernel.domain.qr import (
    DEFAULT_QR_BASE_URL,
    build_qr_payload,
    parse_qr_payload,
    render_qr_data_uri,
    render_qr_svg,
)
from verifactu_kernel.domain.snapshot import InvoiceSnapshot
from verifactu_kernel.exceptions import ValidationError

CURRENT_HASH = "DF8202523AA287D6F3D5901C7DA86F71C13D608C573017F1509E1B1B634EF182"


@pytest.fixture
def snapshot(invoice_mapping):
    return InvoiceSnapshot.from_mapping(invoice_mapping())


class TestQrPayload:

    def test_payload_carries_verification_fields(self, snapshot):
        payload = build_qr_payload(snapshot, CURRENT_HASH, verifiable=True)

        decoded = parse_qr_payload(payload)

        assert payload.startswith(DEFAULT_QR_BASE_URL + "?")
        assert decoded.nif == "B12345678"
        assert decoded.numserie == "F2024-0001"
        assert decoded.fecha == "15-03-2024"
        assert decoded.importe == "262.80"
        assert decoded.hash == "DF820252"
        assert decoded.verifiable is True

    def test_non_verifiable_mode_sets_flag(self, snapshot):
        payload = build_qr_payload(snapshot, CURRENT_HASH, verifiable=False)

        assert parse_qr_payload(payload).verifiable is False

    def test_custom_base_url(self, snapshot):
        payload = build_qr_payload(
            snapshot, CURRENT_HASH, verifiable=True, base_url="https://prewww2.aeat.es/qr"
        )

        assert payload.startswith("https://prewww2.aeat.es/qr?")

    def test_special_characters_in_number_survive(self, invoice_mapping):
        snapshot = InvoiceSnapshot.from_mapping(invoice_mapping(number="A&B 2024/1"))

        decoded = parse_qr_payload(build_qr_payload(snapshot, CURRENT_HASH, verifiable=True))

        assert decoded.numserie == "A&B 2024/1"

    def test_missing_parameters_are_named(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_qr_payload(f"{DEFAULT_QR_BASE_URL}?nif=B12345678&hash=ABC")

        fields = exc_info.value.fields
        assert "numserie" in fields
        assert "ver" in fields
        assert "hash" in fields


class TestQrRendering:

    def test_svg_document(self, snapshot):
        svg = render_qr_svg(build_qr_payload(snapshot, CURRENT_HASH, verifiable=True))

        assert b"<svg" in svg

    def test_data_uri_wraps_svg(self, snapshot):
        payload = build_qr_payload(snapshot, CURRENT_HASH, verifiable=True)

        uri = render_qr_data_uri(payload)

        prefix = "data:image/svg+xml;base64,"
        assert uri.startswith(prefix)
        assert base64.b64decode(uri[len(prefix):]) == render_qr_svg(payload)
