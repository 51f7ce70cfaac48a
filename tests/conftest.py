"""
Pytest fixtures for the VERI*FACTU reporting test suite.

Provides:
- A file-backed SQLite database per test (real ORM models, immutability
  listeners registered)
- A deterministic clock shared by every service under test
- Invoice snapshot builders and an in-memory invoice source
- Scripted submission gateways
- Self-signed PKCS#12 signing certificates

SQLite runs every transaction as BEGIN IMMEDIATE, so tests never keep a
session open while calling a service: open, act, commit, close.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from io import StringIO
from uuid import uuid4

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from sqlalchemy.orm import sessionmaker

from verifactu_kernel.db.engine import build_engine, create_tables
from verifactu_kernel.db.immutability import register_immutability_listeners
from verifactu_kernel.domain.clock import DeterministicClock
from verifactu_kernel.domain.submission import SubmissionResponse
from verifactu_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from verifactu_kernel.services.certificate_monitor import CertificateMonitor
from verifactu_kernel.services.certificate_store import CertificateStore
from verifactu_kernel.services.chain_registry import ChainRegistry
from verifactu_kernel.services.config_service import ConfigService
from verifactu_kernel.utils.secrets import SecretBox

from verifactu_batch.domain.types import WorkerPolicy
from verifactu_batch.services.transmission_worker import TransmissionWorker

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

TEST_ENCRYPTION_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"

CERTIFICATE_PASSPHRASE = "s3cret-passphrase"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture verifactu_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, registry):
            registry.get_or_create(...)
            logs = captured_logs()
            assert any(r["message"] == "chain_record_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("verifactu_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _immutability_listeners():
    register_immutability_listeners()
    yield


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'verifactu.db'}"


@pytest.fixture
def engine(database_url):
    engine = build_engine(database_url)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def clock():
    return DeterministicClock(T0)


@pytest.fixture
def secret_box():
    return SecretBox.from_hex(TEST_ENCRYPTION_KEY_HEX)


# =============================================================================
# Invoice snapshots
# =============================================================================


@pytest.fixture
def invoice_mapping():
    """
    Build an invoice mapping as the invoicing module would hand it over.

    The default is two lines (21% and 4%) totalling 220.00 + 42.80.
    """

    def _build(invoice_id="INV-1", number="F2024-0001", **overrides):
        data = {
            "invoice_id": invoice_id,
            "number": number,
            "issue_date": "2024-03-15",
            "direction": "issued",
            "business": {
                "legal_id": "B-12345678",
                "name": "Acme Servicios SL",
                "address": "Calle Mayor 1, Madrid",
            },
            "counterparty": {
                "legal_id": "a 87654321",
                "name": "Cliente Ejemplo SA",
                "address": "Avenida Diagonal 10, Barcelona",
                "country_code": "ES",
            },
            "lines": [
                {"description": "Consultoria", "quantity": "2", "unit_price": "100.00", "tax_rate": "21"},
                {"description": "Libro", "quantity": "1", "unit_price": "20.00", "tax_rate": "4"},
            ],
            "subtotal": "220.00",
            "tax_total": "42.80",
            "total": "262.80",
            "currency": "EUR",
            "invoice_type": "F1",
        }
        data.update(overrides)
        return data

    return _build


class InMemoryInvoiceSource:
    """Invoice source backed by a dict keyed on (business_id, invoice_id)."""

    def __init__(self):
        self.snapshots = {}
        self.loads = 0

    def add(self, business_id, mapping):
        self.snapshots[(business_id, mapping["invoice_id"])] = mapping

    def load_snapshot(self, business_id, invoice_id, direction):
        self.loads += 1
        return self.snapshots[(business_id, invoice_id)]


@pytest.fixture
def invoice_source():
    return InMemoryInvoiceSource()


# =============================================================================
# Business configuration
# =============================================================================


@pytest.fixture
def configure_business(session_factory, clock):
    """Create (or update) and commit a ComplianceConfig; returns the business id."""

    def _configure(business_id=None, enabled=True, **changes):
        business_id = business_id or uuid4()
        values = {
            "legal_id": "B12345678",
            "legal_name": "Acme Servicios SL",
            "flow_control_interval_seconds": 0,
        }
        values.update(changes)
        with session_factory.begin() as session:
            ConfigService(session, clock=clock).upsert(business_id, enabled=enabled, **values)
        return business_id

    return _configure


@pytest.fixture
def business_id(configure_business):
    return configure_business()


@pytest.fixture
def registry(session_factory, invoice_source, clock):
    return ChainRegistry(session_factory, invoice_source, clock=clock, render_qr=False)


@pytest.fixture
def register_invoices(registry, invoice_source, invoice_mapping):
    """Register ``count`` invoices for a business; returns their views in order."""

    def _register(business_id, count, start=1):
        views = []
        for n in range(start, start + count):
            mapping = invoice_mapping(invoice_id=f"INV-{n}", number=f"F2024-{n:04d}")
            invoice_source.add(business_id, mapping)
            views.append(registry.get_or_create(business_id, mapping["invoice_id"]))
        return views

    return _register


# =============================================================================
# Certificates
# =============================================================================


@pytest.fixture(scope="session")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def make_certificate(tmp_path, signing_key):
    """Write a self-signed PKCS#12 bundle; returns its path as a string."""

    def _make(not_after, not_before=None, passphrase=CERTIFICATE_PASSPHRASE, filename=None):
        not_before = not_before or not_after - timedelta(days=730)
        name = x509.Name([
            x509.NameAttribute(NameOID.COMMON_NAME, "Acme Servicios SL"),
            x509.NameAttribute(NameOID.SERIAL_NUMBER, "B12345678"),
            x509.NameAttribute(NameOID.COUNTRY_NAME, "ES"),
        ])
        certificate = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(signing_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .sign(signing_key, hashes.SHA256())
        )
        blob = pkcs12.serialize_key_and_certificates(
            b"acme",
            signing_key,
            certificate,
            None,
            serialization.BestAvailableEncryption(passphrase.encode("utf-8")),
        )
        path = tmp_path / (filename or f"cert-{uuid4().hex[:8]}.p12")
        path.write_bytes(blob)
        return str(path)

    return _make


@pytest.fixture
def certificate_store():
    return CertificateStore()


@pytest.fixture
def install_certificate(session_factory, clock, secret_box, certificate_store, make_certificate):
    """Install a certificate expiring at ``not_after`` on a business."""

    def _install(business_id, not_after, passphrase=CERTIFICATE_PASSPHRASE):
        path = make_certificate(not_after, passphrase=passphrase)
        with session_factory.begin() as session:
            ConfigService(session, clock=clock, secret_box=secret_box).install_certificate(
                business_id, path, passphrase, certificate_store
            )
        return path

    return _install


@pytest.fixture
def monitor(session_factory, certificate_store, secret_box, clock):
    return CertificateMonitor(session_factory, certificate_store, secret_box=secret_box, clock=clock)


# =============================================================================
# Gateways and worker
# =============================================================================


class ScriptedGateway:
    """
    Answers submissions from a script, then accepts everything.

    Script steps: ``"accept"``, ``("reject", code, message)`` or an
    exception instance to raise.
    """

    def __init__(self, script=(), clock=None):
        self.script = list(script)
        self.clock = clock
        self.submitted = []
        self.submitted_at = []

    def submit(self, envelopes, timeout):
        self.submitted.extend(envelopes)
        if self.clock is not None:
            self.submitted_at.append(self.clock.now())
        step = self.script.pop(0) if self.script else "accept"
        if isinstance(step, Exception):
            raise step
        responses = []
        for envelope in envelopes:
            if step == "accept":
                responses.append(
                    SubmissionResponse.accept(envelope.invoice_number, f"CSV-{envelope.sequence_number}")
                )
            else:
                _, code, message = step
                responses.append(SubmissionResponse.reject(envelope.invoice_number, code, message))
        return responses

    @property
    def submitted_sequences(self):
        return [e.sequence_number for e in self.submitted]


@pytest.fixture
def gateway(clock):
    return ScriptedGateway(clock=clock)


@pytest.fixture
def make_worker(session_factory, monitor, clock):
    def _make(gateway, **policy):
        return TransmissionWorker(
            session_factory,
            gateway,
            monitor,
            clock=clock,
            policy=WorkerPolicy(**policy),
        )

    return _make
