"""
Tests for ConfigService.

Uses SQLite with real ORM models.
"""

import threading
from datetime import timedelta
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy import select

from verifactu_kernel.exceptions import (
    CertificateMissingError,
    CertificateTimeoutError,
    CertificateUnreadableError,
    ComplianceNotConfiguredError,
    ConfigurationError,
    ValidationError,
)
from verifactu_kernel.models.compliance_config import ComplianceConfig
from verifactu_kernel.models.compliance_event import ComplianceEvent
from verifactu_kernel.services.certificate_store import CertificateStore
from verifactu_kernel.services.config_service import ConfigService

from tests.conftest import CERTIFICATE_PASSPHRASE, T0


@pytest.fixture
def upsert(session_factory, clock):
    def _upsert(business_id, **changes):
        with session_factory.begin() as session:
            ConfigService(session, clock=clock).upsert(business_id, **changes)
        with session_factory() as session:
            config = session.execute(
                select(ComplianceConfig).where(ComplianceConfig.business_id == business_id)
            ).scalar_one()
            session.expunge(config)
            return config

    return _upsert


class TestUpsert:

    def test_creation_defaults(self, upsert):
        config = upsert(uuid4(), legal_id="b-12345678", legal_name="Acme Servicios SL")

        assert config.legal_id == "B12345678"
        assert config.enabled is False
        assert config.mode == "verifactu"
        assert config.environment == "testing"
        assert config.flow_control_interval_seconds == 60
        assert config.max_records_per_batch == 10
        assert config.auto_submit is True
        assert config.last_sequence_number == 0

    def test_creation_requires_identity(self, session_factory):
        with pytest.raises(ValidationError) as exc_info:
            with session_factory.begin() as session:
                ConfigService(session).upsert(uuid4(), legal_id="B12345678")

        assert exc_info.value.fields == ("legal_name",)
        assert exc_info.value.subject == "configuration"

    def test_update_keeps_other_fields(self, upsert):
        business_id = uuid4()
        upsert(business_id, legal_id="B12345678", legal_name="Acme Servicios SL", mode="no_verifactu")

        config = upsert(business_id, environment="production")

        assert config.mode == "no_verifactu"
        assert config.environment == "production"

    def test_unknown_field_is_refused(self, session_factory, business_id):
        with pytest.raises(ValidationError) as exc_info:
            with session_factory.begin() as session:
                ConfigService(session).upsert(business_id, last_sequence_number=9)

        assert exc_info.value.fields == ("last_sequence_number",)

    @pytest.mark.parametrize(
        "changes,field",
        [
            ({"mode": "sometimes"}, "mode"),
            ({"environment": "staging"}, "environment"),
            ({"flow_control_interval_seconds": -1}, "flow_control_interval_seconds"),
            ({"max_records_per_batch": 0}, "max_records_per_batch"),
            ({"legal_name": "   "}, "legal_name"),
            ({"legal_id": "--"}, "legal_id"),
        ],
    )
    def test_invalid_values_are_refused(self, session_factory, business_id, changes, field):
        with pytest.raises(ValidationError) as exc_info:
            with session_factory.begin() as session:
                ConfigService(session).upsert(business_id, **changes)

        assert field in exc_info.value.fields

    def test_enable_and_disable(self, session_factory, configure_business):
        business_id = configure_business(enabled=False)

        with session_factory.begin() as session:
            assert ConfigService(session).enable(business_id).enabled is True
        with session_factory.begin() as session:
            assert ConfigService(session).disable(business_id).enabled is False

    def test_require_unknown_business(self, session_factory):
        with session_factory() as session:
            with pytest.raises(ComplianceNotConfiguredError):
                ConfigService(session).require(uuid4())


def _config(session_factory, business_id):
    with session_factory() as session:
        config = session.execute(
            select(ComplianceConfig).where(ComplianceConfig.business_id == business_id)
        ).scalar_one()
        session.expunge(config)
        return config


def _event_types(session_factory, business_id):
    with session_factory() as session:
        return session.execute(
            select(ComplianceEvent.event_type)
            .where(ComplianceEvent.business_id == business_id)
            .order_by(ComplianceEvent.occurred_at)
        ).scalars().all()


class SlowCertificateStore(CertificateStore):
    def load(self, business_id, certificate_ref, passphrase):
        threading.Event().wait(0.5)
        return super().load(business_id, certificate_ref, passphrase)


class TestCertificates:

    def test_install_without_secret_box(self, session_factory, business_id, certificate_store):
        with session_factory() as session:
            with pytest.raises(ConfigurationError):
                ConfigService(session).install_certificate(business_id, "cert.p12", "x", certificate_store)

    def test_install_stores_window_and_sealed_passphrase(
        self, session_factory, business_id, install_certificate, secret_box
    ):
        path = install_certificate(business_id, T0 + timedelta(days=365))

        config = _config(session_factory, business_id)
        assert config.certificate_ref == path
        assert config.certificate_valid_until == T0 + timedelta(days=365)
        assert config.certificate_passphrase_encrypted != CERTIFICATE_PASSPHRASE
        assert secret_box.decrypt(config.certificate_passphrase_encrypted, business_id) == CERTIFICATE_PASSPHRASE
        assert "certificate_installed" in _event_types(session_factory, business_id)

    def test_install_times_out_on_slow_read(
        self, session_factory, business_id, make_certificate, clock, secret_box
    ):
        path = make_certificate(T0 + timedelta(days=365))

        with session_factory() as session:
            service = ConfigService(session, clock=clock, secret_box=secret_box)
            with pytest.raises(CertificateTimeoutError) as excinfo:
                service.install_certificate(
                    business_id, path, CERTIFICATE_PASSPHRASE, SlowCertificateStore(), parse_timeout_seconds=0.05
                )

        assert excinfo.value.retryable
        assert _config(session_factory, business_id).certificate_ref is None

    def test_update_passphrase_after_rotation(
        self, session_factory, business_id, install_certificate, make_certificate,
        certificate_store, monitor, clock, secret_box,
    ):
        path = install_certificate(business_id, T0 + timedelta(days=365))
        make_certificate(T0 + timedelta(days=365), passphrase="rotated-passphrase", filename=Path(path).name)

        with pytest.raises(CertificateUnreadableError):
            monitor.load_signing_certificate(business_id)

        with session_factory.begin() as session:
            ConfigService(session, clock=clock, secret_box=secret_box).update_passphrase(
                business_id, "rotated-passphrase", certificate_store
            )

        config = _config(session_factory, business_id)
        assert secret_box.decrypt(config.certificate_passphrase_encrypted, business_id) == "rotated-passphrase"
        assert monitor.load_signing_certificate(business_id).info.not_after == T0 + timedelta(days=365)
        assert "certificate_passphrase_updated" in _event_types(session_factory, business_id)

    def test_update_passphrase_refuses_wrong_passphrase(
        self, session_factory, business_id, install_certificate, certificate_store, clock, secret_box
    ):
        install_certificate(business_id, T0 + timedelta(days=365))
        sealed = _config(session_factory, business_id).certificate_passphrase_encrypted

        with session_factory() as session:
            service = ConfigService(session, clock=clock, secret_box=secret_box)
            with pytest.raises(CertificateUnreadableError):
                service.update_passphrase(business_id, "not-the-passphrase", certificate_store)

        assert _config(session_factory, business_id).certificate_passphrase_encrypted == sealed

    def test_update_passphrase_without_certificate(
        self, session_factory, business_id, certificate_store, clock, secret_box
    ):
        with session_factory() as session:
            service = ConfigService(session, clock=clock, secret_box=secret_box)
            with pytest.raises(CertificateMissingError):
                service.update_passphrase(business_id, "anything", certificate_store)

    def test_remove_certificate_clears_fields_and_file(
        self, session_factory, business_id, install_certificate, certificate_store, monitor, clock
    ):
        path = install_certificate(business_id, T0 + timedelta(days=365))

        with session_factory.begin() as session:
            removed = ConfigService(session, clock=clock).remove_certificate(business_id, certificate_store)

        assert removed is True
        assert not Path(path).exists()
        config = _config(session_factory, business_id)
        assert config.certificate_ref is None
        assert config.certificate_passphrase_encrypted is None
        assert config.certificate_subject is None
        assert config.certificate_valid_from is None
        assert config.certificate_valid_until is None
        assert config.certificate_checked_at is None
        assert monitor.check(business_id).health == "missing"
        assert "certificate_removed" in _event_types(session_factory, business_id)

    def test_remove_without_store_keeps_file(
        self, session_factory, business_id, install_certificate, clock
    ):
        path = install_certificate(business_id, T0 + timedelta(days=365))

        with session_factory.begin() as session:
            ConfigService(session, clock=clock).remove_certificate(business_id)

        assert Path(path).exists()
        assert _config(session_factory, business_id).certificate_ref is None

    def test_remove_when_nothing_installed(self, session_factory, business_id, clock):
        with session_factory.begin() as session:
            assert ConfigService(session, clock=clock).remove_certificate(business_id) is False

        assert "certificate_removed" not in _event_types(session_factory, business_id)
