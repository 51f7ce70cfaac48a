"""
Tests for CertificateMonitor, CertificateStore and certificate installation.

Uses SQLite with real ORM models and self-signed PKCS#12 bundles written
to the test's temporary directory.
"""

import time
from datetime import timedelta
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy import select

from verifactu_kernel.domain.clock import DeterministicClock
from verifactu_kernel.exceptions import (
    CertificateMissingError,
    CertificateUnreadableError,
    ComplianceNotConfiguredError,
)
from verifactu_kernel.models.compliance_config import ComplianceConfig
from verifactu_kernel.models.compliance_event import ComplianceEvent
from verifactu_kernel.services.certificate_monitor import (
    CertificateHealth,
    CertificateMonitor,
    classify_certificate,
    days_until,
)
from verifactu_kernel.services.certificate_store import CertificateStore
from verifactu_kernel.services.config_service import ConfigService

from tests.conftest import CERTIFICATE_PASSPHRASE, T0


# =============================================================================
# Pure classification
# =============================================================================


class TestClassifyCertificate:

    @pytest.mark.parametrize(
        "offset,health,days",
        [
            (timedelta(days=31), CertificateHealth.HEALTHY, 31),
            (timedelta(days=30), CertificateHealth.EXPIRING_SOON, 30),
            (timedelta(days=10), CertificateHealth.EXPIRING_SOON, 10),
            (timedelta(hours=5), CertificateHealth.EXPIRING_SOON, 0),
            (timedelta(hours=-1), CertificateHealth.EXPIRED, -1),
            (timedelta(days=-1), CertificateHealth.EXPIRED, -1),
        ],
    )
    def test_thresholds(self, offset, health, days):
        status = classify_certificate(uuid4(), T0 + offset, T0)

        assert status.health == health.value
        assert status.days_until_expiration == days
        assert status.is_expired == (health is CertificateHealth.EXPIRED)
        assert status.is_expiring_soon == (health is CertificateHealth.EXPIRING_SOON)

    def test_no_window_is_missing(self):
        status = classify_certificate(uuid4(), None, T0)

        assert status.health == CertificateHealth.MISSING.value
        assert status.days_until_expiration is None

    def test_custom_threshold(self):
        status = classify_certificate(uuid4(), T0 + timedelta(days=10), T0, threshold_days=7)

        assert status.health == CertificateHealth.HEALTHY.value

    def test_days_until_floors(self):
        assert days_until(T0 + timedelta(days=2, hours=23), T0) == 2
        assert days_until(T0 - timedelta(minutes=1), T0) == -1


# =============================================================================
# Monitor over stored configuration
# =============================================================================


class TestCheck:

    def test_business_without_certificate_is_missing(self, monitor, business_id):
        assert monitor.check(business_id).health == "missing"

    def test_expiring_certificate(self, monitor, business_id, install_certificate, captured_logs):
        install_certificate(business_id, T0 + timedelta(days=10))

        status = monitor.check(business_id)

        assert status.health == "expiring_soon"
        assert status.days_until_expiration == 10
        assert status.subject is not None and "Acme Servicios SL" in status.subject
        warnings = [r for r in captured_logs() if r["message"] == "certificate_expiring_soon"]
        assert warnings[0]["level"] == "WARNING"
        assert warnings[0]["days_until_expiration"] == 10

    def test_expired_certificate(self, monitor, business_id, install_certificate, captured_logs):
        install_certificate(business_id, T0 - timedelta(days=1))

        status = monitor.check(business_id)

        assert status.health == "expired"
        assert status.is_expired
        assert any(r["message"] == "certificate_expired" for r in captured_logs())

    def test_unknown_business(self, monitor):
        with pytest.raises(ComplianceNotConfiguredError):
            monitor.check(uuid4())

    def test_check_all_summarizes(self, monitor, configure_business, install_certificate):
        healthy = configure_business()
        expiring = configure_business()
        expired = configure_business()
        configure_business()
        install_certificate(healthy, T0 + timedelta(days=365))
        install_certificate(expiring, T0 + timedelta(days=3))
        install_certificate(expired, T0 - timedelta(days=3))

        report = monitor.check_all()

        assert report.summary == {
            "total": 4,
            "healthy": 1,
            "expiring_soon": 1,
            "expired": 1,
            "missing": 1,
        }
        assert len(report.statuses) == 4

    def test_classification_follows_the_clock(self, monitor, business_id, install_certificate, clock):
        install_certificate(business_id, T0 + timedelta(days=40))
        assert monitor.check(business_id).health == "healthy"

        clock.advance(timedelta(days=15).total_seconds())

        assert monitor.check(business_id).health == "expiring_soon"


class TestRefresh:

    def test_refresh_reads_replaced_certificate(
        self, monitor, business_id, install_certificate, make_certificate, session_factory
    ):
        path = install_certificate(business_id, T0 + timedelta(days=5))
        make_certificate(T0 + timedelta(days=400), filename=Path(path).name)

        status = monitor.refresh(business_id)

        assert status.health == "healthy"
        assert status.days_until_expiration == 400
        with session_factory() as session:
            config = session.execute(
                select(ComplianceConfig).where(ComplianceConfig.business_id == business_id)
            ).scalar_one()
            assert config.certificate_valid_until == T0 + timedelta(days=400)
            events = session.execute(
                select(ComplianceEvent.event_type).where(ComplianceEvent.business_id == business_id)
            ).scalars().all()
        assert "certificate_checked" in events

    def test_refresh_all_keeps_stored_window_when_file_is_gone(
        self, monitor, business_id, install_certificate, captured_logs
    ):
        path = install_certificate(business_id, T0 + timedelta(days=5))
        Path(path).unlink()

        report = monitor.refresh_all()

        assert report.statuses[0].health == "expiring_soon"
        assert any(r["message"] == "certificate_refresh_failed" for r in captured_logs())

    def test_refresh_without_certificate(self, monitor, business_id):
        with pytest.raises(CertificateMissingError):
            monitor.refresh(business_id)

    def test_parse_timeout(self, session_factory, secret_box, clock, business_id, install_certificate):
        install_certificate(business_id, T0 + timedelta(days=100))

        class SlowStore(CertificateStore):
            def load(self, business_id, certificate_ref, passphrase):
                time.sleep(0.5)
                return super().load(business_id, certificate_ref, passphrase)

        monitor = CertificateMonitor(
            session_factory, SlowStore(), secret_box=secret_box, clock=clock, parse_timeout_seconds=0.05
        )

        with pytest.raises(CertificateUnreadableError) as exc_info:
            monitor.refresh(business_id)

        assert "timed out" in exc_info.value.reason


class TestSigningCertificate:

    def test_signature_verifies(self, monitor, business_id, install_certificate):
        install_certificate(business_id, T0 + timedelta(days=100))

        loaded = monitor.load_signing_certificate(business_id)
        signature = loaded.sign(b"<RegFactuSistemaFacturacion/>")

        assert loaded.verify(b"<RegFactuSistemaFacturacion/>", signature)
        assert not loaded.verify(b"<RegFactuSistemaFacturacion>x</RegFactuSistemaFacturacion>", signature)
        assert loaded.certificate_pem().startswith("-----BEGIN CERTIFICATE-----")

    def test_monitor_without_key_cannot_unseal_passphrase(
        self, session_factory, certificate_store, clock, business_id, install_certificate
    ):
        install_certificate(business_id, T0 + timedelta(days=100))
        monitor = CertificateMonitor(session_factory, certificate_store, clock=clock)

        with pytest.raises(CertificateUnreadableError):
            monitor.load_signing_certificate(business_id)


# =============================================================================
# Installation
# =============================================================================


class TestInstallCertificate:

    def test_passphrase_is_sealed(self, business_id, install_certificate, session_factory, secret_box):
        install_certificate(business_id, T0 + timedelta(days=100))

        with session_factory() as session:
            config = session.execute(
                select(ComplianceConfig).where(ComplianceConfig.business_id == business_id)
            ).scalar_one()
            sealed = config.certificate_passphrase_encrypted

        assert CERTIFICATE_PASSPHRASE not in sealed
        assert secret_box.decrypt(sealed, business_id) == CERTIFICATE_PASSPHRASE
        with pytest.raises(ValueError):
            secret_box.decrypt(sealed, uuid4())

    def test_wrong_passphrase_is_refused(
        self, business_id, make_certificate, session_factory, secret_box, certificate_store
    ):
        path = make_certificate(T0 + timedelta(days=100))

        with pytest.raises(CertificateUnreadableError):
            with session_factory.begin() as session:
                ConfigService(session, secret_box=secret_box).install_certificate(
                    business_id, path, "wrong", certificate_store
                )

    def test_missing_file_is_refused(self, business_id, session_factory, secret_box, certificate_store, tmp_path):
        with pytest.raises(CertificateMissingError):
            with session_factory.begin() as session:
                ConfigService(session, secret_box=secret_box).install_certificate(
                    business_id, str(tmp_path / "nope.p12"), "x", certificate_store
                )

    def test_relative_reference_resolves_against_base_dir(self, tmp_path, make_certificate):
        path = Path(make_certificate(T0 + timedelta(days=100)))
        store = CertificateStore(tmp_path)

        info = store.inspect(uuid4(), path.name, CERTIFICATE_PASSPHRASE)

        assert info.not_after == T0 + timedelta(days=100)

    def test_installation_uses_clock(self, business_id, install_certificate, session_factory):
        install_certificate(business_id, T0 + timedelta(days=100))

        with session_factory() as session:
            config = session.execute(
                select(ComplianceConfig).where(ComplianceConfig.business_id == business_id)
            ).scalar_one()
            assert config.certificate_checked_at == DeterministicClock(T0).now()
