"""
CertificateMonitor -- signing-certificate lifecycle.

Responsibility:
    Classifies each business's signing certificate as healthy, expiring
    soon, expired or missing; summarizes the classification across all
    configured businesses; and refreshes the stored validity window by
    re-reading the certificate.

Architecture position:
    Kernel > Services.  ``check``/``check_all`` read stored metadata only.
    ``refresh`` parses the PKCS#12 blob inside a cancellable future with a
    timeout and is meant for the scheduled task, never a request path.

Classification (days = floor((valid_until - now) / 1 day)):
    days < 0                    -> expired
    0 <= days <= threshold      -> expiring soon   (threshold default 30)
    days > threshold            -> healthy
    no certificate / no window  -> missing

Failure modes:
    - refresh: CertificateMissingError, CertificateUnreadableError,
      CertificateTimeoutError.  Stored fields are left untouched.

Audit relevance:
    Expired and expiring certificates are logged at WARNING with the days
    left; every refresh writes a CERTIFICATE_CHECKED compliance event.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from verifactu_kernel.domain.clock import Clock, SystemClock
from verifactu_kernel.domain.dtos import CertificateCheckReport, CertificateStatus
from verifactu_kernel.exceptions import (
    CertificateError,
    CertificateUnreadableError,
    ComplianceNotConfiguredError,
)
from verifactu_kernel.logging_config import get_logger
from verifactu_kernel.models.compliance_config import ComplianceConfig
from verifactu_kernel.models.compliance_event import ComplianceEventType
from verifactu_kernel.services.certificate_store import (
    DEFAULT_PARSE_TIMEOUT_SECONDS,
    CertificateInfo,
    CertificateStore,
    LoadedCertificate,
    load_with_timeout,
)
from verifactu_kernel.services.event_log import EventLog
from verifactu_kernel.utils.secrets import SecretBox

logger = get_logger("services.certificate_monitor")

DEFAULT_EXPIRY_THRESHOLD_DAYS = 30


class CertificateHealth(str, Enum):
    HEALTHY = "healthy"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    MISSING = "missing"


def days_until(valid_until: datetime, now: datetime) -> int:
    """Whole days left, floored (an hour past expiry is day -1)."""
    return math.floor((valid_until - now) / timedelta(days=1))


def classify_certificate(
    business_id: UUID,
    valid_until: datetime | None,
    now: datetime,
    threshold_days: int = DEFAULT_EXPIRY_THRESHOLD_DAYS,
    subject: str | None = None,
) -> CertificateStatus:
    """Pure classification of one certificate's validity window."""
    if valid_until is None:
        return CertificateStatus(
            business_id=business_id,
            health=CertificateHealth.MISSING.value,
            valid_until=None,
            days_until_expiration=None,
            is_expired=False,
            is_expiring_soon=False,
            checked_at=now,
            subject=subject,
        )

    days = days_until(valid_until, now)
    is_expired = days < 0
    is_expiring_soon = 0 <= days <= threshold_days
    if is_expired:
        health = CertificateHealth.EXPIRED
    elif is_expiring_soon:
        health = CertificateHealth.EXPIRING_SOON
    else:
        health = CertificateHealth.HEALTHY
    return CertificateStatus(
        business_id=business_id,
        health=health.value,
        valid_until=valid_until,
        days_until_expiration=days,
        is_expired=is_expired,
        is_expiring_soon=is_expiring_soon,
        checked_at=now,
        subject=subject,
    )


def summarize(statuses: tuple[CertificateStatus, ...] | list[CertificateStatus]) -> dict[str, int]:
    summary = {"total": len(statuses)}
    for health in CertificateHealth:
        summary[health.value] = sum(1 for s in statuses if s.health == health.value)
    return summary


class CertificateMonitor:
    """
    Certificate health for every configured business.

    Contract:
        ``check``/``check_all`` never raise for certificate problems; they
        classify.  ``load_signing_certificate`` and ``refresh`` raise
        CertificateError subclasses.

    Non-goals:
        - Does NOT issue or renew certificates.
        - Does NOT deliver notifications; it logs and reports.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        store: CertificateStore,
        secret_box: SecretBox | None = None,
        clock: Clock | None = None,
        threshold_days: int = DEFAULT_EXPIRY_THRESHOLD_DAYS,
        parse_timeout_seconds: float = DEFAULT_PARSE_TIMEOUT_SECONDS,
    ):
        self._session_factory = session_factory
        self._store = store
        self._secret_box = secret_box
        self._clock = clock or SystemClock()
        self._threshold_days = threshold_days
        self._parse_timeout = parse_timeout_seconds

    @property
    def threshold_days(self) -> int:
        return self._threshold_days

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    def status_for(self, config: ComplianceConfig) -> CertificateStatus:
        valid_until = config.certificate_valid_until if config.certificate_ref else None
        return classify_certificate(
            config.business_id,
            valid_until,
            self._clock.now(),
            self._threshold_days,
            subject=config.certificate_subject,
        )

    def check(self, business_id: UUID) -> CertificateStatus:
        session = self._session_factory()
        try:
            config = _config_for(session, business_id)
            status = self.status_for(config)
        finally:
            session.close()
        self._log_status(status)
        return status

    def check_all(self) -> CertificateCheckReport:
        """Classify every configured business and count per class."""
        session = self._session_factory()
        try:
            configs = session.execute(
                select(ComplianceConfig).order_by(ComplianceConfig.business_id)
            ).scalars().all()
            statuses = tuple(self.status_for(config) for config in configs)
        finally:
            session.close()

        for status in statuses:
            self._log_status(status)
        report = CertificateCheckReport(statuses=statuses, summary=summarize(statuses))
        logger.info("certificate_check_completed", extra={"summary": report.summary})
        return report

    def _log_status(self, status: CertificateStatus) -> None:
        extra = {
            "business_id": str(status.business_id),
            "health": status.health,
            "days_until_expiration": status.days_until_expiration,
        }
        if status.health == CertificateHealth.EXPIRED.value:
            logger.warning("certificate_expired", extra=extra)
        elif status.health == CertificateHealth.EXPIRING_SOON.value:
            logger.warning("certificate_expiring_soon", extra=extra)
        elif status.health == CertificateHealth.MISSING.value:
            logger.info("certificate_missing", extra=extra)

    # -------------------------------------------------------------------------
    # Parsing (timeout-bounded)
    # -------------------------------------------------------------------------

    def _passphrase(self, config: ComplianceConfig) -> str | None:
        if not config.certificate_passphrase_encrypted:
            return None
        if self._secret_box is None:
            raise CertificateUnreadableError(str(config.business_id), "no encryption key configured")
        try:
            return self._secret_box.decrypt(config.certificate_passphrase_encrypted, config.business_id)
        except ValueError as exc:
            raise CertificateUnreadableError(str(config.business_id), str(exc)) from exc

    def _load_with_timeout(self, business_id: UUID, certificate_ref: str | None, passphrase: str | None) -> LoadedCertificate:
        return load_with_timeout(self._store, business_id, certificate_ref, passphrase, self._parse_timeout)

    def load_signing_certificate(self, business_id: UUID) -> LoadedCertificate:
        """Parse the business's certificate for signing (timeout-bounded)."""
        session = self._session_factory()
        try:
            config = _config_for(session, business_id)
            certificate_ref = config.certificate_ref
            passphrase = self._passphrase(config)
        finally:
            session.close()
        return self._load_with_timeout(business_id, certificate_ref, passphrase)

    def refresh(self, business_id: UUID) -> CertificateStatus:
        """
        Re-read the certificate and store its validity window.

        The parse runs with no database transaction open.
        """
        session = self._session_factory()
        try:
            config = _config_for(session, business_id)
            certificate_ref = config.certificate_ref
            passphrase = self._passphrase(config)
        finally:
            session.close()

        loaded = self._load_with_timeout(business_id, certificate_ref, passphrase)
        return self._store_info(business_id, loaded.info)

    def _store_info(self, business_id: UUID, info: CertificateInfo) -> CertificateStatus:
        session = self._session_factory()
        try:
            config = _config_for(session, business_id)
            config.certificate_subject = info.subject
            config.certificate_valid_from = info.not_before
            config.certificate_valid_until = info.not_after
            config.certificate_checked_at = self._clock.now()
            status = self.status_for(config)
            EventLog(session, self._clock).record(
                business_id,
                ComplianceEventType.CERTIFICATE_CHECKED,
                payload={
                    "health": status.health,
                    "days_until_expiration": status.days_until_expiration,
                    "not_after": info.not_after.isoformat(),
                },
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        self._log_status(status)
        return status

    def refresh_all(self) -> CertificateCheckReport:
        """
        Refresh every business with a certificate, then classify all.

        Per-business parse failures are logged and leave that business's
        stored window as it was.
        """
        session = self._session_factory()
        try:
            business_ids = list(
                session.execute(
                    select(ComplianceConfig.business_id).where(ComplianceConfig.certificate_ref.is_not(None))
                ).scalars()
            )
        finally:
            session.close()

        for business_id in business_ids:
            try:
                self.refresh(business_id)
            except CertificateError:
                logger.warning(
                    "certificate_refresh_failed",
                    extra={"business_id": str(business_id)},
                    exc_info=True,
                )
        return self.check_all()


def _config_for(session: Session, business_id: UUID) -> ComplianceConfig:
    config = session.execute(
        select(ComplianceConfig).where(ComplianceConfig.business_id == business_id)
    ).scalar_one_or_none()
    if config is None:
        raise ComplianceNotConfiguredError(str(business_id))
    return config
