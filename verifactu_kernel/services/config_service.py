"""
ConfigService -- creates and updates per-business ComplianceConfig rows.

Responsibility:
    First configuration action creates the row; later calls update the
    mode, environment, worker settings and the installed certificate
    (install, passphrase rotation, removal).
    Never touches the sequence cache (ChainRegistry owns it).

Architecture position:
    Kernel > Services.  Flush-only; the caller commits.

Failure modes:
    - ValidationError on out-of-range worker settings or unknown enums.
    - ComplianceNotConfiguredError when updating a business with no row.
    - CertificateMissingError / CertificateUnreadableError when installing
      a certificate that cannot be parsed; CertificateTimeoutError when the
      parse does not finish in time.
    - ConfigurationError when a passphrase must be sealed and no SecretBox
      was given.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from verifactu_kernel.db.types import normalize_legal_id
from verifactu_kernel.domain.clock import Clock, SystemClock
from verifactu_kernel.exceptions import (
    CertificateMissingError,
    ComplianceNotConfiguredError,
    ConfigurationError,
    ValidationError,
)
from verifactu_kernel.logging_config import get_logger
from verifactu_kernel.models.compliance_config import (
    ComplianceConfig,
    ComplianceEnvironment,
    ComplianceMode,
)
from verifactu_kernel.models.compliance_event import ComplianceEventType
from verifactu_kernel.services.base import BaseService
from verifactu_kernel.services.certificate_store import (
    DEFAULT_PARSE_TIMEOUT_SECONDS,
    CertificateInfo,
    CertificateStore,
    load_with_timeout,
)
from verifactu_kernel.services.event_log import EventLog
from verifactu_kernel.utils.secrets import SecretBox

logger = get_logger("services.config")

_UPDATABLE = (
    "legal_id",
    "legal_name",
    "enabled",
    "mode",
    "environment",
    "flow_control_interval_seconds",
    "max_records_per_batch",
    "auto_submit",
)


class ConfigService(BaseService):
    """Writes ComplianceConfig rows."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        secret_box: SecretBox | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._secret_box = secret_box

    def get(self, business_id: UUID) -> ComplianceConfig | None:
        return self.session.execute(
            select(ComplianceConfig).where(ComplianceConfig.business_id == business_id)
        ).scalar_one_or_none()

    def require(self, business_id: UUID) -> ComplianceConfig:
        config = self.get(business_id)
        if config is None:
            raise ComplianceNotConfiguredError(str(business_id))
        return config

    def upsert(self, business_id: UUID, **changes) -> ComplianceConfig:
        """
        Create or update the business's configuration.

        ``legal_id`` and ``legal_name`` are required on creation.  Unknown
        keys are refused.
        """
        unknown = sorted(set(changes) - set(_UPDATABLE))
        if unknown:
            raise ValidationError([f"{key}: not a configurable field" for key in unknown], subject="configuration")

        normalized = self._validate(changes)
        config = self.get(business_id)
        created = config is None
        if created:
            missing = [f"{key}: required" for key in ("legal_id", "legal_name") if not normalized.get(key)]
            if missing:
                raise ValidationError(missing, subject="configuration")
            config = ComplianceConfig(
                business_id=business_id,
                last_sequence_number=0,
                row_version=0,
                enabled=False,
                mode=ComplianceMode.VERIFACTU.value,
                environment=ComplianceEnvironment.TESTING.value,
                flow_control_interval_seconds=60,
                max_records_per_batch=10,
                auto_submit=True,
            )
            self.session.add(config)

        for key, value in normalized.items():
            setattr(config, key, value)
        self.session.flush()

        logger.info(
            "compliance_config_created" if created else "compliance_config_updated",
            extra={"business_id": str(business_id), "fields": sorted(normalized)},
        )
        return config

    def enable(self, business_id: UUID) -> ComplianceConfig:
        return self.upsert(business_id, enabled=True)

    def disable(self, business_id: UUID) -> ComplianceConfig:
        return self.upsert(business_id, enabled=False)

    def install_certificate(
        self,
        business_id: UUID,
        certificate_ref: str,
        passphrase: str,
        store: CertificateStore,
        parse_timeout_seconds: float = DEFAULT_PARSE_TIMEOUT_SECONDS,
    ) -> CertificateInfo:
        """
        Parse and attach a signing certificate.

        The passphrase is stored sealed with the configured SecretBox.
        """
        secret_box = self._require_secret_box()
        config = self.require(business_id)
        info = load_with_timeout(store, business_id, certificate_ref, passphrase, parse_timeout_seconds).info

        config.certificate_ref = certificate_ref
        config.certificate_passphrase_encrypted = secret_box.encrypt(passphrase, business_id)
        self._store_window(config, info)
        self.session.flush()

        EventLog(self.session, self._clock).record(
            business_id,
            ComplianceEventType.CERTIFICATE_INSTALLED,
            payload={
                "subject": info.subject,
                "serial_number": info.serial_number,
                "not_after": info.not_after.isoformat(),
            },
        )
        logger.info(
            "certificate_installed",
            extra={
                "business_id": str(business_id),
                "subject": info.subject,
                "valid_until": info.not_after.isoformat(),
            },
        )
        return info

    def update_passphrase(
        self,
        business_id: UUID,
        passphrase: str,
        store: CertificateStore,
        parse_timeout_seconds: float = DEFAULT_PARSE_TIMEOUT_SECONDS,
    ) -> CertificateInfo:
        """
        Replace the sealed passphrase of the installed certificate.

        The new passphrase must open the certificate; the stored one is
        left as it was when it does not.
        """
        secret_box = self._require_secret_box()
        config = self.require(business_id)
        if not config.certificate_ref:
            raise CertificateMissingError(str(business_id))
        info = load_with_timeout(store, business_id, config.certificate_ref, passphrase, parse_timeout_seconds).info

        config.certificate_passphrase_encrypted = secret_box.encrypt(passphrase, business_id)
        self._store_window(config, info)
        self.session.flush()

        EventLog(self.session, self._clock).record(
            business_id,
            ComplianceEventType.CERTIFICATE_PASSPHRASE_UPDATED,
            payload={"subject": info.subject, "serial_number": info.serial_number},
        )
        logger.info("certificate_passphrase_updated", extra={"business_id": str(business_id)})
        return info

    def remove_certificate(self, business_id: UUID, store: CertificateStore | None = None) -> bool:
        """
        Detach the signing certificate and forget its validity window.

        With a ``store`` the certificate file is deleted as well.  Returns
        False when no certificate was installed.
        """
        config = self.require(business_id)
        certificate_ref = config.certificate_ref
        if not certificate_ref:
            return False

        file_deleted = store.delete(certificate_ref) if store is not None else False
        subject = config.certificate_subject
        config.certificate_ref = None
        config.certificate_passphrase_encrypted = None
        config.certificate_subject = None
        config.certificate_valid_from = None
        config.certificate_valid_until = None
        config.certificate_checked_at = None
        self.session.flush()

        EventLog(self.session, self._clock).record(
            business_id,
            ComplianceEventType.CERTIFICATE_REMOVED,
            payload={"subject": subject, "file_deleted": file_deleted},
        )
        logger.info(
            "certificate_removed",
            extra={"business_id": str(business_id), "file_deleted": file_deleted},
        )
        return True

    def _require_secret_box(self) -> SecretBox:
        if self._secret_box is None:
            raise ConfigurationError("ConfigService needs a SecretBox to store certificate passphrases")
        return self._secret_box

    def _store_window(self, config: ComplianceConfig, info: CertificateInfo) -> None:
        config.certificate_subject = info.subject
        config.certificate_valid_from = info.not_before
        config.certificate_valid_until = info.not_after
        config.certificate_checked_at = self._clock.now()

    @staticmethod
    def _validate(changes: dict) -> dict:
        errors: list[str] = []
        normalized = dict(changes)

        if "legal_id" in changes:
            normalized["legal_id"] = normalize_legal_id(changes["legal_id"] or "")
            if not normalized["legal_id"]:
                errors.append("legal_id: required")
        if "legal_name" in changes and not (changes["legal_name"] or "").strip():
            errors.append("legal_name: required")
        if "mode" in changes:
            try:
                normalized["mode"] = ComplianceMode(changes["mode"]).value
            except ValueError:
                errors.append(f"mode: unknown mode {changes['mode']!r}")
        if "environment" in changes:
            try:
                normalized["environment"] = ComplianceEnvironment(changes["environment"]).value
            except ValueError:
                errors.append(f"environment: unknown environment {changes['environment']!r}")
        interval = changes.get("flow_control_interval_seconds")
        if interval is not None and (not isinstance(interval, int) or interval < 0):
            errors.append("flow_control_interval_seconds: must be a non-negative integer")
        batch = changes.get("max_records_per_batch")
        if batch is not None and (not isinstance(batch, int) or batch < 1):
            errors.append("max_records_per_batch: must be a positive integer")

        if errors:
            raise ValidationError(errors, subject="configuration")
        return normalized
