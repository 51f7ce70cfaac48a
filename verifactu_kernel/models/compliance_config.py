"""
Module: verifactu_kernel.models.compliance_config
Responsibility: Per-business compliance settings, signing-certificate
    metadata and the chain's sequence cache.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One row per business (business_id unique).
    - last_sequence_number always equals the highest ChainRecord.sequence_number
      of the business.  It is advanced only by ChainRegistry, in the same
      transaction that inserts the record, through a conditional UPDATE on
      (last_sequence_number, row_version).

Writers:
    - ConfigService: enabled/mode/environment/worker settings/certificate.
    - ChainRegistry: last_sequence_number, row_version.
    - CertificateMonitor: certificate_valid_from/until, certificate_checked_at.
    - TransmissionWorker: last_submission_attempt_at, last_processed_at.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import BigInteger, Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from verifactu_kernel.db.base import TrackedBase, UUIDString


class ComplianceMode(str, Enum):
    """Reporting mode of a business."""

    VERIFACTU = "verifactu"  # Records are self-verifiable from creation
    NO_VERIFACTU = "no_verifactu"  # Verifiable only once sent


class ComplianceEnvironment(str, Enum):
    TESTING = "testing"
    PRODUCTION = "production"


class ComplianceConfig(TrackedBase):
    """
    Compliance configuration of one business.

    Guarantees:
        - flow_control_interval_seconds >= 0 and max_records_per_batch >= 1
          (enforced by ConfigService).
    """

    __tablename__ = "compliance_configs"

    business_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, unique=True)

    # Reporting party as it appears in Cabecera/ObligadoEmision
    legal_id: Mapped[str] = mapped_column(String(32), nullable=False)
    legal_name: Mapped[str] = mapped_column(String(255), nullable=False)

    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    mode: Mapped[ComplianceMode] = mapped_column(
        String(20),
        nullable=False,
        default=ComplianceMode.VERIFACTU.value,
    )

    environment: Mapped[ComplianceEnvironment] = mapped_column(
        String(20),
        nullable=False,
        default=ComplianceEnvironment.TESTING.value,
    )

    # Signing certificate (PKCS#12 file reference, passphrase sealed by SecretBox)
    certificate_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    certificate_passphrase_encrypted: Mapped[str | None] = mapped_column(String(500), nullable=True)
    certificate_subject: Mapped[str | None] = mapped_column(String(500), nullable=True)
    certificate_valid_from: Mapped[datetime | None] = mapped_column(nullable=True)
    certificate_valid_until: Mapped[datetime | None] = mapped_column(nullable=True)
    certificate_checked_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Sequence cache
    last_sequence_number: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    row_version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Worker settings
    flow_control_interval_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    max_records_per_batch: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    auto_submit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    last_submission_attempt_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_processed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<ComplianceConfig {self.business_id} {self.mode} enabled={self.enabled}>"

    @property
    def is_self_verifiable(self) -> bool:
        return self.mode == ComplianceMode.VERIFACTU

    @property
    def is_production(self) -> bool:
        return self.environment == ComplianceEnvironment.PRODUCTION
