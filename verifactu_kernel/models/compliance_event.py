"""
Module: verifactu_kernel.models.compliance_event
Responsibility: Append-only operational log per business (record creation,
    submission outcomes, reclaims, requeues, certificate checks, chain
    verifications).
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Rows are never updated or deleted (ORM listener).
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from verifactu_kernel.db.base import Base, UUIDString


class ComplianceEventType(str, Enum):
    RECORD_CREATED = "record_created"
    RECORD_SENT = "record_sent"
    RECORD_RETRY_SCHEDULED = "record_retry_scheduled"
    RECORD_FAILED = "record_failed"
    RECORD_RECLAIMED = "record_reclaimed"
    RECORD_REQUEUED = "record_requeued"
    CERTIFICATE_INSTALLED = "certificate_installed"
    CERTIFICATE_CHECKED = "certificate_checked"
    CERTIFICATE_PASSPHRASE_UPDATED = "certificate_passphrase_updated"
    CERTIFICATE_REMOVED = "certificate_removed"
    CHAIN_VERIFIED = "chain_verified"
    CHAIN_BROKEN = "chain_broken"


class ComplianceEvent(Base):
    """One operational event."""

    __tablename__ = "compliance_events"

    __table_args__ = (
        Index("idx_compliance_event_business", "business_id", "occurred_at"),
    )

    business_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # ChainRecord.id when the event concerns one record
    record_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    event_type: Mapped[ComplianceEventType] = mapped_column(String(50), nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<ComplianceEvent {self.event_type} {self.business_id}>"
