"""
Module: verifactu_kernel.models.chain_record
Responsibility: ORM persistence for the per-business invoice hash chain and
    the transmission state of each link.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - (business_id, sequence_number) is unique; sequences start at 1 and are
      contiguous (assigned only by ChainRegistry).
    - (business_id, invoice_id) is unique; registration is idempotent.
    - current_hash = chain_hash(canonicalize(snapshot), previous_hash).
    - Chain fields are immutable after insert; rows are never deleted
      (ORM listener in db/immutability.py).  Only the transmission and
      worker bookkeeping columns in MUTABLE_FIELDS may change.

Failure modes:
    - IntegrityError on a duplicate sequence or invoice (lost race).
    - ImmutabilityViolationError on any chain-field UPDATE or any DELETE.

Audit relevance:
    ChainRecord IS the legal register.  verify_chain replays
    snapshot_payload through the canonicalizer to prove nothing changed.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Boolean, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from verifactu_kernel.db.base import TrackedBase, UUIDString


class TransmissionStatus(str, Enum):
    """Transmission lifecycle of a chain record."""

    PENDING = "pending"  # Waiting for (re)submission
    PROCESSING = "processing"  # Claimed by a worker, submission in flight
    SENT = "sent"  # Accepted by the authority (terminal)
    ERROR = "error"  # Terminal until requeued by an operator


# Columns the worker may update after insert
MUTABLE_FIELDS = frozenset({
    "transmission_status",
    "transmission_timestamp",
    "authority_confirmation_code",
    "is_legally_verifiable",
    "attempt_count",
    "next_attempt_at",
    "processing_started_at",
    "last_error_code",
    "last_error_message",
    "updated_at",
    "updated_by_id",
})


class ChainRecord(TrackedBase):
    """
    One link of a business's invoice hash chain.

    Contract:
        Created once by ChainRegistry.get_or_create; afterwards only the
        transmission fields change.

    Guarantees:
        - previous_hash is GENESIS_HASH iff sequence_number == 1.
        - authority_confirmation_code and transmission_timestamp are set
          only when transmission_status is SENT.
    """

    __tablename__ = "chain_records"

    __table_args__ = (
        UniqueConstraint("business_id", "sequence_number", name="uq_chain_business_sequence"),
        UniqueConstraint("business_id", "invoice_id", name="uq_chain_business_invoice"),
        Index("idx_chain_status", "business_id", "transmission_status", "sequence_number"),
    )

    business_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # Invoicing module's identifier (opaque)
    invoice_id: Mapped[str] = mapped_column(String(64), nullable=False)

    invoice_number: Mapped[str] = mapped_column(String(100), nullable=False)

    invoice_direction: Mapped[str] = mapped_column(String(10), nullable=False)

    sequence_number: Mapped[int] = mapped_column(BigInteger, nullable=False)

    previous_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    current_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # InvoiceSnapshot.to_payload() the hash was computed over
    snapshot_payload: Mapped[dict] = mapped_column(JSON, nullable=False)

    qr_payload: Mapped[str] = mapped_column(String(500), nullable=False)

    # data: URI of the rendered QR (SVG)
    qr_image_ref: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Transmission state
    transmission_status: Mapped[TransmissionStatus] = mapped_column(
        String(20),
        nullable=False,
        default=TransmissionStatus.PENDING.value,
    )

    transmission_timestamp: Mapped[datetime | None] = mapped_column(nullable=True)

    authority_confirmation_code: Mapped[str | None] = mapped_column(String(100), nullable=True)

    is_legally_verifiable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Worker bookkeeping
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Earliest time the next attempt is allowed (backoff)
    next_attempt_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Set on claim; used to reclaim records orphaned by a crash
    processing_started_at: Mapped[datetime | None] = mapped_column(nullable=True)

    last_error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    last_error_message: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ChainRecord {self.business_id}#{self.sequence_number} "
            f"{self.invoice_number} {self.transmission_status}>"
        )

    @property
    def is_genesis(self) -> bool:
        return self.sequence_number == 1
