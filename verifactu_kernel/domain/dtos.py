"""
Read-side DTOs returned by the registry, selectors and admin surface.

All frozen dataclasses; no ORM instance ever crosses a session boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID


@dataclass(frozen=True)
class ChainRecordView:
    """Immutable view of a ChainRecord row."""

    id: UUID
    business_id: UUID
    invoice_id: str
    invoice_number: str
    direction: str
    sequence_number: int
    previous_hash: str
    current_hash: str
    qr_payload: str
    qr_image_ref: str | None
    transmission_status: str
    transmission_timestamp: datetime | None
    authority_confirmation_code: str | None
    is_legally_verifiable: bool
    attempt_count: int
    next_attempt_at: datetime | None
    last_error_code: str | None
    last_error_message: str | None


@dataclass(frozen=True)
class ChainVerificationReport:
    """
    Result of replaying a business's chain.

    ``valid`` is False at the first problem; ``reason`` is one of
    ``sequence_gap``, ``previous_hash_mismatch``, ``snapshot_invalid``,
    ``snapshot_identity_mismatch``, ``hash_mismatch`` or
    ``sequence_cache_mismatch``.
    """

    business_id: UUID
    valid: bool
    records_checked: int
    last_sequence_number: int
    cached_sequence_number: int | None
    first_mismatch_sequence: int | None = None
    expected_hash: str | None = None
    actual_hash: str | None = None
    reason: str | None = None
    verified_at: datetime | None = None


@dataclass(frozen=True)
class BusinessTransmissionStats:
    """Per-business counts for the administrative surface."""

    business_id: UUID
    pending: int = 0
    processing: int = 0
    sent: int = 0
    error: int = 0
    last_processed_at: datetime | None = None
    last_submission_attempt_at: datetime | None = None
    next_submission_eligible_at: datetime | None = None

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.sent + self.error


@dataclass(frozen=True)
class CertificateStatus:
    """Classified certificate health for one business."""

    business_id: UUID
    health: str
    valid_until: datetime | None
    days_until_expiration: int | None
    is_expired: bool
    is_expiring_soon: bool
    checked_at: datetime
    subject: str | None = None


@dataclass(frozen=True)
class CertificateCheckReport:
    """check_all() result: one status per configured business plus counts."""

    statuses: tuple[CertificateStatus, ...]
    summary: dict[str, int] = field(default_factory=dict)
