"""
verifactu_batch.domain.types -- Pure frozen dataclasses for the worker.

ZERO I/O.  Frozen dataclasses with enum fields and tuples for immutable
collections, returned by the worker and the administrative surface.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID


# =============================================================================
# State machine vocabulary
# =============================================================================


class TransmissionEvent(str, Enum):
    """What happened to a record, as fed to ``transition()``."""

    CLAIM = "claim"  # Worker picked the record for submission
    ACCEPTED = "accepted"  # Authority accepted the record
    RETRYABLE_FAILURE = "retryable_failure"  # Timeout, network error, authority busy
    REJECTED = "rejected"  # Content, duplicate or signature rejection
    CERTIFICATE_BLOCKED = "certificate_blocked"  # Expired or missing certificate
    STALE = "stale"  # Processing for longer than the processing timeout
    REQUEUE = "requeue"  # Manual retry of an errored record


class TransitionEffect(str, Enum):
    """Side effect the worker must apply along with the new state."""

    SUBMIT = "submit"
    RECORD_CONFIRMATION = "record_confirmation"
    SCHEDULE_RETRY = "schedule_retry"
    RECORD_FAILURE = "record_failure"
    RECLAIM = "reclaim"
    RESET_ATTEMPTS = "reset_attempts"


@dataclass(frozen=True)
class Transition:
    new_state: str
    effect: TransitionEffect


# =============================================================================
# Worker inputs
# =============================================================================


@dataclass(frozen=True)
class WorkerPolicy:
    """Retry, timeout and parallelism knobs of the transmission worker.

    Per-business batch size and flow-control interval live on
    ComplianceConfig, not here.
    """

    max_retries: int = 3
    backoff_base_seconds: float = 60
    backoff_max_seconds: float = 3600
    processing_timeout_seconds: float = 600
    submission_timeout_seconds: float = 30
    max_parallel_businesses: int = 4

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.backoff_base_seconds < 0 or self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds >= 0")
        if self.submission_timeout_seconds <= 0 or self.processing_timeout_seconds <= 0:
            raise ValueError("timeouts must be positive")
        if self.max_parallel_businesses < 1:
            raise ValueError("max_parallel_businesses must be >= 1")


@dataclass(frozen=True)
class ClaimedRecord:
    """Detached facts about a record the worker has moved to processing."""

    record_id: UUID
    business_id: UUID
    sequence_number: int
    invoice_number: str
    attempt_count: int
    environment: str
    has_certificate: bool


# =============================================================================
# Run reports
# =============================================================================


@dataclass(frozen=True)
class RecordFailure:
    """One record that did not reach ``sent`` during a run."""

    record_id: UUID
    sequence_number: int
    invoice_number: str
    error_code: str
    error_message: str
    retryable: bool = False


@dataclass(frozen=True)
class BusinessRunReport:
    """Result of one worker pass over a single business.

    ``processed`` counts records whose outcome was resolved in this pass
    (sent, scheduled for retry, or moved to error).  ``reclaimed`` counts
    stale ``processing`` records put back to ``pending``.
    """

    business_id: UUID
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    reclaimed: int = 0
    skipped_reason: str | None = None
    failures: tuple[RecordFailure, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None


@dataclass(frozen=True)
class WorkerRunReport:
    """Aggregate of one ``run_all()`` pass."""

    businesses: tuple[BusinessRunReport, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def processed(self) -> int:
        return sum(b.processed for b in self.businesses)

    @property
    def succeeded(self) -> int:
        return sum(b.succeeded for b in self.businesses)

    @property
    def failed(self) -> int:
        return sum(b.failed for b in self.businesses)

    @property
    def failures(self) -> tuple[RecordFailure, ...]:
        return tuple(f for b in self.businesses for f in b.failures)

    def for_business(self, business_id: UUID) -> BusinessRunReport | None:
        for report in self.businesses:
            if report.business_id == business_id:
                return report
        return None
