"""
Tests for the transmission state machine and the retry arithmetic.

Pure functions; no database.
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from verifactu_kernel.exceptions import InvalidTransitionError
from verifactu_kernel.models.chain_record import TransmissionStatus

from verifactu_batch.domain.transmission import (
    backoff_delay,
    is_stale,
    next_attempt_at,
    transition,
)
from verifactu_batch.domain.types import (
    BusinessRunReport,
    RecordFailure,
    TransitionEffect,
    TransmissionEvent,
    WorkerPolicy,
    WorkerRunReport,
)

NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

PENDING = TransmissionStatus.PENDING.value
PROCESSING = TransmissionStatus.PROCESSING.value
SENT = TransmissionStatus.SENT.value
ERROR = TransmissionStatus.ERROR.value


# =============================================================================
# Transitions
# =============================================================================


class TestTransition:

    @pytest.mark.parametrize(
        "state,event,new_state,effect",
        [
            (PENDING, TransmissionEvent.CLAIM, PROCESSING, TransitionEffect.SUBMIT),
            (PROCESSING, TransmissionEvent.ACCEPTED, SENT, TransitionEffect.RECORD_CONFIRMATION),
            (PROCESSING, TransmissionEvent.REJECTED, ERROR, TransitionEffect.RECORD_FAILURE),
            (PENDING, TransmissionEvent.CERTIFICATE_BLOCKED, ERROR, TransitionEffect.RECORD_FAILURE),
            (PROCESSING, TransmissionEvent.CERTIFICATE_BLOCKED, ERROR, TransitionEffect.RECORD_FAILURE),
            (PROCESSING, TransmissionEvent.STALE, PENDING, TransitionEffect.RECLAIM),
            (ERROR, TransmissionEvent.REQUEUE, PENDING, TransitionEffect.RESET_ATTEMPTS),
        ],
    )
    def test_allowed_transitions(self, state, event, new_state, effect):
        result = transition(state, event)

        assert result.new_state == new_state
        assert result.effect is effect

    def test_retryable_failure_below_limit_goes_back_to_pending(self):
        result = transition(PROCESSING, TransmissionEvent.RETRYABLE_FAILURE, attempts=2, max_retries=3)

        assert result.new_state == PENDING
        assert result.effect is TransitionEffect.SCHEDULE_RETRY

    def test_retryable_failure_at_limit_is_final(self):
        result = transition(PROCESSING, TransmissionEvent.RETRYABLE_FAILURE, attempts=3, max_retries=3)

        assert result.new_state == ERROR
        assert result.effect is TransitionEffect.RECORD_FAILURE

    def test_accepts_enum_state(self):
        result = transition(TransmissionStatus.PENDING, TransmissionEvent.CLAIM)

        assert result.new_state == PROCESSING

    @pytest.mark.parametrize(
        "state,event",
        [
            (SENT, TransmissionEvent.CLAIM),
            (SENT, TransmissionEvent.REQUEUE),
            (PENDING, TransmissionEvent.ACCEPTED),
            (PENDING, TransmissionEvent.RETRYABLE_FAILURE),
            (ERROR, TransmissionEvent.CLAIM),
            (PROCESSING, TransmissionEvent.CLAIM),
            (PENDING, TransmissionEvent.REQUEUE),
        ],
    )
    def test_everything_else_is_refused(self, state, event):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(state, event)

        assert exc_info.value.state == state
        assert exc_info.value.event == event.value
        assert exc_info.value.code == "INVALID_TRANSITION"

    def test_unknown_state_is_refused(self):
        with pytest.raises(ValueError):
            transition("archived", TransmissionEvent.CLAIM)


# =============================================================================
# Backoff and staleness
# =============================================================================


class TestBackoff:

    @pytest.mark.parametrize(
        "attempt,expected",
        [(0, 0.0), (1, 60.0), (2, 120.0), (3, 240.0), (6, 1920.0), (7, 3600.0), (20, 3600.0)],
    )
    def test_exponential_with_cap(self, attempt, expected):
        assert backoff_delay(attempt, base_seconds=60, max_seconds=3600) == expected

    def test_next_attempt_at_adds_delay(self):
        assert next_attempt_at(NOW, 2, base_seconds=30, max_seconds=600) == NOW + timedelta(seconds=60)

    def test_stale_after_timeout(self):
        started = NOW - timedelta(seconds=600)

        assert is_stale(started, NOW, 600)
        assert not is_stale(started + timedelta(seconds=1), NOW, 600)

    def test_missing_start_time_is_stale(self):
        assert is_stale(None, NOW, 600)


# =============================================================================
# Policy and reports
# =============================================================================


class TestWorkerPolicy:

    def test_defaults(self):
        policy = WorkerPolicy()

        assert policy.max_retries == 3
        assert policy.backoff_base_seconds == 60
        assert policy.processing_timeout_seconds == 600

    @pytest.mark.parametrize(
        "overrides",
        [
            {"max_retries": 0},
            {"backoff_base_seconds": -1},
            {"backoff_base_seconds": 120, "backoff_max_seconds": 60},
            {"submission_timeout_seconds": 0},
            {"max_parallel_businesses": 0},
        ],
    )
    def test_invalid_policy_is_refused(self, overrides):
        with pytest.raises(ValueError):
            WorkerPolicy(**overrides)


class TestRunReports:

    def test_worker_report_aggregates_businesses(self):
        first, second = uuid4(), uuid4()
        failure = RecordFailure(
            record_id=uuid4(),
            sequence_number=4,
            invoice_number="F-4",
            error_code="1100",
            error_message="NIF no identificado",
        )
        report = WorkerRunReport(
            businesses=(
                BusinessRunReport(business_id=first, processed=3, succeeded=2, failed=1, failures=(failure,)),
                BusinessRunReport(business_id=second, processed=1, succeeded=1),
            )
        )

        assert report.processed == 4
        assert report.succeeded == 3
        assert report.failed == 1
        assert report.failures == (failure,)
        assert report.for_business(second).succeeded == 1
        assert report.for_business(uuid4()) is None

    def test_skipped_report(self):
        report = BusinessRunReport(business_id=uuid4(), skipped_reason="disabled")

        assert report.skipped
        assert not BusinessRunReport(business_id=uuid4()).skipped
