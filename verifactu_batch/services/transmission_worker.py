"""
TransmissionWorker -- submits pending chain records to the authority.

Contract:
    ``run_business(business_id)`` performs one pass over a business:

        1. reclaim stale ``processing`` records back to ``pending``;
        2. skip when the business is not configured or disabled;
        3. certificate gate: an expired certificate (or a missing one in
           production) moves every selected record to ``error``;
        4. select ``pending`` records in ascending sequence, at most
           ``max_records_per_batch``, stopping at the first record whose
           backoff has not elapsed or above a record still ``processing``;
        5. for each record: wait for the flow-control slot, claim it,
           encode + validate + sign, submit with a timeout, resolve.

    A retryable failure ends the pass for that business so records are
    never submitted out of order.  ``run_all()`` runs enabled businesses
    in parallel on a thread pool.

Architecture: verifactu_batch/services.  Every status change goes through
    verifactu_batch.domain.transmission.transition().

Transactions:
    Claim and resolve each run in their own short transaction.  Nothing is
    held open across signing (which reads the certificate) or the gateway
    call.  The claim is a conditional UPDATE (pending -> processing), so
    two workers never submit the same record.

Failure modes:
    - Per-record problems end up on the record (``error`` or back to
      ``pending`` with ``next_attempt_at``) and in the run report.
    - A certificate read that times out is retryable; only a missing or
      unreadable certificate blocks the record.
    - Database errors propagate from ``run_business``; ``run_all`` logs
      them and reports the business as failed.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from verifactu_kernel.domain.clock import Clock, SystemClock
from verifactu_kernel.domain.dtos import ChainRecordView
from verifactu_kernel.domain.submission import SubmissionResponse
from verifactu_kernel.domain.xml_codec import ComplianceDocument, require_valid
from verifactu_kernel.exceptions import (
    CertificateError,
    CertificateTimeoutError,
    ChainRecordNotFoundError,
    TransmissionError,
    ValidationError,
)
from verifactu_kernel.logging_config import LogContext, get_logger
from verifactu_kernel.models.chain_record import ChainRecord, TransmissionStatus
from verifactu_kernel.models.compliance_config import ComplianceConfig, ComplianceEnvironment
from verifactu_kernel.models.compliance_event import ComplianceEventType
from verifactu_kernel.selectors.chain_selector import ChainSelector, record_view
from verifactu_kernel.services.certificate_monitor import (
    CertificateHealth,
    CertificateMonitor,
    classify_certificate,
)
from verifactu_kernel.services.document_service import build_document
from verifactu_kernel.services.event_log import EventLog
from verifactu_kernel.utils.locks import BusinessLockRegistry

from verifactu_batch.domain.transmission import is_stale, next_attempt_at, transition
from verifactu_batch.domain.types import (
    BusinessRunReport,
    ClaimedRecord,
    RecordFailure,
    TransitionEffect,
    TransmissionEvent,
    WorkerPolicy,
    WorkerRunReport,
)
from verifactu_batch.services.gateway import SubmissionGateway, submit_with_timeout
from verifactu_batch.services.signer import DocumentSigner

logger = get_logger("batch.transmission_worker")

SKIP_NOT_CONFIGURED = "not_configured"
SKIP_DISABLED = "disabled"
SKIP_AUTO_SUBMIT_OFF = "auto_submit_disabled"
SKIP_ALREADY_RUNNING = "already_running"
SKIP_RUN_FAILED = "run_failed"

# chain_records.last_error_message column size
ERROR_MESSAGE_LIMIT = 1000

_EVENT_FOR_EFFECT = {
    TransitionEffect.RECORD_CONFIRMATION: ComplianceEventType.RECORD_SENT,
    TransitionEffect.SCHEDULE_RETRY: ComplianceEventType.RECORD_RETRY_SCHEDULED,
    TransitionEffect.RECORD_FAILURE: ComplianceEventType.RECORD_FAILED,
    TransitionEffect.RECLAIM: ComplianceEventType.RECORD_RECLAIMED,
    TransitionEffect.RESET_ATTEMPTS: ComplianceEventType.RECORD_REQUEUED,
}


@dataclass(frozen=True)
class _Outcome:
    """What the authority (or the pipeline before it) said about a record."""

    event: TransmissionEvent
    error_code: str | None = None
    error_message: str | None = None
    confirmation_code: str | None = None


@dataclass(frozen=True)
class _BusinessGate:
    enabled: bool
    auto_submit: bool
    environment: str
    certificate_ref: str | None
    certificate_valid_until: datetime | None
    flow_control_interval_seconds: int
    max_records_per_batch: int


class TransmissionWorker:
    """Per-business, in-order, rate-limited submission of chain records.

    Contract:
        - ``run_business()`` / ``run_all()`` as described in the module
          docstring; both return frozen reports.
        - ``requeue()`` moves an ``error`` record back to ``pending``.

    Non-goals:
        - Does NOT implement the authority transport (SubmissionGateway).
        - Does NOT schedule itself; ComplianceScheduler does.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: SubmissionGateway,
        monitor: CertificateMonitor,
        clock: Clock | None = None,
        policy: WorkerPolicy | None = None,
        locks: BusinessLockRegistry | None = None,
        stop_event: threading.Event | None = None,
    ):
        self._session_factory = session_factory
        self._gateway = gateway
        self._monitor = monitor
        self._signer = DocumentSigner(monitor)
        self._clock = clock or SystemClock()
        self._policy = policy or WorkerPolicy()
        self._locks = locks or BusinessLockRegistry()
        self._stop_event = stop_event or threading.Event()

    @property
    def policy(self) -> WorkerPolicy:
        return self._policy

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def run_all(self) -> WorkerRunReport:
        """One pass over every enabled business, businesses in parallel."""
        started_at = self._clock.now()
        with self._transaction() as session:
            business_ids = ChainSelector(session).business_ids(enabled_only=True)

        if not business_ids:
            return WorkerRunReport(started_at=started_at, completed_at=self._clock.now())

        workers = min(self._policy.max_parallel_businesses, len(business_ids))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="transmission") as pool:
            reports = list(pool.map(self._run_business_safely, business_ids))

        report = WorkerRunReport(
            businesses=tuple(reports),
            started_at=started_at,
            completed_at=self._clock.now(),
        )
        logger.info(
            "worker_run_completed",
            extra={
                "businesses": len(reports),
                "processed": report.processed,
                "succeeded": report.succeeded,
                "failed": report.failed,
            },
        )
        return report

    def run_business(self, business_id: UUID, manual: bool = False) -> BusinessRunReport:
        """One pass over a single business.

        Args:
            business_id: Business to process.
            manual: Ignore the business's ``auto_submit`` flag (admin runs).
        """
        lock = self._locks.lock_for(business_id)
        if not lock.acquire(blocking=False):
            logger.info("worker_business_busy", extra={"business_id": str(business_id)})
            return BusinessRunReport(business_id=business_id, skipped_reason=SKIP_ALREADY_RUNNING)
        try:
            with LogContext.bind(business_id=business_id, run_id=uuid4()):
                return self._run_business(business_id, manual)
        finally:
            lock.release()

    def requeue(
        self, business_id: UUID, record_id: UUID, actor_id: UUID | None = None
    ) -> ChainRecordView:
        """Move an ``error`` record back to ``pending`` with attempts reset.

        Raises:
            ChainRecordNotFoundError: No such record in the business.
            InvalidTransitionError: The record is not in ``error``.
        """
        with self._transaction() as session:
            record = session.get(ChainRecord, record_id)
            if record is None or record.business_id != business_id:
                raise ChainRecordNotFoundError(str(business_id), f"record {record_id}")
            result = transition(record.transmission_status, TransmissionEvent.REQUEUE)
            previous_error = record.last_error_code
            record.transmission_status = result.new_state
            record.attempt_count = 0
            record.next_attempt_at = None
            record.processing_started_at = None
            record.last_error_code = None
            record.last_error_message = None
            record.updated_by_id = actor_id
            self._event(session, record, result.effect, {"previous_error_code": previous_error})
            session.flush()
            view = record_view(record)

        logger.info(
            "record_requeued",
            extra={
                "business_id": str(view.business_id),
                "record_id": str(record_id),
                "sequence_number": view.sequence_number,
            },
        )
        return view

    # -------------------------------------------------------------------------
    # Business pass
    # -------------------------------------------------------------------------

    def _run_business_safely(self, business_id: UUID) -> BusinessRunReport:
        try:
            return self.run_business(business_id)
        except Exception:
            logger.exception("worker_business_failed", extra={"business_id": str(business_id)})
            return BusinessRunReport(business_id=business_id, skipped_reason=SKIP_RUN_FAILED)

    def _run_business(self, business_id: UUID, manual: bool) -> BusinessRunReport:
        started_at = self._clock.now()
        reclaimed = self._reclaim_stale(business_id)

        gate = self._load_gate(business_id)
        skip = None
        if gate is None:
            skip = SKIP_NOT_CONFIGURED
        elif not gate.enabled:
            skip = SKIP_DISABLED
        elif not gate.auto_submit and not manual:
            skip = SKIP_AUTO_SUBMIT_OFF
        if skip is not None:
            logger.info("worker_business_skipped", extra={"reason": skip})
            return BusinessRunReport(
                business_id=business_id,
                reclaimed=reclaimed,
                skipped_reason=skip,
                started_at=started_at,
                completed_at=self._clock.now(),
            )

        candidates = self._select_candidates(business_id, gate.max_records_per_batch)
        blocked = self._certificate_block(business_id, gate)
        if blocked is not None and candidates:
            failures = self._block_records(candidates, *blocked)
            return BusinessRunReport(
                business_id=business_id,
                processed=len(failures),
                failed=len(failures),
                reclaimed=reclaimed,
                failures=tuple(failures),
                started_at=started_at,
                completed_at=self._clock.now(),
            )

        succeeded = failed = retried = 0
        failures: list[RecordFailure] = []
        for record_id in candidates:
            if self._stop_event.is_set():
                logger.info("worker_stop_requested")
                break

            self._wait_for_slot(business_id, gate.flow_control_interval_seconds)
            claimed, document, claim_error = self._claim(record_id)
            if claimed is None:
                # Claimed by another worker between selection and now.
                break

            if claim_error is not None:
                outcome = claim_error
            else:
                outcome = self._submit(claimed, document)

            failure = self._resolve(claimed, outcome)
            if failure is None:
                succeeded += 1
                continue
            failures.append(failure)
            if failure.retryable:
                retried += 1
                break
            failed += 1

        report = BusinessRunReport(
            business_id=business_id,
            processed=succeeded + failed + retried,
            succeeded=succeeded,
            failed=failed,
            retried=retried,
            reclaimed=reclaimed,
            failures=tuple(failures),
            started_at=started_at,
            completed_at=self._clock.now(),
        )
        logger.info(
            "worker_business_completed",
            extra={
                "processed": report.processed,
                "succeeded": succeeded,
                "failed": failed,
                "retried": retried,
                "reclaimed": reclaimed,
            },
        )
        return report

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def _reclaim_stale(self, business_id: UUID) -> int:
        now = self._clock.now()
        reclaimed = 0
        with self._transaction() as session:
            records = session.execute(
                select(ChainRecord)
                .where(
                    ChainRecord.business_id == business_id,
                    ChainRecord.transmission_status == TransmissionStatus.PROCESSING.value,
                )
                .order_by(ChainRecord.sequence_number)
            ).scalars().all()
            for record in records:
                if not is_stale(record.processing_started_at, now, self._policy.processing_timeout_seconds):
                    continue
                result = transition(record.transmission_status, TransmissionEvent.STALE)
                started = record.processing_started_at
                record.transmission_status = result.new_state
                record.processing_started_at = None
                self._event(
                    session,
                    record,
                    result.effect,
                    {"processing_started_at": started.isoformat() if started else None},
                )
                logger.warning(
                    "record_reclaimed",
                    extra={"record_id": str(record.id), "sequence_number": record.sequence_number},
                )
                reclaimed += 1
        return reclaimed

    def _load_gate(self, business_id: UUID) -> _BusinessGate | None:
        with self._transaction() as session:
            config = _config(session, business_id)
            if config is None:
                return None
            return _BusinessGate(
                enabled=config.enabled,
                auto_submit=config.auto_submit,
                environment=ComplianceEnvironment(config.environment).value,
                certificate_ref=config.certificate_ref,
                certificate_valid_until=config.certificate_valid_until,
                flow_control_interval_seconds=config.flow_control_interval_seconds,
                max_records_per_batch=config.max_records_per_batch,
            )

    def _certificate_block(self, business_id: UUID, gate: _BusinessGate) -> tuple[str, str] | None:
        """(error_code, message) when the certificate forbids submission."""
        status = classify_certificate(
            business_id,
            gate.certificate_valid_until if gate.certificate_ref else None,
            self._clock.now(),
            self._monitor.threshold_days,
        )
        if status.health == CertificateHealth.EXPIRED.value:
            return (
                "CERTIFICATE_EXPIRED",
                f"Signing certificate expired at {gate.certificate_valid_until.isoformat()}",
            )
        if (
            status.health == CertificateHealth.MISSING.value
            and gate.environment == ComplianceEnvironment.PRODUCTION.value
        ):
            return "CERTIFICATE_MISSING", "No signing certificate installed for production"
        return None

    def _select_candidates(self, business_id: UUID, limit: int) -> list[UUID]:
        """Pending record ids eligible now, in sequence order."""
        now = self._clock.now()
        with self._transaction() as session:
            lowest_processing = session.execute(
                select(ChainRecord.sequence_number)
                .where(
                    ChainRecord.business_id == business_id,
                    ChainRecord.transmission_status == TransmissionStatus.PROCESSING.value,
                )
                .order_by(ChainRecord.sequence_number)
                .limit(1)
            ).scalar_one_or_none()

            pending = session.execute(
                select(ChainRecord)
                .where(
                    ChainRecord.business_id == business_id,
                    ChainRecord.transmission_status == TransmissionStatus.PENDING.value,
                )
                .order_by(ChainRecord.sequence_number)
                .limit(limit)
            ).scalars().all()

            selected: list[UUID] = []
            for record in pending:
                if lowest_processing is not None and record.sequence_number > lowest_processing:
                    break
                if record.next_attempt_at is not None and record.next_attempt_at > now:
                    break
                selected.append(record.id)
        return selected

    def _block_records(self, record_ids: list[UUID], error_code: str, message: str) -> list[RecordFailure]:
        failures = []
        with self._transaction() as session:
            for record_id in record_ids:
                record = session.get(ChainRecord, record_id)
                result = transition(record.transmission_status, TransmissionEvent.CERTIFICATE_BLOCKED)
                record.transmission_status = result.new_state
                record.last_error_code = error_code
                record.last_error_message = message
                self._event(session, record, result.effect, {"error_code": error_code})
                failures.append(
                    RecordFailure(
                        record_id=record.id,
                        sequence_number=record.sequence_number,
                        invoice_number=record.invoice_number,
                        error_code=error_code,
                        error_message=message,
                    )
                )
        logger.error(
            "worker_certificate_blocked",
            extra={"error_code": error_code, "records": len(failures)},
        )
        return failures

    def _wait_for_slot(self, business_id: UUID, interval_seconds: int) -> None:
        """Sleep until ``last_submission_attempt_at + interval``."""
        with self._transaction() as session:
            config = _config(session, business_id)
            last_attempt = config.last_submission_attempt_at if config is not None else None
        if last_attempt is None:
            return
        wait = (last_attempt + timedelta(seconds=interval_seconds) - self._clock.now()).total_seconds()
        if wait > 0:
            logger.debug("flow_control_wait", extra={"wait_seconds": wait})
            self._clock.sleep(wait)

    def _claim(
        self, record_id: UUID
    ) -> tuple[ClaimedRecord | None, ComplianceDocument | None, _Outcome | None]:
        """pending -> processing, stamp the attempt, build the document.

        Returns (None, None, None) when the record was no longer pending.
        A document that fails validation is returned as a rejection outcome.
        """
        now = self._clock.now()
        with self._transaction() as session:
            record = session.get(ChainRecord, record_id)
            if record.transmission_status != TransmissionStatus.PENDING.value:
                logger.info("record_claim_lost", extra={"record_id": str(record_id)})
                return None, None, None
            result = transition(record.transmission_status, TransmissionEvent.CLAIM)
            claimed_rows = session.execute(
                update(ChainRecord)
                .where(
                    ChainRecord.id == record_id,
                    ChainRecord.transmission_status == TransmissionStatus.PENDING.value,
                )
                .values(
                    transmission_status=result.new_state,
                    processing_started_at=now,
                    attempt_count=ChainRecord.attempt_count + 1,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if claimed_rows != 1:
                logger.info("record_claim_lost", extra={"record_id": str(record_id)})
                return None, None, None

            session.refresh(record)
            config = _config(session, record.business_id)
            config.last_submission_attempt_at = now

            claimed = ClaimedRecord(
                record_id=record.id,
                business_id=record.business_id,
                sequence_number=record.sequence_number,
                invoice_number=record.invoice_number,
                attempt_count=record.attempt_count,
                environment=ComplianceEnvironment(config.environment).value,
                has_certificate=bool(config.certificate_ref),
            )
            try:
                document = build_document(record, config)
                require_valid(document)
            except ValidationError as exc:
                return claimed, None, _Outcome(
                    TransmissionEvent.REJECTED, exc.code, str(exc)[:ERROR_MESSAGE_LIMIT]
                )

        logger.info(
            "record_claimed",
            extra={
                "record_id": str(claimed.record_id),
                "sequence_number": claimed.sequence_number,
                "attempt": claimed.attempt_count,
            },
        )
        return claimed, document, None

    def _submit(self, claimed: ClaimedRecord, document: ComplianceDocument) -> _Outcome:
        """Sign and submit.  No transaction is open here."""
        try:
            envelope = self._signer.envelope(claimed, document)
        except CertificateTimeoutError as exc:
            return _Outcome(TransmissionEvent.RETRYABLE_FAILURE, exc.code, str(exc))
        except CertificateError as exc:
            return _Outcome(TransmissionEvent.CERTIFICATE_BLOCKED, exc.code, str(exc))

        try:
            responses = submit_with_timeout(
                self._gateway, [envelope], self._policy.submission_timeout_seconds
            )
        except TransmissionError as exc:
            return _Outcome(TransmissionEvent.RETRYABLE_FAILURE, exc.code, str(exc))

        response = _response_for(claimed.invoice_number, responses)
        if response is None:
            return _Outcome(
                TransmissionEvent.RETRYABLE_FAILURE,
                "NO_RESPONSE",
                f"Gateway returned no response for {claimed.invoice_number}",
            )
        if response.accepted:
            return _Outcome(TransmissionEvent.ACCEPTED, confirmation_code=response.confirmation_code)
        event = TransmissionEvent.RETRYABLE_FAILURE if response.retryable else TransmissionEvent.REJECTED
        return _Outcome(event, response.error_code, response.error_message)

    def _resolve(self, claimed: ClaimedRecord, outcome: _Outcome) -> RecordFailure | None:
        """Apply the outcome in a new transaction.  None means sent."""
        now = self._clock.now()
        with self._transaction() as session:
            record = session.get(ChainRecord, claimed.record_id)
            if record.transmission_status != TransmissionStatus.PROCESSING.value:
                # Reclaimed while we were waiting on the gateway; the outcome
                # is reported but the newer state wins.
                logger.warning(
                    "record_resolve_superseded",
                    extra={"record_id": str(record.id), "status": record.transmission_status},
                )
                return RecordFailure(
                    record_id=record.id,
                    sequence_number=record.sequence_number,
                    invoice_number=record.invoice_number,
                    error_code="SUPERSEDED",
                    error_message="Record left processing before the outcome was recorded",
                    retryable=True,
                )

            result = transition(
                record.transmission_status,
                outcome.event,
                attempts=record.attempt_count,
                max_retries=self._policy.max_retries,
            )
            record.transmission_status = result.new_state
            record.processing_started_at = None
            config = _config(session, record.business_id)
            config.last_processed_at = now

            payload = {"attempt": record.attempt_count}
            if result.effect is TransitionEffect.RECORD_CONFIRMATION:
                record.transmission_timestamp = now
                record.authority_confirmation_code = outcome.confirmation_code
                record.is_legally_verifiable = True
                record.next_attempt_at = None
                record.last_error_code = None
                record.last_error_message = None
                payload["confirmation_code"] = outcome.confirmation_code
            else:
                record.last_error_code = outcome.error_code
                record.last_error_message = (outcome.error_message or "")[:ERROR_MESSAGE_LIMIT]
                payload["error_code"] = outcome.error_code
                if result.effect is TransitionEffect.SCHEDULE_RETRY:
                    record.next_attempt_at = next_attempt_at(
                        now,
                        record.attempt_count,
                        self._policy.backoff_base_seconds,
                        self._policy.backoff_max_seconds,
                    )
                    payload["next_attempt_at"] = record.next_attempt_at.isoformat()
            self._event(session, record, result.effect, payload)

            extra = {
                "record_id": str(record.id),
                "sequence_number": record.sequence_number,
                "status": result.new_state,
                "attempt": record.attempt_count,
            }
            if result.effect is TransitionEffect.RECORD_CONFIRMATION:
                logger.info("record_sent", extra={**extra, "confirmation_code": outcome.confirmation_code})
                return None

            failure = RecordFailure(
                record_id=record.id,
                sequence_number=record.sequence_number,
                invoice_number=record.invoice_number,
                error_code=outcome.error_code or "UNKNOWN",
                error_message=outcome.error_message or "",
                retryable=result.effect is TransitionEffect.SCHEDULE_RETRY,
            )
            if failure.retryable:
                logger.warning("record_retry_scheduled", extra={**extra, "error_code": outcome.error_code})
            else:
                logger.error("record_failed", extra={**extra, "error_code": outcome.error_code})
            return failure

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _event(self, session: Session, record: ChainRecord, effect: TransitionEffect, payload: dict) -> None:
        EventLog(session, self._clock).record(
            record.business_id,
            _EVENT_FOR_EFFECT[effect],
            record_id=record.id,
            payload={"sequence_number": record.sequence_number, **payload},
        )


def _config(session: Session, business_id: UUID) -> ComplianceConfig | None:
    return session.execute(
        select(ComplianceConfig).where(ComplianceConfig.business_id == business_id)
    ).scalar_one_or_none()


def _response_for(invoice_number: str, responses: list[SubmissionResponse]) -> SubmissionResponse | None:
    for response in responses:
        if response.invoice_number == invoice_number:
            return response
    if len(responses) == 1:
        return responses[0]
    return None
