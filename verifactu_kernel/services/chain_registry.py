"""
ChainRegistry -- owns per-business hash-chain state.

Responsibility:
    Registers invoices as chain records (``get_or_create``), looks them up,
    and replays a business's chain to prove integrity (``verify_chain``).

Architecture position:
    Kernel > Services.  Owns its unit of work: each creation runs in its
    own short transaction opened from the session factory, so the sequence
    lock is released before any caller goes near the network.

Invariants enforced:
    - Sequence numbers per business are 1..N with no gaps or duplicates.
    - current_hash = chain_hash(canonicalize(snapshot), previous_hash),
      previous_hash being the prior record's current_hash or GENESIS_HASH.
    - ComplianceConfig.last_sequence_number advances in the same
      transaction as the insert.
    - Registration is idempotent on (business_id, invoice_id).

Serialization (three layers, any one sufficient for correctness):
    1. In-process BusinessLockRegistry: threads of one process queue.
    2. SELECT ... FOR UPDATE on the ComplianceConfig row (PostgreSQL).
    3. Conditional UPDATE keyed on (last_sequence_number, row_version)
       plus the unique constraints; losing raises ConcurrencyConflict,
       which is rolled back and retried transparently.

Failure modes:
    - ValidationError: snapshot malformed; nothing persisted, no retry.
    - ComplianceNotConfiguredError / ComplianceDisabledError.
    - ChainIntegrityError: the record at last_sequence_number is missing;
      never auto-repaired.
    - ConcurrencyConflict: only after max_attempts consecutive lost races.

Audit relevance:
    Every creation writes a RECORD_CREATED compliance event in the same
    transaction and logs ``chain_record_created``.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from verifactu_kernel.domain.canonical import canonicalize
from verifactu_kernel.domain.clock import Clock, SystemClock
from verifactu_kernel.domain.dtos import ChainRecordView, ChainVerificationReport
from verifactu_kernel.domain.qr import DEFAULT_QR_BASE_URL, build_qr_payload, render_qr_data_uri
from verifactu_kernel.domain.snapshot import InvoiceDirection, InvoiceSnapshot
from verifactu_kernel.exceptions import (
    ChainIntegrityError,
    ChainRecordNotFoundError,
    ComplianceDisabledError,
    ComplianceNotConfiguredError,
    ConcurrencyConflict,
    ConfigurationError,
    ValidationError,
)
from verifactu_kernel.logging_config import LogContext, get_logger
from verifactu_kernel.models.chain_record import ChainRecord, TransmissionStatus
from verifactu_kernel.models.compliance_config import ComplianceConfig
from verifactu_kernel.models.compliance_event import ComplianceEventType
from verifactu_kernel.selectors.chain_selector import ChainSelector, record_view
from verifactu_kernel.services.event_log import EventLog
from verifactu_kernel.utils.hashing import GENESIS_HASH, chain_hash
from verifactu_kernel.utils.locks import BusinessLockRegistry

logger = get_logger("services.chain_registry")

DEFAULT_MAX_ATTEMPTS = 5


class InvoiceSource(Protocol):
    """The invoicing module's read-only snapshot provider."""

    def load_snapshot(
        self,
        business_id: UUID,
        invoice_id: str,
        direction: InvoiceDirection,
    ) -> InvoiceSnapshot | Mapping[str, Any]:
        ...


class ChainRegistry:
    """
    Creates, looks up and verifies chain records.

    Contract:
        ``get_or_create`` returns the record for (business, invoice),
        creating it at the next sequence position when absent.

    Guarantees:
        - N concurrent creations for one business with distinct invoices
          yield sequences last+1..last+N.
        - Calling twice with the same invoice never advances the sequence.

    Non-goals:
        - Does NOT submit anything; the transmission worker does.
        - Does NOT repair broken chains.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        invoice_source: InvoiceSource | None = None,
        clock: Clock | None = None,
        locks: BusinessLockRegistry | None = None,
        qr_base_url: str = DEFAULT_QR_BASE_URL,
        render_qr: bool = True,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self._session_factory = session_factory
        self._invoice_source = invoice_source
        self._clock = clock or SystemClock()
        self._locks = locks or BusinessLockRegistry()
        self._qr_base_url = qr_base_url
        self._render_qr = render_qr
        self._max_attempts = max_attempts

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def get_or_create(
        self,
        business_id: UUID,
        invoice_id: str,
        direction: InvoiceDirection | str = InvoiceDirection.ISSUED,
    ) -> ChainRecordView:
        """
        Register an invoice in its business's chain (idempotent).

        Raises:
            ValidationError: snapshot malformed, or the snapshot disagrees
                with the requested invoice id / direction.
            ComplianceNotConfiguredError, ComplianceDisabledError.
            ChainIntegrityError: sequence cache points at a missing record.
        """
        invoice_id = str(invoice_id)
        direction = InvoiceDirection(direction)

        existing = self.get(business_id, invoice_id, missing_ok=True)
        if existing is not None:
            return existing

        snapshot = self._load_snapshot(business_id, invoice_id, direction)

        with LogContext.bind(business_id=business_id), self._locks.hold(business_id):
            attempt = 0
            while True:
                attempt += 1
                try:
                    return self._create(business_id, invoice_id, direction, snapshot)
                except ConcurrencyConflict as exc:
                    logger.warning(
                        "chain_sequence_conflict",
                        extra={
                            "invoice_id": invoice_id,
                            "attempt": attempt,
                            "expected_sequence": exc.expected_sequence,
                        },
                    )
                    if attempt >= self._max_attempts:
                        raise

    def _load_snapshot(
        self,
        business_id: UUID,
        invoice_id: str,
        direction: InvoiceDirection,
    ) -> InvoiceSnapshot:
        if self._invoice_source is None:
            raise ConfigurationError("ChainRegistry has no invoice source; it can only verify and look up")
        raw = self._invoice_source.load_snapshot(business_id, invoice_id, direction)
        snapshot = raw if isinstance(raw, InvoiceSnapshot) else InvoiceSnapshot.from_mapping(raw)

        errors = []
        if snapshot.invoice_id != invoice_id:
            errors.append(f"invoice_id: snapshot is for {snapshot.invoice_id!r}, not {invoice_id!r}")
        if snapshot.direction != direction:
            errors.append(f"direction: snapshot is {snapshot.direction.value}, not {direction.value}")
        if errors:
            raise ValidationError(errors)
        return snapshot

    def _create(
        self,
        business_id: UUID,
        invoice_id: str,
        direction: InvoiceDirection,
        snapshot: InvoiceSnapshot,
    ) -> ChainRecordView:
        """One attempt: read last state, insert, advance cache, commit."""
        session = self._session_factory()
        expected = -1
        try:
            existing = ChainSelector(session).find(business_id, invoice_id)
            if existing is not None:
                session.rollback()
                return existing

            config = session.execute(
                select(ComplianceConfig)
                .where(ComplianceConfig.business_id == business_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if config is None:
                raise ComplianceNotConfiguredError(str(business_id))
            if not config.enabled:
                raise ComplianceDisabledError(str(business_id))

            expected = config.last_sequence_number
            version = config.row_version
            previous_hash = self._previous_hash(session, business_id, expected)

            current_hash = chain_hash(canonicalize(snapshot), previous_hash)
            verifiable = config.is_self_verifiable
            qr_payload = build_qr_payload(
                snapshot,
                current_hash,
                verifiable=verifiable,
                base_url=self._qr_base_url,
            )

            record = ChainRecord(
                business_id=business_id,
                invoice_id=invoice_id,
                invoice_number=snapshot.number,
                invoice_direction=direction.value,
                sequence_number=expected + 1,
                previous_hash=previous_hash,
                current_hash=current_hash,
                snapshot_payload=snapshot.to_payload(),
                qr_payload=qr_payload,
                qr_image_ref=render_qr_data_uri(qr_payload) if self._render_qr else None,
                transmission_status=TransmissionStatus.PENDING.value,
                is_legally_verifiable=verifiable,
                attempt_count=0,
            )
            session.add(record)
            session.flush()

            advanced = session.execute(
                update(ComplianceConfig)
                .where(
                    ComplianceConfig.id == config.id,
                    ComplianceConfig.last_sequence_number == expected,
                    ComplianceConfig.row_version == version,
                )
                .values(last_sequence_number=expected + 1, row_version=version + 1)
                .execution_options(synchronize_session=False)
            )
            if advanced.rowcount != 1:
                raise ConcurrencyConflict(str(business_id), expected)

            EventLog(session, self._clock).record(
                business_id,
                ComplianceEventType.RECORD_CREATED,
                record_id=record.id,
                payload={
                    "invoice_id": invoice_id,
                    "sequence_number": record.sequence_number,
                    "current_hash": current_hash,
                },
            )
            view = record_view(record)
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ConcurrencyConflict(str(business_id), expected) from None
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info(
            "chain_record_created",
            extra={
                "invoice_id": invoice_id,
                "sequence_number": view.sequence_number,
                "current_hash": view.current_hash,
            },
        )
        return view

    @staticmethod
    def _previous_hash(session: Session, business_id: UUID, last_sequence: int) -> str:
        if last_sequence == 0:
            return GENESIS_HASH
        last = session.execute(
            select(ChainRecord).where(
                ChainRecord.business_id == business_id,
                ChainRecord.sequence_number == last_sequence,
            )
        ).scalar_one_or_none()
        if last is None:
            logger.critical(
                "chain_sequence_cache_orphaned",
                extra={"business_id": str(business_id), "last_sequence_number": last_sequence},
            )
            raise ChainIntegrityError(
                str(business_id),
                last_sequence,
                expected_hash=None,
                actual_hash=None,
                reason="sequence_cache_mismatch",
            )
        return last.current_hash

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get(self, business_id: UUID, invoice_id: str, missing_ok: bool = False) -> ChainRecordView | None:
        """Record for (business, invoice); ChainRecordNotFoundError unless missing_ok."""
        session = self._session_factory()
        try:
            view = ChainSelector(session).find(business_id, str(invoice_id))
        finally:
            session.close()
        if view is None and not missing_ok:
            raise ChainRecordNotFoundError(str(business_id), f"invoice {invoice_id}")
        return view

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def verify_chain(self, business_id: UUID) -> ChainVerificationReport:
        """
        Replay the chain in sequence order and report the first mismatch.

        Read-only.  Also checks that the sequence cache equals the last
        stored sequence.
        """
        session = self._session_factory()
        try:
            report = self._replay(session, business_id)
        finally:
            session.close()

        if report.valid:
            logger.info(
                "chain_verified",
                extra={"business_id": str(business_id), "records_checked": report.records_checked},
            )
        else:
            logger.critical(
                "chain_integrity_broken",
                extra={
                    "business_id": str(business_id),
                    "sequence_number": report.first_mismatch_sequence,
                    "reason": report.reason,
                    "expected_hash": report.expected_hash,
                    "actual_hash": report.actual_hash,
                },
            )
        return report

    def assert_chain_intact(self, business_id: UUID) -> ChainVerificationReport:
        """verify_chain, raising ChainIntegrityError on any mismatch."""
        report = self.verify_chain(business_id)
        if not report.valid:
            raise ChainIntegrityError(
                str(business_id),
                report.first_mismatch_sequence,
                expected_hash=report.expected_hash,
                actual_hash=report.actual_hash,
                reason=report.reason or "hash_mismatch",
            )
        return report

    def _replay(self, session: Session, business_id: UUID) -> ChainVerificationReport:
        cached = session.execute(
            select(ComplianceConfig.last_sequence_number).where(ComplianceConfig.business_id == business_id)
        ).scalar_one_or_none()

        records = session.execute(
            select(ChainRecord)
            .where(ChainRecord.business_id == business_id)
            .order_by(ChainRecord.sequence_number)
        ).scalars()

        def broken(record: ChainRecord, checked: int, reason: str, expected: str | None, actual: str | None):
            return ChainVerificationReport(
                business_id=business_id,
                valid=False,
                records_checked=checked,
                last_sequence_number=record.sequence_number,
                cached_sequence_number=cached,
                first_mismatch_sequence=record.sequence_number,
                expected_hash=expected,
                actual_hash=actual,
                reason=reason,
                verified_at=self._clock.now(),
            )

        expected_previous = GENESIS_HASH
        checked = 0
        for record in records:
            if record.sequence_number != checked + 1:
                return broken(record, checked, "sequence_gap", None, None)
            if record.previous_hash != expected_previous:
                return broken(record, checked, "previous_hash_mismatch", expected_previous, record.previous_hash)
            try:
                snapshot = InvoiceSnapshot.from_payload(record.snapshot_payload)
            except ValidationError:
                return broken(record, checked, "snapshot_invalid", None, record.current_hash)
            if snapshot.invoice_id != record.invoice_id or snapshot.number != record.invoice_number:
                return broken(record, checked, "snapshot_identity_mismatch", None, record.current_hash)

            recomputed = chain_hash(canonicalize(snapshot), record.previous_hash)
            if recomputed != record.current_hash:
                return broken(record, checked, "hash_mismatch", recomputed, record.current_hash)

            expected_previous = record.current_hash
            checked += 1

        valid = cached is None or cached == checked
        return ChainVerificationReport(
            business_id=business_id,
            valid=valid,
            records_checked=checked,
            last_sequence_number=checked,
            cached_sequence_number=cached,
            first_mismatch_sequence=None if valid else checked,
            reason=None if valid else "sequence_cache_mismatch",
            verified_at=self._clock.now(),
        )
