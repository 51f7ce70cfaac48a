"""
ComplianceAdmin -- administrative surface over the reporting subsystem.

Contract:
    Thin facade for operators and for the ``verifactu`` command line:
    transmission statistics per business, manual worker runs, manual
    certificate checks, chain verification, requeue of failed records,
    XML export and worker presets.  Every method owns its unit of work.

Architecture: verifactu_batch.  Reads go through ChainSelector; writes go
    through the kernel services and the worker.
"""

from __future__ import annotations

from collections.abc import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from verifactu_kernel.domain.clock import Clock, SystemClock
from verifactu_kernel.domain.dtos import (
    BusinessTransmissionStats,
    CertificateCheckReport,
    ChainRecordView,
    ChainVerificationReport,
)
from verifactu_kernel.domain.xml_codec import ComplianceDocument
from verifactu_kernel.logging_config import get_logger
from verifactu_kernel.models.compliance_event import ComplianceEventType
from verifactu_kernel.selectors.chain_selector import ChainSelector
from verifactu_kernel.services.certificate_monitor import CertificateMonitor
from verifactu_kernel.services.chain_registry import ChainRegistry
from verifactu_kernel.services.config_service import ConfigService
from verifactu_kernel.services.document_service import DocumentService
from verifactu_kernel.services.event_log import EventLog

from verifactu_batch.domain.types import BusinessRunReport, WorkerRunReport
from verifactu_batch.services.transmission_worker import TransmissionWorker
from verifactu_config.schema import WorkerPreset

logger = get_logger("batch.admin")


class ComplianceAdmin:
    """Operator-facing operations.  Never holds a session between calls."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        registry: ChainRegistry,
        worker: TransmissionWorker,
        monitor: CertificateMonitor,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._worker = worker
        self._monitor = monitor
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def stats(self, business_id: UUID | None = None) -> list[BusinessTransmissionStats]:
        """Per-business counts and timing; every configured business when None."""
        session = self._session_factory()
        try:
            selector = ChainSelector(session)
            business_ids = [business_id] if business_id is not None else selector.business_ids()
            return [selector.transmission_stats(bid) for bid in business_ids]
        finally:
            session.close()

    def records(self, business_id: UUID, status: str | None = None, limit: int | None = None) -> list[ChainRecordView]:
        session = self._session_factory()
        try:
            return ChainSelector(session).list_records(business_id, status=status, limit=limit)
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def run_worker(self, business_id: UUID | None = None) -> BusinessRunReport | WorkerRunReport:
        """Manual worker pass; ignores ``auto_submit`` for a single business."""
        logger.info(
            "admin_worker_run",
            extra={"business_id": str(business_id) if business_id else None},
        )
        if business_id is not None:
            return self._worker.run_business(business_id, manual=True)
        return self._worker.run_all()

    def check_certificates(self, refresh: bool = False) -> CertificateCheckReport:
        """Classify all certificates; re-read the blobs first when ``refresh``."""
        if refresh:
            return self._monitor.refresh_all()
        return self._monitor.check_all()

    def verify_chain(self, business_id: UUID) -> ChainVerificationReport:
        """Replay the chain and record the verdict as a compliance event."""
        report = self._registry.verify_chain(business_id)
        event_type = ComplianceEventType.CHAIN_VERIFIED if report.valid else ComplianceEventType.CHAIN_BROKEN
        session = self._session_factory()
        try:
            EventLog(session, self._clock).record(
                business_id,
                event_type,
                payload={
                    "records_checked": report.records_checked,
                    "first_mismatch_sequence": report.first_mismatch_sequence,
                    "reason": report.reason,
                },
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        return report

    def requeue(self, business_id: UUID, record_id: UUID, actor_id: UUID | None = None) -> ChainRecordView:
        return self._worker.requeue(business_id, record_id, actor_id=actor_id)

    def export_document(self, business_id: UUID, invoice_id: str) -> ComplianceDocument:
        session = self._session_factory()
        try:
            return DocumentService(session).export(business_id, invoice_id)
        finally:
            session.close()

    def apply_preset(self, business_id: UUID, preset: WorkerPreset) -> None:
        """Copy a preset's batch size and flow-control interval onto a business."""
        session = self._session_factory()
        try:
            ConfigService(session, clock=self._clock).upsert(
                business_id,
                max_records_per_batch=preset.max_records_per_batch,
                flow_control_interval_seconds=preset.flow_control_interval_seconds,
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        logger.info(
            "worker_preset_applied",
            extra={"business_id": str(business_id), "preset": preset.name},
        )
