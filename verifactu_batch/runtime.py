"""
Runtime wiring: settings -> engine, services, worker, scheduler, admin.

The only place where ComplianceSettings is translated into constructor
arguments.  Used by the command line and by embedding applications.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from verifactu_kernel.db.engine import build_engine
from verifactu_kernel.db.immutability import register_immutability_listeners
from verifactu_kernel.domain.clock import Clock, SystemClock
from verifactu_kernel.services.certificate_monitor import CertificateMonitor
from verifactu_kernel.services.certificate_store import CertificateStore
from verifactu_kernel.services.chain_registry import ChainRegistry, InvoiceSource
from verifactu_kernel.utils.locks import BusinessLockRegistry
from verifactu_kernel.utils.secrets import SecretBox

from verifactu_batch.admin import ComplianceAdmin
from verifactu_batch.domain.types import WorkerPolicy
from verifactu_batch.services.gateway import SubmissionGateway
from verifactu_batch.services.scheduler import ComplianceScheduler
from verifactu_batch.services.transmission_worker import TransmissionWorker
from verifactu_config.schema import ComplianceSettings, WorkerSettings


@dataclass
class ComplianceRuntime:
    settings: ComplianceSettings
    engine: Engine
    session_factory: sessionmaker[Session]
    registry: ChainRegistry
    monitor: CertificateMonitor
    worker: TransmissionWorker
    scheduler: ComplianceScheduler
    admin: ComplianceAdmin

    def dispose(self) -> None:
        self.scheduler.stop()
        self.engine.dispose()


def worker_policy(settings: WorkerSettings) -> WorkerPolicy:
    """Worker policy from settings; an active preset overrides retries and backoff."""
    return WorkerPolicy(
        max_retries=settings.effective_max_retries,
        backoff_base_seconds=settings.effective_backoff_base_seconds,
        backoff_max_seconds=settings.backoff_max_seconds,
        processing_timeout_seconds=settings.processing_timeout_seconds,
        submission_timeout_seconds=settings.submission_timeout_seconds,
        max_parallel_businesses=settings.max_parallel_businesses,
    )


def build_runtime(
    settings: ComplianceSettings,
    gateway: SubmissionGateway,
    invoice_source: InvoiceSource | None = None,
    clock: Clock | None = None,
    engine: Engine | None = None,
) -> ComplianceRuntime:
    clock = clock or SystemClock()
    engine = engine or build_engine(
        settings.database.url,
        echo=settings.database.echo,
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
        pool_timeout=settings.database.pool_timeout,
    )
    register_immutability_listeners()
    session_factory = sessionmaker(bind=engine)

    secret_box = (
        SecretBox.from_hex(settings.certificates.encryption_key_hex)
        if settings.certificates.encryption_key_hex
        else None
    )
    store = CertificateStore(
        Path(settings.certificates.base_dir) if settings.certificates.base_dir else None
    )
    monitor = CertificateMonitor(
        session_factory,
        store,
        secret_box=secret_box,
        clock=clock,
        threshold_days=settings.certificates.expiry_threshold_days,
        parse_timeout_seconds=settings.certificates.parse_timeout_seconds,
    )
    registry = ChainRegistry(
        session_factory,
        invoice_source,
        clock=clock,
        locks=BusinessLockRegistry(),
        qr_base_url=settings.qr.base_url,
        render_qr=settings.qr.render_svg,
    )
    stop_event = threading.Event()
    worker = TransmissionWorker(
        session_factory,
        gateway,
        monitor,
        clock=clock,
        policy=worker_policy(settings.worker),
        stop_event=stop_event,
    )
    scheduler = ComplianceScheduler(
        worker,
        monitor,
        clock=clock,
        tick_interval_seconds=settings.worker.tick_interval_seconds,
        certificate_check_interval_seconds=settings.certificates.check_interval_seconds,
        stop_event=stop_event,
    )
    admin = ComplianceAdmin(session_factory, registry, worker, monitor, clock=clock)
    return ComplianceRuntime(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        registry=registry,
        monitor=monitor,
        worker=worker,
        scheduler=scheduler,
        admin=admin,
    )
