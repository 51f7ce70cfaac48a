"""
ComplianceScheduler -- In-process polling scheduler for the worker.

Contract:
    Every tick runs one ``TransmissionWorker.run_all()`` pass.  The
    certificate refresh (``CertificateMonitor.refresh_all``) runs on its own,
    longer interval from the same loop, so PKCS#12 parsing never happens on
    a request path.

Architecture: verifactu_batch/services.  Timestamps from the injected Clock.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta

from verifactu_kernel.domain.clock import Clock, SystemClock
from verifactu_kernel.domain.dtos import CertificateCheckReport
from verifactu_kernel.logging_config import get_logger
from verifactu_kernel.services.certificate_monitor import CertificateMonitor

from verifactu_batch.domain.types import WorkerRunReport
from verifactu_batch.services.transmission_worker import TransmissionWorker

logger = get_logger("batch.scheduler")


class ComplianceScheduler:
    """Background thread driving the worker and the certificate refresh.

    Contract:
        - ``tick()`` runs the certificate refresh when due, then one worker
          pass.  Never raises; failures are logged.
        - ``start()`` / ``stop()`` for background thread operation.  The
          worker shares the stop event, so a stop request ends the current
          business pass between records.

    Non-goals:
        - NOT a distributed scheduler (no leader election); the worker's
          conditional claim keeps two processes from double-submitting.
    """

    def __init__(
        self,
        worker: TransmissionWorker,
        monitor: CertificateMonitor,
        clock: Clock | None = None,
        tick_interval_seconds: float = 60,
        certificate_check_interval_seconds: float = 86400,
        stop_event: threading.Event | None = None,
    ):
        self._worker = worker
        self._monitor = monitor
        self._clock = clock or SystemClock()
        self._tick_interval = tick_interval_seconds
        self._certificate_interval = certificate_check_interval_seconds
        self._stop_event = stop_event or threading.Event()
        self._thread: threading.Thread | None = None
        self._last_certificate_check: datetime | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> WorkerRunReport | None:
        """Run due work (public for testing).

        Returns the worker report, or None when the worker pass failed.
        """
        self._refresh_certificates_if_due()
        try:
            return self._worker.run_all()
        except Exception:
            logger.exception("scheduler_tick_failed")
            return None

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="compliance-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the scheduler to finish.

        Args:
            timeout: Max seconds to wait for the thread to finish.
        """
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        """Background polling loop. Exits when stop_event is set."""
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler_tick_exception")
            self._stop_event.wait(timeout=self._tick_interval)

    def _refresh_certificates_if_due(self) -> CertificateCheckReport | None:
        now = self._clock.now()
        if (
            self._last_certificate_check is not None
            and now - self._last_certificate_check < timedelta(seconds=self._certificate_interval)
        ):
            return None
        self._last_certificate_check = now
        try:
            report = self._monitor.refresh_all()
        except Exception:
            logger.exception("certificate_refresh_tick_failed")
            return None
        if report.summary.get("expired") or report.summary.get("expiring_soon"):
            logger.warning("certificates_need_attention", extra={"summary": report.summary})
        return report
