"""
Tests for verifactu_batch.services.scheduler.

Validates ComplianceScheduler: tick() runs the worker every time and the
certificate refresh on its own interval, failures never escape tick(),
and the start/stop lifecycle.
"""

import time

from verifactu_kernel.domain.clock import DeterministicClock
from verifactu_kernel.domain.dtos import CertificateCheckReport

from verifactu_batch.domain.types import WorkerRunReport
from verifactu_batch.services.scheduler import ComplianceScheduler

from tests.conftest import T0


# =============================================================================
# Test doubles
# =============================================================================


class RecordingWorker:
    def __init__(self, fail=False):
        self.runs = 0
        self.fail = fail

    def run_all(self):
        self.runs += 1
        if self.fail:
            raise RuntimeError("database unavailable")
        return WorkerRunReport()


class RecordingMonitor:
    def __init__(self, summary=None, fail=False):
        self.refreshes = 0
        self.summary = summary or {"total": 0, "healthy": 0, "expiring_soon": 0, "expired": 0, "missing": 0}
        self.fail = fail

    def refresh_all(self):
        self.refreshes += 1
        if self.fail:
            raise RuntimeError("certificate directory unavailable")
        return CertificateCheckReport(statuses=(), summary=self.summary)


def _scheduler(worker=None, monitor=None, clock=None, **kwargs):
    return ComplianceScheduler(
        worker or RecordingWorker(),
        monitor or RecordingMonitor(),
        clock=clock or DeterministicClock(T0),
        **kwargs,
    )


# =============================================================================
# tick()
# =============================================================================


class TestTick:

    def test_tick_runs_worker(self):
        worker = RecordingWorker()

        report = _scheduler(worker=worker).tick()

        assert worker.runs == 1
        assert isinstance(report, WorkerRunReport)

    def test_certificate_refresh_runs_once_per_interval(self):
        clock = DeterministicClock(T0)
        monitor = RecordingMonitor()
        scheduler = _scheduler(monitor=monitor, clock=clock, certificate_check_interval_seconds=3600)

        scheduler.tick()
        clock.advance(60)
        scheduler.tick()
        assert monitor.refreshes == 1

        clock.advance(3600)
        scheduler.tick()
        assert monitor.refreshes == 2

    def test_worker_failure_is_swallowed(self, captured_logs):
        report = _scheduler(worker=RecordingWorker(fail=True)).tick()

        assert report is None
        assert any(r["message"] == "scheduler_tick_failed" for r in captured_logs())

    def test_refresh_failure_does_not_stop_worker(self, captured_logs):
        worker = RecordingWorker()

        _scheduler(worker=worker, monitor=RecordingMonitor(fail=True)).tick()

        assert worker.runs == 1
        assert any(r["message"] == "certificate_refresh_tick_failed" for r in captured_logs())

    def test_expiring_certificates_are_flagged(self, captured_logs):
        monitor = RecordingMonitor(
            summary={"total": 2, "healthy": 1, "expiring_soon": 1, "expired": 0, "missing": 0}
        )

        _scheduler(monitor=monitor).tick()

        flagged = [r for r in captured_logs() if r["message"] == "certificates_need_attention"]
        assert flagged[0]["level"] == "WARNING"
        assert flagged[0]["summary"]["expiring_soon"] == 1


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:

    def test_start_and_stop(self):
        worker = RecordingWorker()
        scheduler = _scheduler(worker=worker, tick_interval_seconds=0.05)

        scheduler.start()
        deadline = time.monotonic() + 5
        while worker.runs == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        scheduler.stop(timeout=5)

        assert worker.runs >= 1
        assert not scheduler.is_running
        assert scheduler.stop_event.is_set()

    def test_start_twice_keeps_one_thread(self):
        scheduler = _scheduler(tick_interval_seconds=0.05)

        scheduler.start()
        first = scheduler._thread
        scheduler.start()

        assert scheduler._thread is first
        scheduler.stop(timeout=5)

    def test_stop_without_start(self):
        scheduler = _scheduler()

        scheduler.stop()

        assert not scheduler.is_running
