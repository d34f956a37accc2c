from __future__ import annotations

import logging
import threading
from typing import Optional

import schedule

from ..integrations.slack import alert_error, notify
from .credential_pool import CredentialPool
from .request_queue import DeferredRequestQueue

logger = logging.getLogger(__name__)

FINISHED_RETENTION_SECONDS = 7 * 24 * 3600


class BackgroundScheduler:
    """Drains the deferred queue and resets credential windows on a fixed cadence."""

    def __init__(
        self,
        queue: DeferredRequestQueue,
        credential_pool: Optional[CredentialPool] = None,
        tick_seconds: Optional[int] = None,
        poll_seconds: float = 5.0,
    ):
        self.queue = queue
        self.credential_pool = credential_pool
        self.tick_seconds = int(tick_seconds or queue.settings.tick_seconds)
        self.poll_seconds = poll_seconds
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._jobs = schedule.Scheduler()

    def start(self):
        if self.running:
            return
        if self.tick_seconds <= 0:
            self.tick_seconds = 60
        self._jobs.clear()
        self._jobs.every(self.tick_seconds).seconds.do(self._run_queue_tick)
        if self.credential_pool is not None:
            self._jobs.every(1).minutes.do(self._run_credential_sweep)
        self._jobs.every(1).days.do(self._run_purge)
        self.running = True
        self._stop.clear()
        self.thread = threading.Thread(target=self._run_scheduler, name="bulkads-scheduler", daemon=True)
        self.thread.start()
        notify(f"Background scheduler started - draining the queue every {self.tick_seconds}s")

    def stop(self):
        self.running = False
        self._stop.set()
        if self.thread:
            self.thread.join(timeout=5)
        self._jobs.clear()
        notify("Background scheduler stopped")

    def run_once(self):
        """Run every job immediately, regardless of its schedule."""
        self._jobs.run_all()

    def _run_scheduler(self):
        while self.running:
            try:
                self._jobs.run_pending()
            except Exception as e:
                logger.exception("Scheduler loop error")
                alert_error(f"Scheduler error: {e}")
            self._stop.wait(self.poll_seconds)

    def _run_queue_tick(self):
        report = self.queue.tick()
        if report.skipped:
            return
        if report.picked:
            logger.info(
                f"Queue tick: {len(report.completed)} completed, {len(report.requeued)} requeued, "
                f"{len(report.retried)} retried, {len(report.failed)} failed"
            )

    def _run_credential_sweep(self):
        self.credential_pool.sweep()

    def _run_purge(self):
        n = self.queue.purge_finished(FINISHED_RETENTION_SECONDS)
        if n:
            logger.info(f"Purged {n} finished queue request(s)")


_scheduler: Optional[BackgroundScheduler] = None


def start_background_scheduler(
    queue: DeferredRequestQueue,
    credential_pool: Optional[CredentialPool] = None,
    tick_seconds: Optional[int] = None,
) -> BackgroundScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = BackgroundScheduler(queue, credential_pool, tick_seconds)
    _scheduler.start()
    return _scheduler


def stop_background_scheduler():
    global _scheduler
    if _scheduler is not None:
        _scheduler.stop()
        _scheduler = None


def get_scheduler() -> Optional[BackgroundScheduler]:
    return _scheduler


__all__ = [
    "BackgroundScheduler",
    "start_background_scheduler",
    "stop_background_scheduler",
    "get_scheduler",
]
