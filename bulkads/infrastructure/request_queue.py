from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..config import QueueSettings
from ..integrations.slack import alert_error
from ..models import QueuedRequest, QueueStatus
from .credential_pool import CredentialLease, CredentialPool
from .error_handling import BackoffPolicy, ErrorCategory, RateLimitedError, classify_error
from .rate_limit_manager import RateBudgetTracker
from .storage import Store
from .utils import Clock, RealClock

logger = logging.getLogger(__name__)

# A handler executes one deferred request. It may return a dict that is stored as
# the request's result. Returning {"requeue_after": ts} puts the request back in
# the queue; the attempt is refunded unless "count_attempt" is true. A returned
# "max_attempts" raises the request's attempt cap.
Handler = Callable[[QueuedRequest, Optional[CredentialLease]], Optional[Dict[str, Any]]]


@dataclass
class _Registration:
    handler: Handler
    needs_credential: bool = True


@dataclass
class TickReport:
    skipped: bool = False
    picked: int = 0
    completed: List[str] = field(default_factory=list)
    requeued: List[str] = field(default_factory=list)
    retried: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class DeferredRequestQueue:
    """Durable queue for remote calls that could not run immediately.

    ``tick`` is single-flight: a tick that starts while another is still draining
    returns immediately with ``skipped=True``.
    """

    def __init__(
        self,
        store: Store,
        rate_tracker: RateBudgetTracker,
        credential_pool: Optional[CredentialPool] = None,
        settings: Optional[QueueSettings] = None,
        backoff: Optional[BackoffPolicy] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.rate_tracker = rate_tracker
        self.credential_pool = credential_pool
        self.settings = settings or QueueSettings()
        self.backoff = backoff or BackoffPolicy()
        self.clock = clock or RealClock()
        self._handlers: Dict[str, _Registration] = {}
        self._tick_lock = threading.Lock()

    def register_handler(self, action_type: str, handler: Handler, needs_credential: bool = True) -> None:
        self._handlers[action_type] = _Registration(handler=handler, needs_credential=needs_credential)

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------
    def enqueue(
        self,
        owner: str,
        resource: str,
        payload: Optional[Dict[str, Any]] = None,
        not_before: Optional[float] = None,
        *,
        action_type: str = "remote_call",
        priority: Optional[int] = None,
        max_attempts: Optional[int] = None,
        dedup_key: Optional[str] = None,
    ) -> str:
        if dedup_key:
            existing = self.store.find_active_request(dedup_key)
            if existing is not None:
                logger.debug(f"Request {existing.id} already queued for {dedup_key}")
                return existing.id
        now = self.clock.time()
        if not_before is None:
            status = self.rate_tracker.peek(owner, resource)
            if not status.allowed and status.reset_at and status.reset_at > now:
                not_before = status.reset_at
            else:
                not_before = now + self.settings.default_defer_seconds
        req = QueuedRequest(
            id=uuid.uuid4().hex,
            owner=owner,
            resource=resource,
            action_type=action_type,
            payload=dict(payload or {}),
            priority=self.settings.default_priority if priority is None else int(priority),
            status=QueueStatus.QUEUED,
            process_after=float(not_before),
            max_attempts=int(max_attempts or self.settings.max_attempts),
            dedup_key=dedup_key,
            created_at=now,
        )
        self.store.insert_request(req)
        logger.info(
            f"Queued {action_type} for {owner}/{resource} as {req.id} "
            f"(priority {req.priority}, in {max(0.0, req.process_after - now):.0f}s)"
        )
        return req.id

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, request_id: str) -> Optional[QueuedRequest]:
        return self.store.get_request(request_id)

    def get_ready(self, limit: Optional[int] = None) -> List[QueuedRequest]:
        return self.store.ready_requests(self.clock.time(), limit or self.settings.batch_limit)

    def get_status(self, owner: str, include_finished: bool = False) -> List[QueuedRequest]:
        statuses = None if include_finished else (QueueStatus.QUEUED, QueueStatus.PROCESSING)
        return self.store.list_requests(owner=owner, statuses=statuses)

    def cancel(self, request_id: str) -> bool:
        req = self.store.get_request(request_id)
        if req is None or req.status is not QueueStatus.QUEUED:
            return False
        self.store.update_request(request_id, status=QueueStatus.FAILED, last_error="cancelled")
        logger.info(f"Cancelled queued request {request_id}")
        return True

    def purge_finished(self, older_than_seconds: float) -> int:
        return self.store.purge_requests(self.clock.time() - older_than_seconds)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------
    def tick(self) -> TickReport:
        if not self._tick_lock.acquire(blocking=False):
            logger.info("Queue tick still running, skipping this one")
            return TickReport(skipped=True)
        try:
            report = TickReport()
            ready = self.get_ready()
            report.picked = len(ready)
            if ready:
                logger.info(f"Processing {len(ready)} queued request(s)")
            for req in ready:
                self._process(req, report)
            return report
        finally:
            self._tick_lock.release()

    def _requeue(
        self,
        req: QueuedRequest,
        process_after: float,
        refund: bool,
        error: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        fields: Dict[str, Any] = {"status": QueueStatus.QUEUED, "process_after": float(process_after)}
        if refund:
            fields["attempts"] = max(0, req.attempts - 1)
        if error is not None:
            fields["last_error"] = error
        if max_attempts is not None and max_attempts != req.max_attempts:
            fields["max_attempts"] = int(max_attempts)
        self.store.update_request(req.id, **fields)

    def _fail(self, req: QueuedRequest, error: str) -> None:
        self.store.update_request(req.id, status=QueueStatus.FAILED, last_error=error)
        logger.error(f"Queued request {req.id} ({req.action_type}) failed permanently: {error}")
        alert_error(f"Deferred {req.action_type} for {req.owner}/{req.resource} failed: {error}")

    def _process(self, queued: QueuedRequest, report: TickReport) -> None:
        req = self.store.claim_request(queued.id)
        if req is None:
            return
        now = self.clock.time()

        status = self.rate_tracker.peek(req.owner, req.resource)
        if not status.allowed:
            resume_at = status.reset_at if status.reset_at and status.reset_at > now else now + self.settings.tick_seconds
            self._requeue(req, resume_at, refund=True)
            report.requeued.append(req.id)
            logger.info(f"Request {req.id} still rate limited; resuming at {resume_at:.0f}")
            return

        registration = self._handlers.get(req.action_type)
        if registration is None:
            self._fail(req, f"no handler registered for {req.action_type}")
            report.failed.append(req.id)
            return

        lease: Optional[CredentialLease] = None
        # without registered credentials handlers fall back to the client's default token
        if registration.needs_credential and self.credential_pool is not None and self.credential_pool.has_credentials():
            lease = self.credential_pool.acquire()
            if lease is None:
                self._requeue(req, now + self.settings.tick_seconds, refund=True)
                report.requeued.append(req.id)
                return

        calls_used = 1
        try:
            result = registration.handler(req, lease) or {}
        except Exception as exc:  # handler failures are recorded on the request
            category = getattr(exc, "category", None) or classify_error(exc)
            message = str(exc) or type(exc).__name__
            if category is ErrorCategory.RATE_LIMIT:
                retry_after = getattr(exc, "retry_after", None) if isinstance(exc, RateLimitedError) else None
                self.rate_tracker.record_throttled(req.owner, req.resource, retry_after)
            delay = self.backoff.queue_delay(category, req.attempts)
            if delay is None:
                self._fail(req, f"{category.value}: {message}")
                report.failed.append(req.id)
            elif req.attempts >= req.max_attempts:
                self._fail(req, f"attempts exhausted ({req.attempts}/{req.max_attempts}): {message}")
                report.failed.append(req.id)
            else:
                self._requeue(req, now + delay, refund=False, error=message)
                report.retried.append(req.id)
                logger.warning(
                    f"Request {req.id} attempt {req.attempts}/{req.max_attempts} failed ({category.value}); "
                    f"retrying in {delay:.0f}s"
                )
            return
        finally:
            if lease is not None and self.credential_pool is not None:
                self.credential_pool.release(lease, calls_used)

        requeue_after = result.get("requeue_after")
        if requeue_after is not None:
            counted = bool(result.get("count_attempt"))
            max_attempts = max(req.max_attempts, int(result.get("max_attempts") or 0))
            if counted and req.attempts >= max_attempts:
                self._fail(req, f"attempts exhausted ({req.attempts}/{max_attempts})")
                report.failed.append(req.id)
                return
            self._requeue(
                req,
                max(float(requeue_after), now),
                refund=not counted,
                error=result.get("error"),
                max_attempts=max_attempts,
            )
            report.requeued.append(req.id)
            return

        self.store.update_request(req.id, status=QueueStatus.COMPLETED, result=result, last_error=None)
        report.completed.append(req.id)
        logger.info(f"Request {req.id} ({req.action_type}) completed")


__all__ = ["DeferredRequestQueue", "TickReport", "Handler"]
