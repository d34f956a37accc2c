from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Optional

from ..config import EngineSettings
from ..infrastructure.credential_pool import CredentialLease, CredentialPool
from ..infrastructure.error_handling import (
    BackoffPolicy,
    ErrorCategory,
    JobStateError,
    RateLimitedError,
    RemoteAPIError,
    RetryConfig,
    is_not_found,
)
from ..infrastructure.rate_limit_manager import RateBudgetTracker
from ..infrastructure.request_queue import DeferredRequestQueue, TickReport
from ..infrastructure.storage import Store
from ..infrastructure.utils import Clock, RealClock
from ..integrations.meta_client import GraphClient, RemoteClient
from ..models import (
    BatchOutcome,
    BulkCreateReport,
    EntityKind,
    FailureDecision,
    Job,
    JobStatus,
    PairResult,
    Proceed,
    QueuedRequest,
    RemoteKind,
    Retry,
    Rollback,
    RollbackResult,
)
from .batch_orchestrator import BatchOrchestrator, PairSpec
from .job_tracker import JobTracker
from .rollback_manager import RollbackManager

logger = logging.getLogger(__name__)

RUN_BULK_CREATE = "run_bulk_create"
CREATE_ENTITY = "create_entity"
DELETE_ENTITY = "delete_entity"


class BulkCreationService:
    """Public surface of the engine: jobs, runs, progress, rollback and the deferred queue."""

    def __init__(
        self,
        store: Store,
        remote: RemoteClient,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.store = store
        self.remote = remote
        self.clock = clock or RealClock()
        jobs = self.settings.jobs
        self.backoff = BackoffPolicy(retry=RetryConfig(
            initial_delay=jobs.retry_base_delay,
            max_delay=jobs.retry_max_delay,
            jitter=jobs.retry_jitter,
        ))
        self.rate_tracker = RateBudgetTracker(store, self.settings.rate, self.clock)
        self.credential_pool = CredentialPool(store, self.settings.credentials, self.clock)
        self.queue = DeferredRequestQueue(
            store,
            self.rate_tracker,
            self.credential_pool,
            self.settings.queue,
            self.backoff,
            self.clock,
        )
        self.rollback_manager = RollbackManager(
            store, remote, self.credential_pool, self.clock, timeout=self.settings.batch.single_call_timeout
        )
        self.tracker = JobTracker(
            store, self.rollback_manager, self.backoff, self.clock, retry_budget=jobs.retry_budget
        )
        self.orchestrator = BatchOrchestrator(
            remote, self.credential_pool, self.rate_tracker, self.settings.batch, self.clock
        )
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._cancelled: set = set()

        self.queue.register_handler(RUN_BULK_CREATE, self._handle_queued_run, needs_credential=False)
        self.queue.register_handler(CREATE_ENTITY, self._handle_create_entity)
        self.queue.register_handler(DELETE_ENTITY, self._handle_delete_entity)

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        remote: Optional[RemoteClient] = None,
        clock: Optional[Clock] = None,
    ) -> "BulkCreationService":
        store = Store(settings.db_path, clock=clock)
        if remote is None:
            remote = GraphClient(
                api_version=settings.api_version,
                timeout=settings.batch.single_call_timeout,
                batch_timeout=settings.batch.batch_call_timeout,
            )
        return cls(store, remote, settings, clock)

    def _job_lock(self, job_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = self._locks[job_id] = threading.RLock()
            return lock

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------
    def start_job(
        self,
        owner: str,
        target: str,
        requested_children: int,
        requested_parents: int = 1,
        label: str = "",
        blueprint: Optional[Dict[str, Any]] = None,
        remote_parent_id: Optional[str] = None,
    ) -> str:
        job = self.tracker.open(
            owner,
            target,
            requested_children,
            requested_parents=requested_parents,
            label=label,
            blueprint=blueprint,
            remote_parent_id=remote_parent_id,
        )
        return job.id

    def get_progress(self, job_id: str) -> Dict[str, Any]:
        return self.tracker.get_progress(job_id)

    def list_jobs(self, owner: Optional[str] = None, status: Optional[JobStatus] = None) -> List[Job]:
        return self.store.list_jobs(owner=owner, status=status)

    def cancel(self, job_id: str) -> None:
        """Stop an in-flight run after the pair being submitted."""
        job = self.tracker.get(job_id)
        if job.is_terminal:
            raise JobStateError(f"Job {job_id} is {job.status.value}; nothing to cancel")
        self._cancelled.add(job_id)
        logger.warning(f"Cancellation requested for job {job_id}")

    def run_bulk_create(
        self,
        job_id: str,
        *,
        high_throughput: bool = False,
        payload_weight: str = "light",
    ) -> BulkCreateReport:
        with self._job_lock(job_id):
            return self._run(job_id, high_throughput, payload_weight, from_queue=False)

    def run_many(
        self,
        job_ids: Iterable[str],
        *,
        parallel: bool = True,
        high_throughput: bool = False,
        payload_weight: str = "light",
    ) -> List[BulkCreateReport]:
        ids = list(job_ids)
        if parallel:
            with ThreadPoolExecutor(max_workers=self.settings.jobs.max_workers) as pool:
                futures = [
                    pool.submit(self.run_bulk_create, j, high_throughput=high_throughput, payload_weight=payload_weight)
                    for j in ids
                ]
                return [f.result() for f in futures]

        reports: List[BulkCreateReport] = []
        last_target: Optional[str] = None
        for job_id in ids:
            target = self.tracker.get(job_id).target
            if last_target is not None and target != last_target and self.settings.batch.target_stagger_seconds > 0:
                logger.info(f"Waiting {self.settings.batch.target_stagger_seconds:.0f}s before switching to {target}")
                self.clock.sleep(self.settings.batch.target_stagger_seconds)
            reports.append(
                self.run_bulk_create(job_id, high_throughput=high_throughput, payload_weight=payload_weight)
            )
            last_target = target
        return reports

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    def _report(
        self,
        job_id: str,
        outcome: Optional[BatchOutcome] = None,
        decision: Optional[FailureDecision] = None,
        remaining: Optional[int] = None,
    ) -> BulkCreateReport:
        job = self.tracker.get(job_id)
        if remaining is None:
            remaining = max(0, job.requested_children - job.children_created)
        if outcome is None:
            rate = 0 if job.status in (JobStatus.FAILED, JobStatus.ROLLED_BACK) else 100
            return BulkCreateReport(
                job_id=job.id,
                status=job.status,
                created_parents=job.children_created,
                created_children=job.children_created,
                success_rate=rate,
                remaining=remaining,
                decision=decision,
            )
        return BulkCreateReport(
            job_id=job.id,
            status=job.status,
            created_parents=job.children_created,
            created_children=job.children_created,
            success_rate=outcome.success_rate,
            attempted=outcome.requested_count - len(outcome.deferred_slots),
            deferred=len(outcome.deferred_slots),
            remaining=remaining,
            decision=decision,
            queue_id=outcome.queue_id,
            resume_at=outcome.resume_at,
        )

    def _record_result(self, job: Job):
        def record(result: PairResult) -> None:
            if result.created:
                if not self.tracker.record_created(
                    job.id, EntityKind.CHILD, result.slot_number, result.parent_id, result.child_id
                ):
                    logger.error(f"Job {job.id}: pair {result.slot_number} created but not recorded")
            else:
                self.tracker.record_failed(
                    job.id,
                    EntityKind.CHILD,
                    result.slot_number,
                    result.error or result.failure_reason or "failed",
                    orphan_id=None if result.orphan_deleted else result.parent_id,
                )
        return record

    def _clear_orphans(self, job: Job) -> int:
        """Retry deleting parents left by failed pairs. Returns how many are still there."""
        orphans = self.tracker.orphaned_slots(job)
        if not orphans:
            return 0
        admission = self.orchestrator.admit(job.owner, job.target, len(orphans))
        if not admission.allowed:
            logger.info(f"Job {job.id}: orphan cleanup deferred ({admission.reason})")
            return len(orphans)
        left = 0
        try:
            for slot in orphans:
                try:
                    self.remote.delete_entity(
                        slot.remote_id,
                        access_token=admission.token,
                        timeout=self.settings.batch.single_call_timeout,
                    )
                except RateLimitedError:
                    raise
                except RemoteAPIError as e:
                    if not is_not_found(e):
                        left += 1
                        logger.error(f"Job {job.id}: orphaned parent {slot.remote_id} still not deleted: {e}")
                        continue
                self.tracker.clear_orphan(job.id, slot.slot_number)
                logger.info(f"Job {job.id}: deleted orphaned parent {slot.remote_id} of pair {slot.slot_number}")
        finally:
            self.orchestrator.release(admission.lease, len(orphans))
        return left

    def _deferral_hook(self, job: Job, high_throughput: bool, payload_weight: str):
        def defer(slots: List[int], resume_at: Optional[float]) -> Optional[str]:
            not_before = resume_at if resume_at is not None else self.clock.time() + self.settings.queue.tick_seconds
            return self.queue.enqueue(
                job.owner,
                job.target,
                {
                    "job_id": job.id,
                    "slots": slots,
                    "high_throughput": high_throughput,
                    "payload_weight": payload_weight,
                },
                not_before,
                action_type=RUN_BULK_CREATE,
                dedup_key=f"{RUN_BULK_CREATE}:{job.id}",
            )
        return defer

    def _defer_all(
        self,
        job: Job,
        remaining: int,
        resume_at: Optional[float],
        high_throughput: bool,
        payload_weight: str,
        from_queue: bool,
    ) -> BulkCreateReport:
        slots = self.tracker.slots_to_fill(job, remaining)
        outcome = BatchOutcome(requested_count=len(slots), deferred_slots=slots, resume_at=resume_at)
        if not from_queue:
            outcome.queue_id = self._deferral_hook(job, high_throughput, payload_weight)(slots, resume_at)
        logger.info(f"Job {job.id}: {len(slots)} pair(s) deferred")
        return self._report(job.id, outcome, Proceed("rate limited; work deferred"))

    def _pair_specs(self, job: Job, slots: List[int]) -> List[PairSpec]:
        parent_fields = dict(job.blueprint.get("parent") or {})
        child_fields = dict(job.blueprint.get("child") or {})
        return [
            PairSpec(
                slot_number=n,
                parent_fields={**parent_fields, "name": job.pair_label(n)},
                child_fields={**child_fields, "name": job.pair_label(n)},
            )
            for n in slots
        ]

    def _ensure_container(self, job: Job) -> Optional[str]:
        """Create the job's container entity if it has none. None means deferred."""
        admission = self.orchestrator.admit(job.owner, job.target, 1)
        if not admission.allowed:
            logger.info(f"Job {job.id}: container creation deferred ({admission.reason})")
            return None
        fields = {**dict(job.blueprint.get("root") or {}), "name": job.label or f"job {job.id[:8]}"}
        try:
            resp = self.remote.create_entity(
                RemoteKind.ROOT,
                job.target,
                None,
                fields,
                access_token=admission.token,
                timeout=self.settings.batch.single_call_timeout,
            )
        finally:
            self.orchestrator.release(admission.lease, 1)
        self.rate_tracker.update_from_headers(job.owner, job.target, resp.headers)
        self.tracker.set_remote_parent(job, resp.entity_id)
        return resp.entity_id

    def _escalate(self, job: Job, error: Any, from_queue: bool) -> FailureDecision:
        decision = self.tracker.handle_failure(job.id, error)
        if isinstance(decision, Rollback):
            self.tracker.mark_failed(job, decision.reason)
            if self.settings.jobs.auto_rollback:
                self.rollback_manager.execute(self.tracker.get(job.id), decision.reason)
        elif isinstance(decision, Retry) and not from_queue:
            self.queue.enqueue(
                job.owner,
                job.target,
                {"job_id": job.id},
                self.clock.time() + decision.delay,
                action_type=RUN_BULK_CREATE,
                max_attempts=self._attempts_left(self.tracker.get(job.id)),
                dedup_key=f"{RUN_BULK_CREATE}:{job.id}",
            )
        return decision

    @staticmethod
    def _attempts_left(job: Job) -> int:
        """Queue attempts a rerun needs to reach either success or the job's rollback decision."""
        return max(1, job.retry_budget - job.retry_count + 1)

    def _run(self, job_id: str, high_throughput: bool, payload_weight: str, from_queue: bool) -> BulkCreateReport:
        job = self.tracker.get(job_id)
        if job.is_terminal:
            logger.info(f"Job {job_id} is {job.status.value}; nothing to do")
            return self._report(job_id)
        self._cancelled.discard(job_id)
        job = self.tracker.mark_started(job)

        try:
            self._clear_orphans(job)
            status = self.tracker.reconcile(job, remote=self.remote)
            if status.remaining == 0 and status.parents_remaining == 0:
                self.tracker.mark_completed(job)
                return self._report(job_id, remaining=0)

            if not job.remote_parent_id:
                if self._ensure_container(job) is None:
                    resume_at = self.rate_tracker.peek(job.owner, job.target).reset_at
                    return self._defer_all(job, status.remaining, resume_at, high_throughput, payload_weight, from_queue)
                job = self.tracker.get(job_id)
        except RateLimitedError as e:
            throttled = self.rate_tracker.record_throttled(job.owner, job.target, e.retry_after)
            remaining = self.tracker.reconcile(job).remaining
            return self._defer_all(job, remaining, throttled.reset_at, high_throughput, payload_weight, from_queue)
        except RemoteAPIError as e:
            logger.error(f"Job {job_id}: {e}")
            return self._report(job_id, decision=self._escalate(job, e, from_queue))

        slots = self.tracker.slots_to_fill(job, status.remaining)
        if not slots and status.orphans:
            error = RemoteAPIError(
                f"{status.orphans} orphaned parent(s) must be deleted before their pairs are retried",
                category=ErrorCategory.TRANSIENT,
            )
            logger.error(f"Job {job_id}: {error}")
            return self._report(job_id, decision=self._escalate(job, error, from_queue), remaining=status.remaining)

        outcome = self.orchestrator.create_pairs(
            job.owner,
            job.target,
            job.remote_parent_id,
            self._pair_specs(job, slots),
            high_throughput=high_throughput,
            payload_weight=payload_weight,
            on_result=self._record_result(job),
            on_defer=None if from_queue else self._deferral_hook(job, high_throughput, payload_weight),
            should_continue=lambda: job_id not in self._cancelled,
        )

        job = self.tracker.get(job_id)
        remaining = max(0, status.remaining - len(outcome.created_pairs))
        decision: Optional[FailureDecision] = None
        if outcome.cancelled:
            self._cancelled.discard(job_id)
            decision = Proceed("cancelled by caller; unsubmitted pairs stay pending")
        elif remaining == 0:
            self.tracker.mark_completed(job)
        elif outcome.failed_pairs:
            # pair failures (orphans included) are filled by the next run while other pairs land;
            # transport errors and runs that created nothing go to the job level
            escalate = next((r for r in outcome.failed_pairs if r.uncertain), None)
            if escalate is None and not outcome.created_pairs:
                escalate = next(
                    (r for r in outcome.failed_pairs if r.error_category == ErrorCategory.PERMANENT.value),
                    outcome.failed_pairs[0],
                )
            if escalate is not None:
                error = RemoteAPIError(
                    escalate.error or escalate.failure_reason or "pair failed",
                    category=ErrorCategory(escalate.error_category or ErrorCategory.UNKNOWN.value),
                )
                decision = self._escalate(job, error, from_queue)
            else:
                decision = Proceed(f"{len(outcome.failed_pairs)} pair(s) failed; run again to fill them")
        elif outcome.deferred_slots:
            decision = Proceed("rate limited; work deferred")

        report = self._report(job_id, outcome, decision, remaining)
        logger.info(
            f"Job {job_id}: {report.created_children}/{job.requested_children} pairs, "
            f"{report.success_rate}% this run, status {report.status.value}"
        )
        return report

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------
    def rollback(self, job_id: str, reason: str) -> RollbackResult:
        with self._job_lock(job_id):
            job = self.tracker.get(job_id)
            return self.rollback_manager.execute(job, reason)

    def preview_rollback(self, job_id: str) -> Dict[str, Any]:
        return self.rollback_manager.preview(self.tracker.get(job_id))

    # ------------------------------------------------------------------
    # Deferred queue
    # ------------------------------------------------------------------
    def enqueue_deferred(
        self,
        owner: str,
        resource: str,
        payload: Dict[str, Any],
        not_before: Optional[float] = None,
        *,
        action_type: Optional[str] = None,
        priority: Optional[int] = None,
    ) -> str:
        action = action_type or payload.get("action") or CREATE_ENTITY
        return self.queue.enqueue(owner, resource, payload, not_before, action_type=action, priority=priority)

    def get_queue_status(self, owner: str, include_finished: bool = False) -> List[QueuedRequest]:
        return self.queue.get_status(owner, include_finished=include_finished)

    def process_queue(self) -> TickReport:
        return self.queue.tick()

    def _handle_queued_run(self, req: QueuedRequest, lease: Optional[CredentialLease]) -> Dict[str, Any]:
        job_id = req.payload["job_id"]
        with self._job_lock(job_id):
            report = self._run(
                job_id,
                bool(req.payload.get("high_throughput")),
                str(req.payload.get("payload_weight") or "light"),
                from_queue=True,
            )
        result: Dict[str, Any] = {"report": report.to_dict()}
        if report.deferred:
            result["requeue_after"] = report.resume_at or self.clock.time() + self.settings.queue.tick_seconds
        elif isinstance(report.decision, Retry):
            job = self.tracker.get(job_id)
            result.update(
                requeue_after=self.clock.time() + report.decision.delay,
                count_attempt=True,
                max_attempts=req.attempts + self._attempts_left(job),
                error=job.last_error,
            )
        return result

    def _handle_create_entity(self, req: QueuedRequest, lease: Optional[CredentialLease]) -> Dict[str, Any]:
        p = req.payload
        kind = RemoteKind(p.get("kind", RemoteKind.ROOT.value))
        resp = self.remote.create_entity(
            kind,
            p.get("target") or req.resource,
            p.get("parent_ref"),
            dict(p.get("fields") or {}),
            access_token=lease.secret if lease else None,
            timeout=self.settings.batch.single_call_timeout,
        )
        self.rate_tracker.update_from_headers(req.owner, req.resource, resp.headers)
        return {"entity_id": resp.entity_id}

    def _handle_delete_entity(self, req: QueuedRequest, lease: Optional[CredentialLease]) -> Dict[str, Any]:
        outcome = self.remote.delete_entity(
            req.payload["entity_id"],
            access_token=lease.secret if lease else None,
            timeout=self.settings.batch.single_call_timeout,
        )
        return {"entity_id": req.payload["entity_id"], "outcome": outcome.value}

    def close(self) -> None:
        self.store.close()


__all__ = ["BulkCreationService", "RUN_BULK_CREATE", "CREATE_ENTITY", "DELETE_ENTITY"]
