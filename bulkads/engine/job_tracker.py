from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from ..infrastructure.error_handling import (
    BackoffPolicy,
    ErrorCategory,
    JobNotFoundError,
    classify_error,
)
from ..infrastructure.storage import Store
from ..infrastructure.utils import Clock, RealClock, iso
from ..integrations.meta_client import RemoteClient
from ..models import (
    EntityKind,
    FailureDecision,
    Job,
    JobStatus,
    Proceed,
    Retry,
    Rollback,
    Slot,
    SlotStatus,
)
from .rollback_manager import RollbackManager

logger = logging.getLogger(__name__)

ACTIVE_STATES = (JobStatus.PENDING, JobStatus.IN_PROGRESS)


@dataclass
class IdempotencyStatus:
    requested: int
    tracked: int
    remote: Optional[int]
    actual: int
    remaining: int
    parents_requested: int = 0
    parents_tracked: int = 0
    orphans: int = 0

    @property
    def parents_remaining(self) -> int:
        return max(0, self.parents_requested - self.parents_tracked)

    @property
    def can_create_more(self) -> bool:
        return self.remaining > 0

    @property
    def at_limit(self) -> bool:
        return self.actual == self.requested

    @property
    def exceeded(self) -> bool:
        return self.actual > self.requested

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out.update(
            parents_remaining=self.parents_remaining,
            can_create_more=self.can_create_more,
            at_limit=self.at_limit,
            exceeded=self.exceeded,
        )
        return out


class JobTracker:
    """Durable bookkeeping for bulk jobs and their numbered slots."""

    def __init__(
        self,
        store: Store,
        rollback_manager: RollbackManager,
        backoff: Optional[BackoffPolicy] = None,
        clock: Optional[Clock] = None,
        retry_budget: int = 5,
    ) -> None:
        self.store = store
        self.rollback_manager = rollback_manager
        self.backoff = backoff or BackoffPolicy()
        self.clock = clock or RealClock()
        self.retry_budget = retry_budget

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def open(
        self,
        owner: str,
        target: str,
        requested_children: int,
        requested_parents: int = 1,
        label: str = "",
        blueprint: Optional[Dict[str, Any]] = None,
        remote_parent_id: Optional[str] = None,
        retry_budget: Optional[int] = None,
    ) -> Job:
        if not owner or not target:
            raise ValueError("owner and target are required")
        if requested_children < 0 or requested_parents < 0:
            raise ValueError("requested counts cannot be negative")
        if requested_parents > 1:
            raise ValueError("a job owns at most one container entity")
        if requested_parents == 0 and not remote_parent_id:
            raise ValueError("a job without its own container needs remote_parent_id")
        if requested_parents == 0 and requested_children == 0:
            raise ValueError("nothing requested")

        job = Job(
            id=uuid.uuid4().hex,
            owner=owner,
            target=target,
            requested_parents=requested_parents,
            requested_children=requested_children,
            label=label,
            retry_budget=int(retry_budget or self.retry_budget),
            remote_parent_id=remote_parent_id,
            blueprint=dict(blueprint or {}),
            created_at=self.clock.time(),
        )
        slots: List[Slot] = [
            Slot(job_id=job.id, slot_number=n, kind=EntityKind.PARENT, label=label or f"job {job.id[:8]}")
            for n in range(1, requested_parents + 1)
        ]
        slots.extend(
            Slot(job_id=job.id, slot_number=n, kind=EntityKind.CHILD, label=job.pair_label(n))
            for n in range(1, requested_children + 1)
        )
        self.store.insert_job(job, slots)
        logger.info(
            f"Opened job {job.id} for {owner}/{target}: "
            f"{requested_parents} container(s), {requested_children} pair(s)"
        )
        return job

    def get(self, job_id: str) -> Job:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def mark_started(self, job: Job) -> Job:
        if job.status is JobStatus.PENDING:
            self.store.transition_job(job.id, [JobStatus.PENDING], JobStatus.IN_PROGRESS, started_epoch=self.clock.time())
            logger.info(f"Job {job.id} started")
        return self.get(job.id)

    def mark_completed(self, job: Job) -> Job:
        if self.store.transition_job(job.id, ACTIVE_STATES, JobStatus.COMPLETED, completed_epoch=self.clock.time()):
            logger.info(f"Job {job.id} completed")
        return self.get(job.id)

    def mark_failed(self, job: Job, reason: str) -> Job:
        if self.store.transition_job(
            job.id, ACTIVE_STATES, JobStatus.FAILED, last_error=reason, completed_epoch=self.clock.time()
        ):
            logger.error(f"Job {job.id} failed: {reason}")
        return self.get(job.id)

    # ------------------------------------------------------------------
    # Slot bookkeeping
    # ------------------------------------------------------------------
    def record_created(
        self,
        job_id: str,
        kind: EntityKind,
        slot_number: int,
        remote_id: Optional[str],
        paired_remote_id: Optional[str] = None,
    ) -> bool:
        job = self.get(job_id)
        if job.is_terminal:
            logger.warning(f"Ignoring created {kind.value}#{slot_number} for {job.status.value} job {job_id}")
            return False
        return self.store.record_slot_created(job_id, kind, slot_number, remote_id, paired_remote_id)

    def record_failed(
        self,
        job_id: str,
        kind: EntityKind,
        slot_number: int,
        error: str,
        orphan_id: Optional[str] = None,
    ) -> bool:
        if orphan_id:
            logger.warning(f"Job {job_id}: pair {slot_number} left orphaned parent {orphan_id}")
        return self.store.record_slot_failed(job_id, kind, slot_number, error, orphan_id)

    def orphaned_slots(self, job: Job) -> List[Slot]:
        """Failed pair slots whose parent still exists remotely."""
        failed = self.store.list_slots(job.id, kind=EntityKind.CHILD, statuses=[SlotStatus.FAILED])
        return [s for s in failed if s.remote_id]

    def clear_orphan(self, job_id: str, slot_number: int) -> bool:
        return self.store.clear_slot_orphan(job_id, EntityKind.CHILD, slot_number)

    def set_remote_parent(self, job: Job, remote_id: str) -> Job:
        self.store.update_job(job.id, remote_parent_id=remote_id)
        if job.requested_parents:
            self.record_created(job.id, EntityKind.PARENT, 1, remote_id)
        logger.info(f"Job {job.id} container is {remote_id}")
        return self.get(job.id)

    def slots_to_fill(self, job: Job, remaining: int) -> List[int]:
        """Lowest-numbered unfilled pair slots, at most ``remaining`` of them."""
        if remaining <= 0:
            return []
        open_slots = self.store.list_slots(
            job.id, kind=EntityKind.CHILD, statuses=[SlotStatus.PENDING, SlotStatus.FAILED]
        )
        # a slot whose orphaned parent still exists would be duplicated
        numbers = sorted(s.slot_number for s in open_slots if not s.remote_id)
        if len(numbers) < remaining:
            logger.warning(
                f"Job {job.id}: {remaining} pair(s) missing but only {len(numbers)} open slot(s); "
                f"filling what is open"
            )
        return numbers[:remaining]

    # ------------------------------------------------------------------
    # Idempotency
    # ------------------------------------------------------------------
    def reconcile(
        self,
        job: Job,
        remote: Optional[RemoteClient] = None,
        access_token: Optional[str] = None,
    ) -> IdempotencyStatus:
        """How many pairs still need creating, trusting the remote count when it is available.

        The remote count is only fetched while the tracked count says work remains, so a
        finished job never costs a remote call. The remote side counts parents, so parents
        left behind by failed pairs are taken off it.
        """
        parents_tracked = len(self.store.list_slots(job.id, kind=EntityKind.PARENT, statuses=[SlotStatus.CREATED]))
        tracked = len(self.store.list_slots(job.id, kind=EntityKind.CHILD, statuses=[SlotStatus.CREATED]))
        orphans = len(self.orphaned_slots(job))
        remote_count: Optional[int] = None
        if remote is not None and job.remote_parent_id and tracked < job.requested_children:
            remote_count = remote.count_children(job.remote_parent_id, access_token=access_token)
            if remote_count != tracked + orphans:
                logger.warning(
                    f"Job {job.id}: remote reports {remote_count} pair(s) under {job.remote_parent_id}, "
                    f"ledger has {tracked} and {orphans} orphaned parent(s)"
                )
        actual = max(0, remote_count - orphans) if remote_count is not None else tracked
        status = IdempotencyStatus(
            requested=job.requested_children,
            tracked=tracked,
            remote=remote_count,
            actual=actual,
            remaining=max(0, job.requested_children - actual),
            parents_requested=job.requested_parents,
            parents_tracked=parents_tracked,
            orphans=orphans,
        )
        if status.exceeded:
            logger.error(f"Job {job.id} has {actual} pair(s), more than the {job.requested_children} requested")
        return status

    def get_idempotency_status(self, job_id: str, remote: Optional[RemoteClient] = None) -> IdempotencyStatus:
        return self.reconcile(self.get(job_id), remote=remote)

    # ------------------------------------------------------------------
    # Failures
    # ------------------------------------------------------------------
    def handle_failure(self, job_id: str, error: Any) -> FailureDecision:
        job = self.get(job_id)
        category = getattr(error, "category", None) or classify_error(error)
        if category is ErrorCategory.RATE_LIMIT:
            logger.info(f"Job {job_id} hit a rate limit; deferring without spending the retry budget")
            return Proceed("rate limited; work deferred")

        entry = {
            "at": iso(self.clock.time()),
            "message": str(error),
            "category": category.value,
            "code": getattr(error, "code", None),
            "attempt": job.retry_count + 1,
        }
        job = self.store.append_job_error(job_id, entry) or job
        decision = self.rollback_manager.evaluate(job, error)
        if decision.should_rollback:
            logger.error(f"Job {job_id} needs rollback ({decision.severity.value}): {decision.reason}")
            return Rollback(reason=decision.reason or "rollback required", severity=decision.severity.value)

        remaining = self.reconcile(job).remaining
        delay = self.backoff.job_delay(job.retry_count)
        logger.warning(
            f"Job {job_id} attempt {job.retry_count}/{job.retry_budget} failed ({category.value}); "
            f"retry in {delay:.1f}s with {remaining} pair(s) remaining"
        )
        return Retry(attempt=job.retry_count, delay=delay, remaining=remaining)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def get_progress(self, job_id: str) -> Dict[str, Any]:
        job = self.get(job_id)
        counts = self.store.slot_counts(job_id)
        children = counts[EntityKind.CHILD.value]
        pct = 100.0 if job.requested_children == 0 else round(
            job.children_created / job.requested_children * 100.0, 1
        )
        return {
            "job": job.to_dict(),
            "slots": counts,
            "progress_pct": pct,
            "remaining": max(0, job.requested_children - job.children_created),
            "failed_slots": [
                s.slot_number
                for s in self.store.list_slots(job_id, kind=EntityKind.CHILD, statuses=[SlotStatus.FAILED])
            ],
            "pending_slots": children[SlotStatus.PENDING.value],
            "started_at": iso(job.started_at),
            "completed_at": iso(job.completed_at),
        }


__all__ = ["JobTracker", "IdempotencyStatus"]
