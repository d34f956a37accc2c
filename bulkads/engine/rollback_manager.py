from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from ..infrastructure.credential_pool import CredentialPool
from ..infrastructure.error_handling import ErrorCategory, RemoteAPIError, classify_error
from ..infrastructure.storage import Store
from ..infrastructure.utils import Clock, RealClock
from ..integrations.meta_client import RemoteClient
from ..integrations.slack import alert_rollback
from ..models import (
    DeleteOutcome,
    EntityKind,
    Job,
    JobStatus,
    RollbackResult,
    Slot,
    SlotStatus,
)

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class RollbackDecision:
    should_rollback: bool
    reason: Optional[str] = None
    severity: Optional[Severity] = None


def _deletion_order(slots: List[Slot]) -> List[Slot]:
    # pair units first (highest slot first), the job's container last
    return sorted(slots, key=lambda s: (0 if s.kind is EntityKind.CHILD else 1, -s.slot_number))


class RollbackManager:
    """Last-resort compensator: deletes everything a job created, dependents first."""

    def __init__(
        self,
        store: Store,
        remote: RemoteClient,
        credential_pool: Optional[CredentialPool] = None,
        clock: Optional[Clock] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.remote = remote
        self.credential_pool = credential_pool
        self.clock = clock or RealClock()
        self.timeout = timeout

    def evaluate(self, job: Job, last_error: Any = None) -> RollbackDecision:
        if job.retry_count >= job.retry_budget:
            return RollbackDecision(
                True,
                f"Retry budget exhausted ({job.retry_count}/{job.retry_budget} attempts)",
                Severity.HIGH,
            )
        if last_error is not None:
            category = getattr(last_error, "category", None) or classify_error(last_error)
            if category is ErrorCategory.PERMANENT:
                return RollbackDecision(True, f"Permanent error: {last_error}", Severity.CRITICAL)
        if job.status is JobStatus.FAILED:
            return RollbackDecision(True, "Job marked as failed", Severity.HIGH)
        return RollbackDecision(False)

    def should_rollback(self, job: Job, last_error: Any = None) -> bool:
        return self.evaluate(job, last_error).should_rollback

    def _owned_slots(self, job: Job) -> List[Slot]:
        """Created slots plus failed pairs whose orphaned parent is still up."""
        slots = self.store.list_slots(job.id, statuses=[SlotStatus.CREATED, SlotStatus.FAILED])
        return [s for s in slots if s.status is SlotStatus.CREATED or s.remote_id]

    def preview(self, job: Job) -> Dict[str, Any]:
        slots = _deletion_order(self._owned_slots(job))
        entities = [
            {"kind": s.kind.value, "slot_number": s.slot_number, "label": s.label, "remote_ids": s.remote_ids()}
            for s in slots
        ]
        return {
            "job_id": job.id,
            "status": job.status.value,
            "slots": len(entities),
            "entities": sum(len(e["remote_ids"]) for e in entities),
            "items": entities,
        }

    def _delete(self, entity_id: str) -> DeleteOutcome:
        lease = self.credential_pool.acquire() if self.credential_pool is not None else None
        try:
            return self.remote.delete_entity(
                entity_id,
                access_token=lease.secret if lease else None,
                timeout=self.timeout,
            )
        finally:
            if lease is not None and self.credential_pool is not None:
                self.credential_pool.release(lease, 1)

    def execute(self, job: Job, reason: str) -> RollbackResult:
        result = RollbackResult(job_id=job.id, reason=reason)
        if job.status is JobStatus.ROLLED_BACK:
            logger.info(f"Job {job.id} already rolled back")
            return result

        slots = _deletion_order(self._owned_slots(job))
        logger.warning(f"Rolling back job {job.id}: {len(slots)} created slot(s). Reason: {reason}")

        for slot in slots:
            slot_errors: List[str] = []
            for entity_id in slot.remote_ids():
                try:
                    outcome = self._delete(entity_id)
                except RemoteAPIError as e:
                    slot_errors.append(f"{entity_id}: {e}")
                    result.entities_failed += 1
                    result.errors.append({
                        "kind": slot.kind.value,
                        "slot_number": slot.slot_number,
                        "entity_id": entity_id,
                        "error": str(e),
                        "category": e.category.value,
                    })
                    logger.error(f"Rollback could not delete {entity_id} ({slot.kind.value}#{slot.slot_number}): {e}")
                    continue
                result.entities_deleted += 1
                result.details.append({
                    "kind": slot.kind.value,
                    "slot_number": slot.slot_number,
                    "entity_id": entity_id,
                    "outcome": outcome.value,
                })
            if slot_errors:
                self.store.set_slot_error(job.id, slot.kind, slot.slot_number, "rollback failed: " + "; ".join(slot_errors))
            elif slot.status is SlotStatus.FAILED:
                self.store.clear_slot_orphan(job.id, slot.kind, slot.slot_number)
            else:
                self.store.record_slot_rolled_back(job.id, slot.kind, slot.slot_number)

        moved = self.store.transition_job(
            job.id,
            [JobStatus.PENDING, JobStatus.IN_PROGRESS, JobStatus.FAILED, JobStatus.COMPLETED],
            JobStatus.ROLLED_BACK,
            rollback_reason=reason,
            completed_epoch=self.clock.time(),
        )
        if not moved:
            logger.warning(f"Job {job.id} changed state during rollback")

        if result.entities_failed:
            logger.error(
                f"Partial rollback of job {job.id}: {result.entities_deleted} deleted, "
                f"{result.entities_failed} left for manual cleanup"
            )
        else:
            logger.info(f"Rollback of job {job.id} complete: {result.entities_deleted} deleted")
        alert_rollback(job.id, result.entities_deleted, result.entities_failed, reason)
        return result


__all__ = ["RollbackManager", "RollbackDecision", "Severity"]
