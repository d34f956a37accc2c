from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from prometheus_client import Counter

from ..config import MAX_BATCH_OPERATIONS, BatchSettings
from ..infrastructure.credential_pool import CredentialLease, CredentialPool
from ..infrastructure.error_handling import (
    ErrorCategory,
    RateLimitedError,
    RemoteAPIError,
    classify_error,
    is_not_found,
)
from ..infrastructure.rate_limit_manager import RateBudgetTracker
from ..infrastructure.utils import Clock, RealClock
from ..integrations.meta_client import RemoteClient
from ..models import (
    BatchOutcome,
    CreateChild,
    CreateParent,
    Delete,
    Operation,
    OperationResult,
    PairResult,
)

logger = logging.getLogger(__name__)

PAIRS_CREATED = Counter("bulkads_pairs_created_total", "Pairs created", ["mode"])
PAIRS_FAILED = Counter("bulkads_pairs_failed_total", "Pairs that failed", ["mode"])
ORPHANS_DELETED = Counter("bulkads_orphans_deleted_total", "Orphaned parents cleaned up")
BATCH_FALLBACKS = Counter("bulkads_batch_fallbacks_total", "High-throughput runs that fell back to atomic mode")

HIGH_THROUGHPUT = "high_throughput"
ATOMIC = "atomic"

# pairs per batch request by payload weight; "light" uses the configured size
_WEIGHT_PAIRS = {"medium": 3, "heavy": 2}

ResultHook = Callable[[PairResult], None]
DeferHook = Callable[[List[int], Optional[float]], Optional[str]]


@dataclass
class PairSpec:
    slot_number: int
    parent_fields: Dict[str, Any] = field(default_factory=dict)
    child_fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Admission:
    allowed: bool
    lease: Optional[CredentialLease] = None
    resume_at: Optional[float] = None
    reason: str = ""

    @property
    def token(self) -> Optional[str]:
        return self.lease.secret if self.lease else None


@dataclass
class _Run:
    owner: str
    target: str
    container_id: str
    outcome: BatchOutcome
    on_result: Optional[ResultHook] = None
    on_defer: Optional[DeferHook] = None
    should_continue: Optional[Callable[[], bool]] = None
    mode: str = ATOMIC

    def cancelled(self) -> bool:
        return self.should_continue is not None and not self.should_continue()


class BatchOrchestrator:
    """Creates parent/child pairs so that no child-less parent survives.

    Atomic mode sends each pair as one two-operation batch, the child bound to its
    parent by reference. High-throughput mode packs several pairs per batch and drops
    to atomic mode for the rest of the run once a batch comes back below the quality
    threshold.
    """

    def __init__(
        self,
        remote: RemoteClient,
        credential_pool: Optional[CredentialPool],
        rate_tracker: RateBudgetTracker,
        settings: Optional[BatchSettings] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.remote = remote
        self.credential_pool = credential_pool
        self.rate_tracker = rate_tracker
        self.settings = settings or BatchSettings()
        self.clock = clock or RealClock()

    # ------------------------------------------------------------------
    # Capacity
    # ------------------------------------------------------------------
    def admit(self, owner: str, resource: str, calls: int = 1) -> Admission:
        """Reserve a credential and spend rate budget for ``calls`` remote operations."""
        lease: Optional[CredentialLease] = None
        if self.credential_pool is not None and self.credential_pool.has_credentials():
            lease = self.credential_pool.acquire(calls)
            if lease is None:
                return Admission(False, reason="no credential capacity")
        status = self.rate_tracker.check_and_consume(owner, resource, calls)
        if not status.allowed:
            self.release(lease, 0)
            return Admission(False, resume_at=status.reset_at, reason=status.reason)
        return Admission(True, lease=lease)

    def release(self, lease: Optional[CredentialLease], calls_used: int) -> None:
        if lease is not None and self.credential_pool is not None:
            self.credential_pool.release(lease, calls_used)

    def pairs_per_batch(self, payload_weight: str = "light") -> int:
        if payload_weight == "light":
            size = self.settings.pairs_per_batch
        elif payload_weight in _WEIGHT_PAIRS:
            size = min(_WEIGHT_PAIRS[payload_weight], self.settings.pairs_per_batch)
        else:
            raise ValueError(f"Unknown payload weight: {payload_weight}")
        return max(1, min(size, MAX_BATCH_OPERATIONS // 2))

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def create_pairs(
        self,
        owner: str,
        target: str,
        container_id: str,
        units: Sequence[PairSpec],
        *,
        high_throughput: bool = False,
        payload_weight: str = "light",
        on_result: Optional[ResultHook] = None,
        on_defer: Optional[DeferHook] = None,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> BatchOutcome:
        outcome = BatchOutcome(requested_count=len(units), mode=HIGH_THROUGHPUT if high_throughput else ATOMIC)
        run = _Run(
            owner=owner,
            target=target,
            container_id=container_id,
            outcome=outcome,
            on_result=on_result,
            on_defer=on_defer,
            should_continue=should_continue,
            mode=outcome.mode,
        )
        pending: Deque[PairSpec] = deque(units)
        logger.info(f"Creating {len(units)} pair(s) for {owner}/{target} in {outcome.mode} mode")

        stopped = False
        if high_throughput:
            stopped = self._run_high_throughput(run, pending, self.pairs_per_batch(payload_weight))
        if not stopped:
            run.mode = ATOMIC
            self._run_atomic(run, pending)

        logger.info(
            f"Pairs for {owner}/{target}: {len(outcome.created_pairs)} created, "
            f"{len(outcome.failed_pairs)} failed, {len(outcome.deferred_slots)} deferred "
            f"({outcome.success_rate}% of {outcome.requested_count}, {outcome.calls_made} call(s))"
        )
        return outcome

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------
    def _run_atomic(self, run: _Run, pending: Deque[PairSpec]) -> None:
        while pending:
            if run.cancelled():
                run.outcome.cancelled = True
                logger.warning(f"Run cancelled with {len(pending)} pair(s) not attempted")
                return
            unit = pending.popleft()
            ops = self._pair_ops(run, unit)
            admission = self.admit(run.owner, run.target, len(ops))
            if not admission.allowed:
                self._defer(run, [unit, *pending], admission)
                pending.clear()
                return
            calls = len(ops)
            try:
                try:
                    resp = self.remote.batch_submit(
                        ops, access_token=admission.token, timeout=self.settings.single_call_timeout
                    )
                except RateLimitedError as e:
                    self._throttled(run, e, [unit, *pending])
                    pending.clear()
                    return
                except RemoteAPIError as e:
                    run.outcome.calls_made += 1
                    logger.error(f"Pair {unit.slot_number} request failed: {e}")
                    self._emit(run, PairResult(
                        slot_number=unit.slot_number,
                        created=False,
                        error=str(e),
                        error_category=e.category.value,
                        failure_reason="transport_error",
                        uncertain=e.timed_out,
                    ))
                    continue
                run.outcome.calls_made += 1
                self.rate_tracker.update_from_headers(run.owner, run.target, resp.headers)
                result = self._judge(unit.slot_number, resp.results[0], resp.results[1])
                calls += self._cleanup_orphans(run, [result], admission.token)
                self._emit(run, result)
            finally:
                self.release(admission.lease, calls)

    def _run_high_throughput(self, run: _Run, pending: Deque[PairSpec], pairs_per_batch: int) -> bool:
        """Returns True when the run must stop (deferred or cancelled)."""
        threshold = self.settings.quality_threshold_pct
        while pending:
            if run.cancelled():
                run.outcome.cancelled = True
                logger.warning(f"Run cancelled with {len(pending)} pair(s) not attempted")
                return True
            chunk = [pending.popleft() for _ in range(min(pairs_per_batch, len(pending)))]
            ops: List[Operation] = []
            for unit in chunk:
                ops.extend(self._pair_ops(run, unit))
            admission = self.admit(run.owner, run.target, len(ops))
            if not admission.allowed:
                self._defer(run, [*chunk, *pending], admission)
                pending.clear()
                return True

            calls = len(ops)
            try:
                try:
                    resp = self.remote.batch_submit(
                        ops, access_token=admission.token, timeout=self.settings.batch_call_timeout
                    )
                except RateLimitedError as e:
                    self._throttled(run, e, [*chunk, *pending])
                    pending.clear()
                    return True
                except RemoteAPIError as e:
                    # outcome of every op in the batch is unknown; don't resend them this run
                    run.outcome.calls_made += 1
                    logger.error(f"Batch of {len(chunk)} pair(s) failed in transport: {e}")
                    for unit in chunk:
                        self._emit(run, PairResult(
                            slot_number=unit.slot_number,
                            created=False,
                            error=str(e),
                            error_category=e.category.value,
                            failure_reason="batch_transport_error",
                            uncertain=True,
                        ))
                    self._fall_back(run, 0, threshold)
                    return False

                run.outcome.calls_made += 1
                self.rate_tracker.update_from_headers(run.owner, run.target, resp.headers)
                results = [
                    self._judge(unit.slot_number, resp.results[2 * i], resp.results[2 * i + 1])
                    for i, unit in enumerate(chunk)
                ]
                calls += self._cleanup_orphans(run, results, admission.token)
            finally:
                self.release(admission.lease, calls)

            created = [r for r in results if r.created]
            for r in created:
                self._emit(run, r)
            rate = len(created) / len(chunk) * 100.0
            if rate >= threshold:
                for r in results:
                    if not r.created:
                        self._emit(run, r)
                continue

            retry = [unit for unit, r in zip(chunk, results) if not r.created and self._retryable(r)]
            for r in results:
                if not r.created and r.slot_number not in {u.slot_number for u in retry}:
                    self._emit(run, r)
            self._fall_back(run, rate, threshold)
            pending.extendleft(reversed(retry))
            return False
        return False

    def _fall_back(self, run: _Run, rate: float, threshold: float) -> None:
        logger.warning(
            f"Batch success {rate:.0f}% below {threshold:.0f}% for {run.owner}/{run.target}; "
            f"switching to atomic mode"
        )
        run.outcome.fell_back = True
        run.mode = ATOMIC
        BATCH_FALLBACKS.inc()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _pair_ops(self, run: _Run, unit: PairSpec) -> List[Operation]:
        parent = CreateParent(
            target=run.target,
            slot_number=unit.slot_number,
            container_id=run.container_id,
            fields=dict(unit.parent_fields),
        )
        child = CreateChild(
            target=run.target,
            slot_number=unit.slot_number,
            parent_ref=parent.ref,
            fields=dict(unit.child_fields),
        )
        return [parent, child]

    @staticmethod
    def _category(result: Optional[OperationResult]) -> str:
        if result is None or not result.error:
            return ErrorCategory.UNKNOWN.value
        return classify_error(result.error).value

    def _judge(
        self,
        slot_number: int,
        parent: Optional[OperationResult],
        child: Optional[OperationResult],
    ) -> PairResult:
        parent_ok = parent is not None and parent.ok
        child_ok = child is not None and child.ok
        if parent_ok and child_ok:
            return PairResult(slot_number, True, parent_id=parent.entity_id, child_id=child.entity_id)
        if child_ok:
            # the child can only exist under a created parent
            logger.warning(f"Pair {slot_number}: child created but parent result missing")
            return PairResult(slot_number, True, parent_id=None, child_id=child.entity_id)
        if parent_ok:
            return PairResult(
                slot_number,
                False,
                parent_id=parent.entity_id,
                error=child.error_message if child is not None else "child operation did not run",
                error_category=self._category(child),
                failure_reason="child_creation_failed",
            )
        return PairResult(
            slot_number,
            False,
            error=parent.error_message if parent is not None else "parent operation did not run",
            error_category=self._category(parent),
            failure_reason="parent_creation_failed",
        )

    @staticmethod
    def _retryable(result: PairResult) -> bool:
        if result.uncertain or result.error_category == ErrorCategory.PERMANENT.value:
            return False
        # a parent we could not delete would be duplicated by a retry
        return result.parent_id is None or result.orphan_deleted

    def _cleanup_orphans(self, run: _Run, results: Sequence[PairResult], token: Optional[str]) -> int:
        """Delete parents whose child failed. Returns the number of remote operations spent."""
        orphans = [r for r in results if not r.created and r.parent_id]
        if not orphans:
            return 0
        ids = [r.parent_id for r in orphans]
        deleted: set = set()
        if len(ids) == 1:
            try:
                self.remote.delete_entity(ids[0], access_token=token, timeout=self.settings.single_call_timeout)
                deleted.add(ids[0])
            except RemoteAPIError as e:
                logger.error(f"Could not delete orphaned parent {ids[0]}: {e}")
        else:
            try:
                resp = self.remote.batch_submit(
                    [Delete(i) for i in ids], access_token=token, timeout=self.settings.batch_call_timeout
                )
                for entity_id, res in zip(ids, resp.results):
                    if res is not None and (res.ok or is_not_found(res.error or {})):
                        deleted.add(entity_id)
            except RemoteAPIError as e:
                logger.error(f"Could not delete {len(ids)} orphaned parent(s): {e}")
        run.outcome.calls_made += 1

        for r in orphans:
            if r.parent_id in deleted:
                r.orphan_deleted = True
                run.outcome.orphans_deleted += 1
                ORPHANS_DELETED.inc()
                logger.info(f"Deleted orphaned parent {r.parent_id} of pair {r.slot_number}")
            else:
                run.outcome.orphans_remaining.append(r.parent_id)
                logger.error(f"Orphaned parent {r.parent_id} of pair {r.slot_number} left in place")
        return len(ids)

    def _emit(self, run: _Run, result: PairResult) -> None:
        if result.created:
            run.outcome.created_pairs.append(result)
            PAIRS_CREATED.labels(run.mode).inc()
        else:
            run.outcome.failed_pairs.append(result)
            PAIRS_FAILED.labels(run.mode).inc()
            logger.warning(
                f"Pair {result.slot_number} failed ({result.failure_reason}, {result.error_category}): {result.error}"
            )
        if run.on_result is not None:
            run.on_result(result)

    def _throttled(self, run: _Run, exc: RateLimitedError, units: List[PairSpec]) -> None:
        status = self.rate_tracker.record_throttled(run.owner, run.target, exc.retry_after)
        self._defer(run, units, Admission(False, resume_at=status.reset_at, reason=str(exc)))

    def _defer(self, run: _Run, units: List[PairSpec], admission: Admission) -> None:
        slots = [u.slot_number for u in units]
        if not slots:
            return
        run.outcome.deferred_slots.extend(slots)
        run.outcome.resume_at = admission.resume_at
        logger.info(f"Deferring {len(slots)} pair(s) for {run.owner}/{run.target}: {admission.reason}")
        if run.on_defer is not None:
            run.outcome.queue_id = run.on_defer(slots, admission.resume_at)


__all__ = ["BatchOrchestrator", "PairSpec", "Admission", "HIGH_THROUGHPUT", "ATOMIC"]
