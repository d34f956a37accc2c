from __future__ import annotations

import pytest

from bulkads.infrastructure.error_handling import JobNotFoundError, RateLimitedError, RemoteAPIError
from bulkads.models import EntityKind, JobStatus, Proceed, Retry, Rollback, SlotStatus

from .conftest import transient_error


@pytest.fixture
def tracker(service):
    return service.tracker


def test_open_creates_numbered_slots(tracker, store):
    job = tracker.open("acme", "act_1", 3, label="Spring", blueprint={"parent": {"daily_budget": 100}})
    slots = store.list_slots(job.id)
    assert [(s.kind, s.slot_number) for s in slots] == [
        (EntityKind.CHILD, 1), (EntityKind.CHILD, 2), (EntityKind.CHILD, 3), (EntityKind.PARENT, 1),
    ]
    assert store.get_slot(job.id, EntityKind.CHILD, 2).label == "Spring pair 2"
    assert tracker.get(job.id).blueprint == {"parent": {"daily_budget": 100}}
    assert job.retry_budget == 5


@pytest.mark.parametrize("kwargs", [
    dict(owner="", target="act_1", requested_children=1),
    dict(owner="acme", target="act_1", requested_children=-1),
    dict(owner="acme", target="act_1", requested_children=1, requested_parents=2),
    dict(owner="acme", target="act_1", requested_children=1, requested_parents=0),
    dict(owner="acme", target="act_1", requested_children=0, requested_parents=0, remote_parent_id="c"),
])
def test_open_rejects_bad_requests(tracker, kwargs):
    with pytest.raises(ValueError):
        tracker.open(**kwargs)


def test_get_unknown_job(tracker):
    with pytest.raises(JobNotFoundError):
        tracker.get("nope")


def test_lifecycle_transitions(tracker, clock):
    job = tracker.open("acme", "act_1", 1)
    job = tracker.mark_started(job)
    assert job.status is JobStatus.IN_PROGRESS
    assert job.started_at == clock.time()
    job = tracker.mark_completed(job)
    assert job.status is JobStatus.COMPLETED
    # terminal jobs stay terminal
    assert tracker.mark_failed(job, "late").status is JobStatus.COMPLETED
    assert tracker.record_created(job.id, EntityKind.CHILD, 1, "as", "ad") is False


def test_slots_to_fill_prefers_lowest_open(tracker):
    job = tracker.open("acme", "act_1", 5)
    tracker.record_created(job.id, EntityKind.CHILD, 1, "as1", "ad1")
    tracker.record_failed(job.id, EntityKind.CHILD, 2, "boom")
    tracker.record_created(job.id, EntityKind.CHILD, 3, "as3", "ad3")
    assert tracker.slots_to_fill(job, 2) == [2, 4]
    assert tracker.slots_to_fill(job, 10) == [2, 4, 5]
    assert tracker.slots_to_fill(job, 0) == []


def test_set_remote_parent_fills_container_slot(tracker, store):
    job = tracker.open("acme", "act_1", 2)
    job = tracker.set_remote_parent(job, "cmp-1")
    assert job.remote_parent_id == "cmp-1"
    assert job.parents_created == 1
    assert store.get_slot(job.id, EntityKind.PARENT, 1).status is SlotStatus.CREATED


def test_reconcile_trusts_remote_count(tracker, remote):
    container = remote.add_existing("root", None)
    for _ in range(4):
        remote.add_existing("parent", container)
    job = tracker.open("acme", "act_1", 10, requested_parents=0, remote_parent_id=container)

    status = tracker.reconcile(job, remote=remote)
    assert status.tracked == 0
    assert status.remote == 4
    assert status.remaining == 6
    assert status.can_create_more
    assert not status.exceeded
    assert tracker.reconcile(job).remaining == 10


def test_orphaned_parents_do_not_count_as_pairs(tracker, remote):
    container = remote.add_existing("root", None)
    job = tracker.open("acme", "act_1", 3, requested_parents=0, remote_parent_id=container)
    for n in (1, 2):
        tracker.record_created(job.id, EntityKind.CHILD, n, remote.add_existing("parent", container), f"ad{n}")
    orphan = remote.add_existing("parent", container)
    tracker.record_failed(job.id, EntityKind.CHILD, 3, "child failed", orphan_id=orphan)

    status = tracker.reconcile(job, remote=remote)
    assert status.remote == 3
    assert status.orphans == 1
    assert status.actual == 2
    assert status.remaining == 1
    assert tracker.slots_to_fill(job, status.remaining) == []
    assert [s.remote_id for s in tracker.orphaned_slots(job)] == [orphan]

    assert tracker.clear_orphan(job.id, 3)
    assert tracker.orphaned_slots(job) == []
    assert tracker.slots_to_fill(job, 1) == [3]


def test_reconcile_skips_remote_when_ledger_is_full(tracker, remote):
    job = tracker.open("acme", "act_1", 1)
    job = tracker.set_remote_parent(job, "cmp-1")
    tracker.record_created(job.id, EntityKind.CHILD, 1, "as", "ad")
    status = tracker.reconcile(tracker.get(job.id), remote=remote)
    assert status.remaining == 0
    assert status.at_limit
    assert remote.calls_of("count") == []


def test_rate_limit_does_not_spend_retry_budget(tracker):
    job = tracker.open("acme", "act_1", 2)
    decision = tracker.handle_failure(job.id, RateLimitedError("User request limit reached", code=17))
    assert isinstance(decision, Proceed)
    assert tracker.get(job.id).retry_count == 0


def test_transient_failure_asks_for_retry(tracker):
    job = tracker.open("acme", "act_1", 2)
    decision = tracker.handle_failure(job.id, transient_error())
    assert decision == Retry(attempt=1, delay=1.0, remaining=2)

    decision = tracker.handle_failure(job.id, transient_error())
    assert decision == Retry(attempt=2, delay=2.0, remaining=2)
    job = tracker.get(job.id)
    assert [e["attempt"] for e in job.error_history] == [1, 2]
    assert job.error_history[0]["category"] == "transient"
    assert job.last_error == "Service temporarily unavailable"


def test_exhausted_budget_asks_for_rollback(tracker):
    job = tracker.open("acme", "act_1", 2)
    for _ in range(4):
        assert isinstance(tracker.handle_failure(job.id, transient_error()), Retry)
    decision = tracker.handle_failure(job.id, transient_error())
    assert decision == Rollback(reason="Retry budget exhausted (5/5 attempts)", severity="high")


def test_permanent_failure_asks_for_rollback(tracker):
    job = tracker.open("acme", "act_1", 2)
    decision = tracker.handle_failure(job.id, RemoteAPIError("Invalid parameter", code=100))
    assert isinstance(decision, Rollback)
    assert decision.severity == "critical"
    assert decision.reason.startswith("Permanent error")


def test_progress(tracker, clock):
    job = tracker.open("acme", "act_1", 4)
    job = tracker.mark_started(job)
    tracker.record_created(job.id, EntityKind.CHILD, 1, "as", "ad")
    tracker.record_failed(job.id, EntityKind.CHILD, 2, "boom")

    progress = tracker.get_progress(job.id)
    assert progress["progress_pct"] == 25.0
    assert progress["remaining"] == 3
    assert progress["failed_slots"] == [2]
    assert progress["pending_slots"] == 2
    assert progress["started_at"] == "2026-03-02T09:00:00+00:00"
    assert progress["completed_at"] is None
    assert progress["job"]["status"] == "in_progress"
