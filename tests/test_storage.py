from __future__ import annotations

import pytest

from bulkads.infrastructure.storage import SlotNotFoundError
from bulkads.models import (
    EntityKind,
    Job,
    JobStatus,
    QueuedRequest,
    QueueStatus,
    Slot,
    SlotStatus,
)


def make_job(store, job_id="job-1", children=3, parents=1):
    job = Job(id=job_id, owner="acme", target="act_1", requested_parents=parents, requested_children=children)
    slots = [Slot(job_id, n, EntityKind.PARENT) for n in range(1, parents + 1)]
    slots += [Slot(job_id, n, EntityKind.CHILD) for n in range(1, children + 1)]
    store.insert_job(job, slots)
    return job


def test_insert_and_read_job(store):
    make_job(store)
    job = store.get_job("job-1")
    assert job.status is JobStatus.PENDING
    assert job.requested_children == 3
    assert job.error_history == []
    assert job.blueprint == {}
    assert len(store.list_slots("job-1")) == 4
    assert store.get_job("missing") is None


def test_record_slot_created_bumps_counter_once(store):
    make_job(store)
    assert store.record_slot_created("job-1", EntityKind.CHILD, 2, "as-2", "ad-2") is True
    assert store.record_slot_created("job-1", EntityKind.CHILD, 2, "as-2b", "ad-2b") is False

    job = store.get_job("job-1")
    assert job.children_created == 1
    slot = store.get_slot("job-1", EntityKind.CHILD, 2)
    assert slot.status is SlotStatus.CREATED
    assert slot.remote_ids() == ["ad-2", "as-2"]


def test_record_slot_created_never_exceeds_request(store):
    make_job(store, children=2)
    # a third slot inserted out of band cannot push the counter past the request
    store.insert_job(
        Job(id="job-2", owner="acme", target="act_1", requested_parents=0, requested_children=1),
        [Slot("job-2", 1, EntityKind.CHILD), Slot("job-2", 2, EntityKind.CHILD)],
    )
    assert store.record_slot_created("job-2", EntityKind.CHILD, 1, "a", "b") is True
    assert store.record_slot_created("job-2", EntityKind.CHILD, 2, "c", "d") is False
    assert store.get_job("job-2").children_created == 1


def test_record_slot_created_unknown_slot(store):
    make_job(store)
    with pytest.raises(SlotNotFoundError):
        store.record_slot_created("job-1", EntityKind.CHILD, 9, "x")


def test_failed_slot_can_be_created_later(store):
    make_job(store)
    assert store.record_slot_failed("job-1", EntityKind.CHILD, 1, "boom") is True
    slot = store.get_slot("job-1", EntityKind.CHILD, 1)
    assert slot.status is SlotStatus.FAILED
    assert slot.retry_count == 1
    assert store.record_slot_created("job-1", EntityKind.CHILD, 1, "as", "ad") is True
    assert store.get_slot("job-1", EntityKind.CHILD, 1).error_message is None


def test_rolled_back_slot_decrements(store):
    make_job(store)
    store.record_slot_created("job-1", EntityKind.CHILD, 1, "as", "ad")
    assert store.record_slot_rolled_back("job-1", EntityKind.CHILD, 1) is True
    assert store.record_slot_rolled_back("job-1", EntityKind.CHILD, 1) is False
    assert store.get_job("job-1").children_created == 0
    counts = store.slot_counts("job-1")
    assert counts["child"]["rolled_back"] == 1
    assert counts["child"]["pending"] == 2


def test_transition_job_is_guarded(store):
    make_job(store)
    assert store.transition_job("job-1", [JobStatus.PENDING], JobStatus.IN_PROGRESS) is True
    assert store.transition_job("job-1", [JobStatus.PENDING], JobStatus.COMPLETED) is False
    assert store.get_job("job-1").status is JobStatus.IN_PROGRESS
    with pytest.raises(ValueError):
        store.update_job("job-1", bogus=1)


def test_append_job_error(store):
    make_job(store)
    job = store.append_job_error("job-1", {"message": "first"})
    job = store.append_job_error("job-1", {"message": "second"}, increment_retry=False)
    assert job.retry_count == 1
    assert job.last_error == "second"
    assert [e["message"] for e in job.error_history] == ["first", "second"]
    assert store.append_job_error("missing", {"message": "x"}) is None


def test_queue_rows(store, clock):
    now = clock.time()
    for i, prio in enumerate((5, 1)):
        store.insert_request(QueuedRequest(
            id=f"r{i}", owner="acme", resource="act_1", action_type="noop",
            priority=prio, process_after=now, dedup_key=f"k{i}",
        ))
    ready = store.ready_requests(now, 10)
    assert [r.id for r in ready] == ["r1", "r0"]

    claimed = store.claim_request("r1")
    assert claimed.status is QueueStatus.PROCESSING
    assert claimed.attempts == 1
    assert store.claim_request("r1") is None
    assert store.find_active_request("k1").id == "r1"

    store.update_request("r1", status=QueueStatus.COMPLETED, result={"ok": True})
    assert store.find_active_request("k1") is None
    assert store.get_request("r1").result == {"ok": True}

    clock.advance(10)
    assert store.purge_requests(clock.time()) == 1
    assert store.get_request("r1") is None
