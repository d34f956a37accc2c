from __future__ import annotations

from dataclasses import replace

import pytest

from bulkads.engine.rollback_manager import Severity
from bulkads.infrastructure.error_handling import RemoteAPIError
from bulkads.models import EntityKind, JobStatus, SlotStatus

from .conftest import transient_error


@pytest.fixture
def built_job(service):
    job_id = service.start_job("acme", "act_1", 3, label="Spring")
    service.run_bulk_create(job_id)
    return service.tracker.get(job_id)


def test_deletes_pairs_before_container(service, remote, built_job):
    manager = service.rollback_manager
    result = manager.execute(built_job, "wrong targeting")

    assert result.success
    assert result.entities_deleted == 7
    deleted = [c[1] for c in remote.calls_of("delete")]
    assert deleted[-1] == built_job.remote_parent_id
    slots = [d["slot_number"] for d in result.details if d["kind"] == "child"]
    assert slots == [3, 3, 2, 2, 1, 1]
    # within a pair the ad goes before its ad set
    first_pair = service.store.get_slot(built_job.id, EntityKind.CHILD, 3)
    assert deleted[:2] == [first_pair.paired_remote_id, first_pair.remote_id]
    assert remote.entities == {}

    job = service.tracker.get(built_job.id)
    assert job.status is JobStatus.ROLLED_BACK
    assert job.rollback_reason == "wrong targeting"
    assert job.children_created == 0
    assert job.parents_created == 0
    assert all(s.status is SlotStatus.ROLLED_BACK for s in service.store.list_slots(job.id))


def test_already_deleted_entities_count_as_deleted(service, remote, built_job):
    slot = service.store.get_slot(built_job.id, EntityKind.CHILD, 2)
    del remote.entities[slot.paired_remote_id]

    result = service.rollback_manager.execute(built_job, "cleanup")
    assert result.success
    outcomes = {d["entity_id"]: d["outcome"] for d in result.details}
    assert outcomes[slot.paired_remote_id] == "not_found"
    assert outcomes[slot.remote_id] == "deleted"


def test_partial_rollback_keeps_going(service, remote, built_job):
    remote.delete_errors[built_job.remote_parent_id] = transient_error()
    result = service.rollback_manager.execute(built_job, "cleanup")

    assert not result.success
    assert result.entities_deleted == 6
    assert result.entities_failed == 1
    assert result.errors[0]["entity_id"] == built_job.remote_parent_id
    assert result.errors[0]["category"] == "transient"

    container = service.store.get_slot(built_job.id, EntityKind.PARENT, 1)
    assert container.status is SlotStatus.CREATED
    assert container.error_message.startswith("rollback failed")
    assert service.tracker.get(built_job.id).status is JobStatus.ROLLED_BACK


def test_rollback_removes_orphaned_parents(service, remote):
    job_id = service.start_job("acme", "act_1", 3)
    remote.fail_child = {2: 1}
    remote.fail_deletes = transient_error()
    service.run_bulk_create(job_id)
    remote.fail_deletes = None
    job = service.tracker.get(job_id)
    orphan = service.store.get_slot(job_id, EntityKind.CHILD, 2).remote_id
    assert orphan in remote.entities

    preview = service.rollback_manager.preview(job)
    assert preview["entities"] == 6

    result = service.rollback_manager.execute(job, "cleanup")
    assert result.success
    assert result.entities_deleted == 6
    assert remote.entities == {}
    slot = service.store.get_slot(job_id, EntityKind.CHILD, 2)
    assert slot.status is SlotStatus.FAILED
    assert slot.remote_id is None


def test_second_rollback_is_a_no_op(service, remote, built_job):
    service.rollback_manager.execute(built_job, "first")
    calls = len(remote.calls)
    result = service.rollback_manager.execute(service.tracker.get(built_job.id), "second")
    assert result.entities_deleted == 0
    assert len(remote.calls) == calls


def test_preview_lists_entities_without_deleting(service, remote, built_job):
    preview = service.rollback_manager.preview(built_job)
    assert preview["slots"] == 4
    assert preview["entities"] == 7
    assert preview["items"][-1]["kind"] == "parent"
    assert remote.calls_of("delete") == []


def test_evaluate(service, built_job):
    manager = service.rollback_manager
    assert not manager.should_rollback(built_job)
    assert not manager.should_rollback(built_job, transient_error())

    decision = manager.evaluate(built_job, RemoteAPIError("Error validating access token", code=190))
    assert decision.should_rollback
    assert decision.severity is Severity.CRITICAL

    exhausted = replace(built_job, retry_count=5, retry_budget=5)
    decision = manager.evaluate(exhausted)
    assert decision.severity is Severity.HIGH
    assert "5/5" in decision.reason

    failed = replace(built_job, status=JobStatus.FAILED)
    assert manager.evaluate(failed).reason == "Job marked as failed"
