from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import pytest

from bulkads.config import EngineSettings
from bulkads.engine.service import BulkCreationService
from bulkads.infrastructure.error_handling import RemoteAPIError
from bulkads.infrastructure.storage import Store
from bulkads.infrastructure.utils import FixedClock
from bulkads.integrations import slack
from bulkads.models import (
    BatchResponse,
    CreateChild,
    CreateParent,
    Delete,
    DeleteOutcome,
    Operation,
    OperationResult,
    RemoteKind,
    RemoteResponse,
)

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeRemote:
    """In-memory stand-in for the Graph API.

    ``fail_parent`` / ``fail_child`` map a slot number to how many times its create
    should fail (negative means always).
    """

    def __init__(self) -> None:
        self.entities: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, Any]] = []
        self.batches: List[List[Operation]] = []
        self.fail_parent: Dict[int, int] = {}
        self.fail_child: Dict[int, int] = {}
        self.parent_error: Dict[str, Any] = {"code": 2, "message": "Service temporarily unavailable"}
        self.child_error: Dict[str, Any] = {"code": 2, "message": "Service temporarily unavailable"}
        self.batch_errors: List[Exception] = []
        self.always_fail_batches: Optional[Exception] = None
        self.delete_errors: Dict[str, Exception] = {}
        self.fail_deletes: Optional[Exception] = None
        self.root_error: Optional[Exception] = None
        self.headers: Dict[str, str] = {}
        self.on_batch: Optional[Callable[[int], None]] = None
        self._seq = 1000
        self._lock = threading.RLock()

    # helpers -----------------------------------------------------------
    def _new_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}{self._seq}"

    @staticmethod
    def _should_fail(table: Dict[int, int], slot: int) -> bool:
        left = table.get(slot, 0)
        if left == 0:
            return False
        if left > 0:
            table[slot] = left - 1
        return True

    def of_kind(self, kind: str, parent: Optional[str] = None) -> List[str]:
        return [
            eid for eid, e in self.entities.items()
            if e["kind"] == kind and (parent is None or e["parent"] == parent)
        ]

    def calls_of(self, name: str) -> List[Tuple[str, Any]]:
        return [c for c in self.calls if c[0] == name]

    def pair_attempts(self, since_batch: int = 0) -> int:
        return sum(
            1 for batch in self.batches[since_batch:] for op in batch if isinstance(op, CreateParent)
        )

    def add_existing(self, kind: str, parent: Optional[str]) -> str:
        with self._lock:
            eid = self._new_id(kind[0])
            self.entities[eid] = {"kind": kind, "parent": parent, "fields": {}}
            return eid

    # RemoteClient --------------------------------------------------------
    def create_entity(
        self,
        kind: RemoteKind,
        target: str,
        parent_ref: Optional[str],
        fields: Mapping[str, Any],
        *,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> RemoteResponse:
        with self._lock:
            self.calls.append(("create", kind.value))
            if self.root_error is not None:
                raise self.root_error
            eid = self._new_id(kind.value[0])
            self.entities[eid] = {"kind": kind.value, "parent": parent_ref, "fields": dict(fields)}
            return RemoteResponse(entity_id=eid, body={"id": eid}, headers=dict(self.headers))

    def delete_entity(
        self,
        entity_id: str,
        *,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> DeleteOutcome:
        with self._lock:
            self.calls.append(("delete", entity_id))
            if self.fail_deletes is not None:
                raise self.fail_deletes
            if entity_id in self.delete_errors:
                raise self.delete_errors[entity_id]
            return self._delete(entity_id)

    def _delete(self, entity_id: str) -> DeleteOutcome:
        if entity_id not in self.entities:
            return DeleteOutcome.NOT_FOUND
        del self.entities[entity_id]
        for eid in [e for e, v in self.entities.items() if v["parent"] == entity_id]:
            self._delete(eid)
        return DeleteOutcome.DELETED

    def batch_submit(
        self,
        operations: Sequence[Operation],
        *,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> BatchResponse:
        with self._lock:
            self.calls.append(("batch", len(operations)))
            self.batches.append(list(operations))
            if self.on_batch is not None:
                self.on_batch(len(self.batches))
            if self.always_fail_batches is not None:
                raise self.always_fail_batches
            if self.batch_errors:
                raise self.batch_errors.pop(0)
            refs: Dict[str, str] = {}
            results: List[Optional[OperationResult]] = []
            for op in operations:
                if isinstance(op, CreateParent):
                    if self._should_fail(self.fail_parent, op.slot_number):
                        results.append(OperationResult(False, 400, error=dict(self.parent_error)))
                        continue
                    eid = self._new_id("p")
                    self.entities[eid] = {"kind": "parent", "parent": op.container_id, "fields": dict(op.fields)}
                    refs[op.ref] = eid
                    results.append(OperationResult(True, 200, entity_id=eid, body={"id": eid}))
                elif isinstance(op, CreateChild):
                    parent_id = refs.get(op.parent_ref)
                    if parent_id is None:
                        results.append(None)
                        continue
                    if self._should_fail(self.fail_child, op.slot_number):
                        results.append(OperationResult(False, 400, error=dict(self.child_error)))
                        continue
                    eid = self._new_id("c")
                    self.entities[eid] = {"kind": "child", "parent": parent_id, "fields": dict(op.fields)}
                    results.append(OperationResult(True, 200, entity_id=eid, body={"id": eid}))
                elif isinstance(op, Delete):
                    if self.fail_deletes is not None:
                        results.append(OperationResult(False, 500, error={"code": 2, "message": "unavailable"}))
                    elif self._delete(op.entity_id) is DeleteOutcome.DELETED:
                        results.append(OperationResult(True, 200, body={"success": True}))
                    else:
                        results.append(OperationResult(
                            False, 400, error={"code": 100, "error_subcode": 33, "message": "Object does not exist"}
                        ))
            return BatchResponse(results=results, headers=dict(self.headers))

    def count_children(self, parent_id: str, *, access_token: Optional[str] = None) -> int:
        with self._lock:
            self.calls.append(("count", parent_id))
            return len(self.of_kind("parent", parent_id))


def transient_error(message: str = "Service temporarily unavailable") -> RemoteAPIError:
    return RemoteAPIError(message, code=2, http_status=500)


@pytest.fixture(autouse=True)
def quiet_slack(monkeypatch):
    monkeypatch.delenv("SLACK_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("SLACK_WEBHOOK_ALERTS", raising=False)
    monkeypatch.setattr(slack, "_client", None)
    yield


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START)


@pytest.fixture
def store(clock):
    s = Store(":memory:", clock=clock)
    yield s
    s.close()


@pytest.fixture
def settings() -> EngineSettings:
    s = EngineSettings(db_path=":memory:")
    s.jobs.retry_jitter = False
    return s


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def service(store, remote, settings, clock) -> BulkCreationService:
    return BulkCreationService(store, remote, settings, clock)
