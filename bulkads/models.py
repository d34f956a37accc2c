from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ROLLED_BACK)


class SlotStatus(str, Enum):
    PENDING = "pending"
    CREATED = "created"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class EntityKind(str, Enum):
    """Ledger kinds: the job's container entity and its pair units."""

    PARENT = "parent"
    CHILD = "child"


class RemoteKind(str, Enum):
    """Remote entity tiers: root container, pair parent, pair child."""

    ROOT = "root"
    PARENT = "parent"
    CHILD = "child"


class QueueStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DeleteOutcome(str, Enum):
    DELETED = "deleted"
    NOT_FOUND = "not_found"


# -----------------------
# Persistent records
# -----------------------
@dataclass
class Job:
    id: str
    owner: str
    target: str
    requested_parents: int
    requested_children: int
    label: str = ""
    parents_created: int = 0
    children_created: int = 0
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    retry_budget: int = 5
    remote_parent_id: Optional[str] = None
    last_error: Optional[str] = None
    error_history: List[Dict[str, Any]] = field(default_factory=list)
    blueprint: Dict[str, Any] = field(default_factory=dict)
    rollback_reason: Optional[str] = None
    created_at: Optional[float] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    updated_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def pair_label(self, slot_number: int) -> str:
        prefix = self.label or f"job {self.id[:8]}"
        return f"{prefix} pair {slot_number}"

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["status"] = self.status.value
        return out


@dataclass
class Slot:
    job_id: str
    slot_number: int
    kind: EntityKind
    status: SlotStatus = SlotStatus.PENDING
    remote_id: Optional[str] = None
    paired_remote_id: Optional[str] = None
    label: str = ""
    error_message: Optional[str] = None
    retry_count: int = 0
    updated_at: Optional[float] = None

    def remote_ids(self) -> List[str]:
        """Remote entities owned by this slot, dependents first."""
        return [rid for rid in (self.paired_remote_id, self.remote_id) if rid]

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["kind"] = self.kind.value
        out["status"] = self.status.value
        return out


@dataclass
class Credential:
    id: str
    name: str
    secret: str
    call_limit: int = 200
    usage: int = 0
    reset_at: Optional[float] = None
    active: bool = True

    def usage_pct(self) -> float:
        if self.call_limit <= 0:
            return 100.0
        return round(self.usage / self.call_limit * 100.0, 2)

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        out = asdict(self)
        if not include_secret:
            out.pop("secret", None)
        return out


@dataclass
class QueuedRequest:
    id: str
    owner: str
    resource: str
    action_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    priority: int = 5
    status: QueueStatus = QueueStatus.QUEUED
    process_after: float = 0.0
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    dedup_key: Optional[str] = None
    created_at: Optional[float] = None
    updated_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["status"] = self.status.value
        return out


# -----------------------
# Remote operation descriptors
# -----------------------
@dataclass(frozen=True)
class CreateParent:
    target: str
    slot_number: int
    container_id: str
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> str:
        return f"parent-{self.slot_number}"


@dataclass(frozen=True)
class CreateChild:
    target: str
    slot_number: int
    parent_ref: str
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> str:
        return f"child-{self.slot_number}"


@dataclass(frozen=True)
class Delete:
    entity_id: str

    @property
    def ref(self) -> str:
        return f"delete-{self.entity_id}"


Operation = Union[CreateParent, CreateChild, Delete]


@dataclass(frozen=True)
class OperationResult:
    ok: bool
    status: int
    entity_id: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    body: Optional[Dict[str, Any]] = None

    @property
    def error_message(self) -> str:
        if not self.error:
            return "" if self.ok else f"HTTP {self.status}"
        return str(self.error.get("message") or self.error.get("error_user_msg") or f"HTTP {self.status}")

    @property
    def error_code(self) -> Optional[int]:
        if not self.error:
            return None
        try:
            return int(self.error.get("code"))
        except (TypeError, ValueError):
            return None


@dataclass
class RemoteResponse:
    entity_id: Optional[str]
    body: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class BatchResponse:
    # One entry per submitted operation; None means the op never executed.
    results: List[Optional[OperationResult]]
    headers: Dict[str, str] = field(default_factory=dict)


# -----------------------
# Failure decisions
# -----------------------
@dataclass(frozen=True)
class Proceed:
    reason: str = ""


@dataclass(frozen=True)
class Retry:
    attempt: int
    delay: float
    remaining: int


@dataclass(frozen=True)
class Rollback:
    reason: str
    severity: str = "high"


FailureDecision = Union[Retry, Rollback, Proceed]


def decision_to_dict(decision: Optional[FailureDecision]) -> Optional[Dict[str, Any]]:
    if decision is None:
        return None
    out = asdict(decision)
    out["action"] = type(decision).__name__.lower()
    return out


# -----------------------
# Results
# -----------------------
@dataclass
class PairResult:
    slot_number: int
    created: bool
    parent_id: Optional[str] = None
    child_id: Optional[str] = None
    error: Optional[str] = None
    error_category: Optional[str] = None
    failure_reason: Optional[str] = None
    orphan_deleted: bool = False
    uncertain: bool = False


@dataclass
class BatchOutcome:
    requested_count: int
    created_pairs: List[PairResult] = field(default_factory=list)
    failed_pairs: List[PairResult] = field(default_factory=list)
    deferred_slots: List[int] = field(default_factory=list)
    mode: str = "atomic"
    fell_back: bool = False
    cancelled: bool = False
    calls_made: int = 0
    orphans_deleted: int = 0
    orphans_remaining: List[str] = field(default_factory=list)
    resume_at: Optional[float] = None
    queue_id: Optional[str] = None

    @property
    def success_rate(self) -> int:
        if self.requested_count <= 0:
            return 100
        return round(len(self.created_pairs) / self.requested_count * 100)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["success_rate"] = self.success_rate
        return out


@dataclass
class BulkCreateReport:
    job_id: str
    status: JobStatus
    created_parents: int
    created_children: int
    success_rate: int
    attempted: int = 0
    deferred: int = 0
    remaining: int = 0
    decision: Optional[FailureDecision] = None
    queue_id: Optional[str] = None
    resume_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "created_parents": self.created_parents,
            "created_children": self.created_children,
            "success_rate": self.success_rate,
            "attempted": self.attempted,
            "deferred": self.deferred,
            "remaining": self.remaining,
            "decision": decision_to_dict(self.decision),
            "queue_id": self.queue_id,
            "resume_at": self.resume_at,
        }


@dataclass
class RollbackResult:
    job_id: str
    reason: str
    entities_deleted: int = 0
    entities_failed: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.entities_failed == 0

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["success"] = self.success
        return out


__all__ = [
    "JobStatus",
    "SlotStatus",
    "EntityKind",
    "RemoteKind",
    "QueueStatus",
    "DeleteOutcome",
    "Job",
    "Slot",
    "Credential",
    "QueuedRequest",
    "CreateParent",
    "CreateChild",
    "Delete",
    "Operation",
    "OperationResult",
    "RemoteResponse",
    "BatchResponse",
    "Proceed",
    "Retry",
    "Rollback",
    "FailureDecision",
    "decision_to_dict",
    "PairResult",
    "BatchOutcome",
    "BulkCreateReport",
    "RollbackResult",
]
