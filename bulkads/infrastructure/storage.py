from __future__ import annotations

import json
import logging
import os
import random
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Dict, Iterable, List, Optional

from prometheus_client import Counter, Histogram
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from ..models import (
    Credential,
    EntityKind,
    Job,
    JobStatus,
    QueuedRequest,
    QueueStatus,
    Slot,
    SlotStatus,
)
from .utils import Clock, RealClock

logger = logging.getLogger(__name__)

DB_OPS = Counter("bulkads_store_db_ops_total", "DB operations", ["op"])
DB_ERRORS = Counter("bulkads_store_db_errors_total", "DB errors", ["op"])
DB_LAT = Histogram("bulkads_store_db_latency_seconds", "DB latencies", ["op"])

_COUNTER_COLUMNS = {
    EntityKind.PARENT: ("parents_created", "requested_parents"),
    EntityKind.CHILD: ("children_created", "requested_children"),
}

_JOB_COLUMNS = {
    "label", "parents_created", "children_created", "status", "retry_count", "retry_budget",
    "remote_parent_id", "last_error", "error_history", "blueprint", "rollback_reason",
    "started_epoch", "completed_epoch",
}
_JSON_JOB_COLUMNS = {"error_history", "blueprint"}

_REQUEST_COLUMNS = {
    "priority", "status", "process_after", "attempts", "max_attempts", "last_error", "result", "payload",
}
_JSON_REQUEST_COLUMNS = {"result", "payload"}


def _jitter(base: float) -> float:
    return base * (0.8 + 0.4 * random.random())


def _to_json(obj: Any) -> Optional[str]:
    if obj is None:
        return None
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def _from_json(s: Optional[str]) -> Optional[Any]:
    if not s:
        return None
    try:
        return json.loads(s)
    except ValueError:
        logger.warning(f"Discarding unparseable JSON column value: {s[:80]!r}")
        return None


def _db_value(v: Any) -> Any:
    if isinstance(v, (JobStatus, SlotStatus, EntityKind, QueueStatus)):
        return v.value
    if isinstance(v, bool):
        return 1 if v else 0
    return v


def _in_clause(prefix: str, values: Iterable[Any]) -> tuple[str, Dict[str, Any]]:
    params = {f"{prefix}{i}": _db_value(v) for i, v in enumerate(values)}
    return ",".join(f":{k}" for k in params), params


class SlotNotFoundError(LookupError):
    pass


def _retry_sql(retries: int = 5, base_sleep: float = 0.03, max_sleep: float = 0.5) -> Callable:
    def deco(fn: Callable) -> Callable:
        @wraps(fn)
        def wrapper(self, *args, **kwargs):
            state = self._cb[fn.__name__]
            now = time.time()
            if state["open_until"] and now < state["open_until"]:
                raise OperationalError("circuit_open", None, None)
            last_exc: Optional[Exception] = None
            for i in range(retries):
                t0 = time.perf_counter()
                try:
                    DB_OPS.labels(fn.__name__).inc()
                    out = fn(self, *args, **kwargs)
                    DB_LAT.labels(fn.__name__).observe(time.perf_counter() - t0)
                    state["n"] = 0
                    return out
                except OperationalError as e:
                    last_exc = e
                    DB_ERRORS.labels(fn.__name__).inc()
                    time.sleep(min(max_sleep, _jitter(base_sleep * (2 ** i))))
                except Exception:
                    DB_ERRORS.labels(fn.__name__).inc()
                    raise
            state["n"] += 1
            if state["n"] >= 3:
                state["open_until"] = time.time() + 2.0
            assert last_exc is not None
            raise last_exc
        return wrapper
    return deco


class Store:
    """SQLite-backed persistence for jobs, slots, credentials, rate budgets and the deferred queue."""

    SCHEMA_VERSION = 1

    def __init__(self, path: str, clock: Optional[Clock] = None):
        self.path = path
        self.clock = clock or RealClock()
        if path == ":memory:":
            self.eng: Engine = create_engine(
                "sqlite://",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            self.eng = create_engine(
                f"sqlite:///{path}",
                connect_args={"check_same_thread": False, "timeout": 30},
                pool_pre_ping=True,
            )
        self._cb: defaultdict = defaultdict(lambda: {"n": 0, "open_until": 0.0})
        # SQLite allows one writer; serialize in-process writers so read-then-write
        # transactions never hit a lock upgrade race.
        self._write_lock = threading.RLock()
        self._init_db()

    def close(self) -> None:
        self.eng.dispose()

    def _init_db(self) -> None:
        with self.eng.begin() as c:
            if self.path != ":memory:":
                c.exec_driver_sql("PRAGMA journal_mode=WAL;")
            c.exec_driver_sql("PRAGMA synchronous=NORMAL;")
            c.exec_driver_sql("PRAGMA foreign_keys=ON;")
            c.exec_driver_sql("PRAGMA busy_timeout=30000;")
            c.exec_driver_sql("CREATE TABLE IF NOT EXISTS schema_version(version INTEGER NOT NULL);")
            cur = c.execute(text("SELECT version FROM schema_version")).fetchone()
            if not cur:
                c.execute(text("INSERT INTO schema_version(version) VALUES (:v)"), {"v": self.SCHEMA_VERSION})
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS jobs(
                id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                target TEXT NOT NULL,
                label TEXT NOT NULL DEFAULT '',
                requested_parents INTEGER NOT NULL CHECK(requested_parents >= 0),
                requested_children INTEGER NOT NULL CHECK(requested_children >= 0),
                parents_created INTEGER NOT NULL DEFAULT 0,
                children_created INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL CHECK(status IN ('pending','in_progress','completed','failed','rolled_back')),
                retry_count INTEGER NOT NULL DEFAULT 0,
                retry_budget INTEGER NOT NULL DEFAULT 5,
                remote_parent_id TEXT,
                last_error TEXT,
                error_history TEXT,
                blueprint TEXT,
                rollback_reason TEXT,
                created_epoch REAL NOT NULL,
                started_epoch REAL,
                completed_epoch REAL,
                updated_epoch REAL NOT NULL
              );
            """)
            c.exec_driver_sql("CREATE INDEX IF NOT EXISTS idx_jobs_owner ON jobs(owner, created_epoch DESC);")
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS slots(
                job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
                slot_number INTEGER NOT NULL CHECK(slot_number >= 1),
                kind TEXT NOT NULL CHECK(kind IN ('parent','child')),
                status TEXT NOT NULL CHECK(status IN ('pending','created','failed','rolled_back')),
                remote_id TEXT,
                paired_remote_id TEXT,
                label TEXT NOT NULL DEFAULT '',
                error_message TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                updated_epoch REAL NOT NULL,
                PRIMARY KEY(job_id, kind, slot_number)
              );
            """)
            c.exec_driver_sql("CREATE INDEX IF NOT EXISTS idx_slots_status ON slots(job_id, kind, status);")
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS credentials(
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                secret TEXT NOT NULL,
                call_limit INTEGER NOT NULL,
                usage INTEGER NOT NULL DEFAULT 0,
                reset_epoch REAL,
                active INTEGER NOT NULL DEFAULT 1
              );
            """)
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS rate_limits(
                owner TEXT NOT NULL,
                resource TEXT NOT NULL,
                calls_used INTEGER NOT NULL DEFAULT 0,
                call_limit INTEGER NOT NULL,
                usage_pct REAL NOT NULL DEFAULT 0,
                reset_epoch REAL,
                updated_epoch REAL NOT NULL,
                PRIMARY KEY(owner, resource)
              );
            """)
            c.exec_driver_sql("""
              CREATE TABLE IF NOT EXISTS request_queue(
                id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                resource TEXT NOT NULL,
                action_type TEXT NOT NULL,
                payload TEXT,
                priority INTEGER NOT NULL DEFAULT 5,
                status TEXT NOT NULL CHECK(status IN ('queued','processing','completed','failed')),
                process_after REAL NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 3,
                last_error TEXT,
                result TEXT,
                dedup_key TEXT,
                created_epoch REAL NOT NULL,
                updated_epoch REAL NOT NULL
              );
            """)
            c.exec_driver_sql(
                "CREATE INDEX IF NOT EXISTS idx_queue_ready ON request_queue(status, process_after, priority, created_epoch);"
            )
            c.exec_driver_sql("CREATE INDEX IF NOT EXISTS idx_queue_owner ON request_queue(owner, status);")
            c.exec_driver_sql("CREATE INDEX IF NOT EXISTS idx_queue_dedup ON request_queue(dedup_key, status);")

    @contextmanager
    def _begin(self):
        with self._write_lock:
            with self.eng.begin() as conn:
                yield conn

    @contextmanager
    def _read(self):
        with self.eng.connect() as conn:
            yield conn

    def _now(self) -> float:
        return self.clock.time()

    # ------------------------------------------------------------------
    # Jobs & slots
    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_job(row: Any) -> Job:
        m = row._mapping
        return Job(
            id=m["id"],
            owner=m["owner"],
            target=m["target"],
            label=m["label"] or "",
            requested_parents=int(m["requested_parents"]),
            requested_children=int(m["requested_children"]),
            parents_created=int(m["parents_created"]),
            children_created=int(m["children_created"]),
            status=JobStatus(m["status"]),
            retry_count=int(m["retry_count"]),
            retry_budget=int(m["retry_budget"]),
            remote_parent_id=m["remote_parent_id"],
            last_error=m["last_error"],
            error_history=_from_json(m["error_history"]) or [],
            blueprint=_from_json(m["blueprint"]) or {},
            rollback_reason=m["rollback_reason"],
            created_at=m["created_epoch"],
            started_at=m["started_epoch"],
            completed_at=m["completed_epoch"],
            updated_at=m["updated_epoch"],
        )

    @staticmethod
    def _row_to_slot(row: Any) -> Slot:
        m = row._mapping
        return Slot(
            job_id=m["job_id"],
            slot_number=int(m["slot_number"]),
            kind=EntityKind(m["kind"]),
            status=SlotStatus(m["status"]),
            remote_id=m["remote_id"],
            paired_remote_id=m["paired_remote_id"],
            label=m["label"] or "",
            error_message=m["error_message"],
            retry_count=int(m["retry_count"]),
            updated_at=m["updated_epoch"],
        )

    @_retry_sql()
    def insert_job(self, job: Job, slots: Iterable[Slot]) -> None:
        now = self._now()
        with self._begin() as c:
            c.execute(text("""
              INSERT INTO jobs
              (id, owner, target, label, requested_parents, requested_children, parents_created, children_created,
               status, retry_count, retry_budget, remote_parent_id, last_error, error_history, blueprint,
               rollback_reason, created_epoch, started_epoch, completed_epoch, updated_epoch)
              VALUES
              (:id,:owner,:target,:label,:rp,:rc,:pc,:cc,:st,:retry,:budget,:rpid,:lerr,:hist,:bp,:rbr,:ce,:se,:coe,:ue)
            """), {
                "id": job.id,
                "owner": job.owner,
                "target": job.target,
                "label": job.label,
                "rp": job.requested_parents,
                "rc": job.requested_children,
                "pc": job.parents_created,
                "cc": job.children_created,
                "st": job.status.value,
                "retry": job.retry_count,
                "budget": job.retry_budget,
                "rpid": job.remote_parent_id,
                "lerr": job.last_error,
                "hist": _to_json(job.error_history or []),
                "bp": _to_json(job.blueprint or {}),
                "rbr": job.rollback_reason,
                "ce": job.created_at or now,
                "se": job.started_at,
                "coe": job.completed_at,
                "ue": now,
            })
            rows = [{
                "job": s.job_id,
                "n": s.slot_number,
                "kind": s.kind.value,
                "st": s.status.value,
                "label": s.label,
                "ue": now,
            } for s in slots]
            if rows:
                c.execute(text("""
                  INSERT INTO slots(job_id, slot_number, kind, status, label, updated_epoch)
                  VALUES (:job,:n,:kind,:st,:label,:ue)
                """), rows)

    @_retry_sql()
    def get_job(self, job_id: str) -> Optional[Job]:
        with self._read() as c:
            row = c.execute(text("SELECT * FROM jobs WHERE id=:id"), {"id": job_id}).fetchone()
        return self._row_to_job(row) if row else None

    @_retry_sql()
    def list_jobs(self, owner: Optional[str] = None, status: Optional[JobStatus] = None, limit: int = 100) -> List[Job]:
        sql = "SELECT * FROM jobs WHERE 1=1"
        params: Dict[str, Any] = {"lim": int(limit)}
        if owner:
            sql += " AND owner=:owner"
            params["owner"] = owner
        if status:
            sql += " AND status=:st"
            params["st"] = _db_value(status)
        sql += " ORDER BY created_epoch DESC LIMIT :lim"
        with self._read() as c:
            rows = c.execute(text(sql), params).fetchall()
        return [self._row_to_job(r) for r in rows]

    @_retry_sql()
    def update_job(self, job_id: str, **fields: Any) -> None:
        unknown = set(fields) - _JOB_COLUMNS
        if unknown:
            raise ValueError(f"Unknown job columns: {', '.join(sorted(unknown))}")
        if not fields:
            return
        params: Dict[str, Any] = {"id": job_id, "ue": self._now()}
        sets = []
        for k, v in fields.items():
            sets.append(f"{k}=:{k}")
            params[k] = _to_json(v) if k in _JSON_JOB_COLUMNS else _db_value(v)
        with self._begin() as c:
            c.execute(text(f"UPDATE jobs SET {', '.join(sets)}, updated_epoch=:ue WHERE id=:id"), params)

    @_retry_sql()
    def transition_job(
        self,
        job_id: str,
        allowed_from: Iterable[JobStatus],
        to_status: JobStatus,
        **fields: Any,
    ) -> bool:
        """Move a job to ``to_status`` only if it is currently in one of ``allowed_from``."""
        unknown = set(fields) - _JOB_COLUMNS
        if unknown:
            raise ValueError(f"Unknown job columns: {', '.join(sorted(unknown))}")
        in_sql, params = _in_clause("f", allowed_from)
        params.update({"id": job_id, "to": to_status.value, "ue": self._now()})
        sets = ["status=:to", "updated_epoch=:ue"]
        for k, v in fields.items():
            sets.append(f"{k}=:{k}")
            params[k] = _to_json(v) if k in _JSON_JOB_COLUMNS else _db_value(v)
        with self._begin() as c:
            res = c.execute(
                text(f"UPDATE jobs SET {', '.join(sets)} WHERE id=:id AND status IN ({in_sql})"),
                params,
            )
        return res.rowcount == 1

    @_retry_sql()
    def append_job_error(self, job_id: str, entry: Dict[str, Any], increment_retry: bool = True) -> Optional[Job]:
        with self._begin() as c:
            row = c.execute(text("SELECT * FROM jobs WHERE id=:id"), {"id": job_id}).fetchone()
            if not row:
                return None
            job = self._row_to_job(row)
            history = list(job.error_history) + [entry]
            c.execute(text("""
              UPDATE jobs
              SET retry_count = retry_count + :inc, last_error=:err, error_history=:hist, updated_epoch=:ue
              WHERE id=:id
            """), {
                "inc": 1 if increment_retry else 0,
                "err": entry.get("message"),
                "hist": _to_json(history),
                "ue": self._now(),
                "id": job_id,
            })
            row = c.execute(text("SELECT * FROM jobs WHERE id=:id"), {"id": job_id}).fetchone()
        return self._row_to_job(row)

    @_retry_sql()
    def get_slot(self, job_id: str, kind: EntityKind, slot_number: int) -> Optional[Slot]:
        with self._read() as c:
            row = c.execute(
                text("SELECT * FROM slots WHERE job_id=:j AND kind=:k AND slot_number=:n"),
                {"j": job_id, "k": kind.value, "n": int(slot_number)},
            ).fetchone()
        return self._row_to_slot(row) if row else None

    @_retry_sql()
    def list_slots(
        self,
        job_id: str,
        kind: Optional[EntityKind] = None,
        statuses: Optional[Iterable[SlotStatus]] = None,
    ) -> List[Slot]:
        sql = "SELECT * FROM slots WHERE job_id=:j"
        params: Dict[str, Any] = {"j": job_id}
        if kind is not None:
            sql += " AND kind=:k"
            params["k"] = kind.value
        if statuses is not None:
            in_sql, in_params = _in_clause("s", statuses)
            if not in_params:
                return []
            sql += f" AND status IN ({in_sql})"
            params.update(in_params)
        sql += " ORDER BY kind, slot_number"
        with self._read() as c:
            rows = c.execute(text(sql), params).fetchall()
        return [self._row_to_slot(r) for r in rows]

    @_retry_sql()
    def slot_counts(self, job_id: str) -> Dict[str, Dict[str, int]]:
        out: Dict[str, Dict[str, int]] = {
            k.value: {s.value: 0 for s in SlotStatus} for k in EntityKind
        }
        with self._read() as c:
            rows = c.execute(text("""
              SELECT kind, status, COUNT(*) AS n FROM slots WHERE job_id=:j GROUP BY kind, status
            """), {"j": job_id}).fetchall()
        for r in rows:
            out[r.kind][r.status] = int(r.n)
        return out

    @_retry_sql()
    def record_slot_created(
        self,
        job_id: str,
        kind: EntityKind,
        slot_number: int,
        remote_id: Optional[str],
        paired_remote_id: Optional[str] = None,
    ) -> bool:
        """Mark a slot created and bump the job counter in one transaction.

        Returns False (and changes nothing) when the slot is already created or rolled back,
        or when the kind's created count has reached the requested count.
        """
        counter, requested = _COUNTER_COLUMNS[kind]
        params = {"j": job_id, "k": kind.value, "n": int(slot_number)}
        with self._begin() as c:
            slot = c.execute(
                text("SELECT status FROM slots WHERE job_id=:j AND kind=:k AND slot_number=:n"), params
            ).fetchone()
            if slot is None:
                raise SlotNotFoundError(f"Slot {kind.value}#{slot_number} not found for job {job_id}")
            if slot.status not in (SlotStatus.PENDING.value, SlotStatus.FAILED.value):
                return False
            limit = c.execute(text(f"SELECT {requested} FROM jobs WHERE id=:j"), {"j": job_id}).scalar()
            created = c.execute(text(
                "SELECT COUNT(*) FROM slots WHERE job_id=:j AND kind=:k AND status='created'"
            ), params).scalar()
            if int(created or 0) >= int(limit or 0):
                logger.warning(
                    f"Refusing to record {kind.value}#{slot_number} for job {job_id}: "
                    f"{created}/{limit} already created"
                )
                return False
            now = self._now()
            c.execute(text("""
              UPDATE slots
              SET status='created', remote_id=:rid, paired_remote_id=:pid, error_message=NULL, updated_epoch=:ue
              WHERE job_id=:j AND kind=:k AND slot_number=:n
            """), {**params, "rid": remote_id, "pid": paired_remote_id, "ue": now})
            c.execute(
                text(f"UPDATE jobs SET {counter} = {counter} + 1, updated_epoch=:ue WHERE id=:j"),
                {"j": job_id, "ue": now},
            )
        return True

    @_retry_sql()
    def record_slot_failed(
        self,
        job_id: str,
        kind: EntityKind,
        slot_number: int,
        error: str,
        orphan_id: Optional[str] = None,
    ) -> bool:
        """Mark a slot failed. ``orphan_id`` is a parent that was created for it and could not be deleted."""
        with self._begin() as c:
            res = c.execute(text("""
              UPDATE slots
              SET status='failed', remote_id=:rid, error_message=:err, retry_count = retry_count + 1,
                  updated_epoch=:ue
              WHERE job_id=:j AND kind=:k AND slot_number=:n AND status IN ('pending','failed')
            """), {
                "j": job_id, "k": kind.value, "n": int(slot_number), "rid": orphan_id, "err": error,
                "ue": self._now(),
            })
        return res.rowcount == 1

    @_retry_sql()
    def clear_slot_orphan(self, job_id: str, kind: EntityKind, slot_number: int) -> bool:
        with self._begin() as c:
            res = c.execute(text("""
              UPDATE slots SET remote_id=NULL, updated_epoch=:ue
              WHERE job_id=:j AND kind=:k AND slot_number=:n AND status='failed' AND remote_id IS NOT NULL
            """), {"j": job_id, "k": kind.value, "n": int(slot_number), "ue": self._now()})
        return res.rowcount == 1

    @_retry_sql()
    def record_slot_rolled_back(self, job_id: str, kind: EntityKind, slot_number: int) -> bool:
        counter, _ = _COUNTER_COLUMNS[kind]
        params = {"j": job_id, "k": kind.value, "n": int(slot_number), "ue": self._now()}
        with self._begin() as c:
            res = c.execute(text("""
              UPDATE slots SET status='rolled_back', error_message=NULL, updated_epoch=:ue
              WHERE job_id=:j AND kind=:k AND slot_number=:n AND status='created'
            """), params)
            if res.rowcount != 1:
                return False
            c.execute(
                text(f"UPDATE jobs SET {counter} = MAX(0, {counter} - 1), updated_epoch=:ue WHERE id=:j"),
                {"j": job_id, "ue": params["ue"]},
            )
        return True

    @_retry_sql()
    def set_slot_error(self, job_id: str, kind: EntityKind, slot_number: int, error: Optional[str]) -> None:
        with self._begin() as c:
            c.execute(text("""
              UPDATE slots SET error_message=:err, updated_epoch=:ue
              WHERE job_id=:j AND kind=:k AND slot_number=:n
            """), {"j": job_id, "k": kind.value, "n": int(slot_number), "err": error, "ue": self._now()})

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_credential(row: Any) -> Credential:
        m = row._mapping
        return Credential(
            id=m["id"],
            name=m["name"],
            secret=m["secret"],
            call_limit=int(m["call_limit"]),
            usage=int(m["usage"]),
            reset_at=m["reset_epoch"],
            active=bool(m["active"]),
        )

    @_retry_sql()
    def upsert_credential(self, cred: Credential) -> None:
        with self._begin() as c:
            c.execute(text("""
              INSERT INTO credentials(id, name, secret, call_limit, usage, reset_epoch, active)
              VALUES (:id,:name,:secret,:lim,:usage,:reset,:active)
              ON CONFLICT(id) DO UPDATE SET
                name=excluded.name, secret=excluded.secret, call_limit=excluded.call_limit,
                active=excluded.active
            """), {
                "id": cred.id,
                "name": cred.name,
                "secret": cred.secret,
                "lim": cred.call_limit,
                "usage": cred.usage,
                "reset": cred.reset_at,
                "active": 1 if cred.active else 0,
            })

    @_retry_sql()
    def list_credentials(self, active_only: bool = False) -> List[Credential]:
        sql = "SELECT * FROM credentials"
        if active_only:
            sql += " WHERE active=1"
        sql += " ORDER BY id"
        with self._read() as c:
            rows = c.execute(text(sql)).fetchall()
        return [self._row_to_credential(r) for r in rows]

    @_retry_sql()
    def save_credential_usage(self, cred_id: str, usage: int, reset_at: Optional[float]) -> None:
        with self._begin() as c:
            c.execute(
                text("UPDATE credentials SET usage=:u, reset_epoch=:r WHERE id=:id"),
                {"u": int(usage), "r": reset_at, "id": cred_id},
            )

    @_retry_sql()
    def set_credential_active(self, cred_id: str, active: bool) -> bool:
        with self._begin() as c:
            res = c.execute(
                text("UPDATE credentials SET active=:a WHERE id=:id"),
                {"a": 1 if active else 0, "id": cred_id},
            )
        return res.rowcount == 1

    # ------------------------------------------------------------------
    # Rate budgets
    # ------------------------------------------------------------------
    @_retry_sql()
    def get_rate_limit(self, owner: str, resource: str) -> Optional[Dict[str, Any]]:
        with self._read() as c:
            row = c.execute(
                text("SELECT * FROM rate_limits WHERE owner=:o AND resource=:r"),
                {"o": owner, "r": resource},
            ).fetchone()
        return dict(row._mapping) if row else None

    @_retry_sql()
    def save_rate_limit(
        self,
        owner: str,
        resource: str,
        *,
        calls_used: int,
        call_limit: int,
        usage_pct: float,
        reset_at: Optional[float],
    ) -> None:
        with self._begin() as c:
            c.execute(text("""
              INSERT INTO rate_limits(owner, resource, calls_used, call_limit, usage_pct, reset_epoch, updated_epoch)
              VALUES (:o,:r,:used,:lim,:pct,:reset,:ue)
              ON CONFLICT(owner, resource) DO UPDATE SET
                calls_used=excluded.calls_used, call_limit=excluded.call_limit, usage_pct=excluded.usage_pct,
                reset_epoch=excluded.reset_epoch, updated_epoch=excluded.updated_epoch
            """), {
                "o": owner,
                "r": resource,
                "used": int(calls_used),
                "lim": int(call_limit),
                "pct": float(usage_pct),
                "reset": reset_at,
                "ue": self._now(),
            })

    # ------------------------------------------------------------------
    # Deferred request queue
    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_request(row: Any) -> QueuedRequest:
        m = row._mapping
        return QueuedRequest(
            id=m["id"],
            owner=m["owner"],
            resource=m["resource"],
            action_type=m["action_type"],
            payload=_from_json(m["payload"]) or {},
            priority=int(m["priority"]),
            status=QueueStatus(m["status"]),
            process_after=float(m["process_after"]),
            attempts=int(m["attempts"]),
            max_attempts=int(m["max_attempts"]),
            last_error=m["last_error"],
            result=_from_json(m["result"]),
            dedup_key=m["dedup_key"],
            created_at=m["created_epoch"],
            updated_at=m["updated_epoch"],
        )

    @_retry_sql()
    def insert_request(self, req: QueuedRequest) -> None:
        now = self._now()
        with self._begin() as c:
            c.execute(text("""
              INSERT INTO request_queue
              (id, owner, resource, action_type, payload, priority, status, process_after, attempts, max_attempts,
               last_error, result, dedup_key, created_epoch, updated_epoch)
              VALUES (:id,:o,:r,:a,:p,:prio,:st,:pa,:att,:max,:err,:res,:dk,:ce,:ue)
            """), {
                "id": req.id,
                "o": req.owner,
                "r": req.resource,
                "a": req.action_type,
                "p": _to_json(req.payload or {}),
                "prio": int(req.priority),
                "st": req.status.value,
                "pa": float(req.process_after),
                "att": int(req.attempts),
                "max": int(req.max_attempts),
                "err": req.last_error,
                "res": _to_json(req.result),
                "dk": req.dedup_key,
                "ce": req.created_at or now,
                "ue": now,
            })

    @_retry_sql()
    def get_request(self, request_id: str) -> Optional[QueuedRequest]:
        with self._read() as c:
            row = c.execute(text("SELECT * FROM request_queue WHERE id=:id"), {"id": request_id}).fetchone()
        return self._row_to_request(row) if row else None

    @_retry_sql()
    def ready_requests(self, now: float, limit: int) -> List[QueuedRequest]:
        with self._read() as c:
            rows = c.execute(text("""
              SELECT * FROM request_queue
              WHERE status='queued' AND process_after <= :now AND attempts < max_attempts
              ORDER BY priority ASC, created_epoch ASC, id ASC
              LIMIT :lim
            """), {"now": float(now), "lim": int(limit)}).fetchall()
        return [self._row_to_request(r) for r in rows]

    @_retry_sql()
    def claim_request(self, request_id: str) -> Optional[QueuedRequest]:
        """queued -> processing, counting the attempt. None if another worker got there first."""
        with self._begin() as c:
            res = c.execute(text("""
              UPDATE request_queue SET status='processing', attempts = attempts + 1, updated_epoch=:ue
              WHERE id=:id AND status='queued'
            """), {"id": request_id, "ue": self._now()})
            if res.rowcount != 1:
                return None
            row = c.execute(text("SELECT * FROM request_queue WHERE id=:id"), {"id": request_id}).fetchone()
        return self._row_to_request(row)

    @_retry_sql()
    def update_request(self, request_id: str, **fields: Any) -> None:
        unknown = set(fields) - _REQUEST_COLUMNS
        if unknown:
            raise ValueError(f"Unknown queue columns: {', '.join(sorted(unknown))}")
        params: Dict[str, Any] = {"id": request_id, "ue": self._now()}
        sets = []
        for k, v in fields.items():
            sets.append(f"{k}=:{k}")
            params[k] = _to_json(v) if k in _JSON_REQUEST_COLUMNS else _db_value(v)
        with self._begin() as c:
            c.execute(text(f"UPDATE request_queue SET {', '.join(sets)}, updated_epoch=:ue WHERE id=:id"), params)

    @_retry_sql()
    def list_requests(
        self,
        owner: Optional[str] = None,
        statuses: Optional[Iterable[QueueStatus]] = None,
        limit: int = 500,
    ) -> List[QueuedRequest]:
        sql = "SELECT * FROM request_queue WHERE 1=1"
        params: Dict[str, Any] = {"lim": int(limit)}
        if owner:
            sql += " AND owner=:o"
            params["o"] = owner
        if statuses is not None:
            in_sql, in_params = _in_clause("s", statuses)
            if not in_params:
                return []
            sql += f" AND status IN ({in_sql})"
            params.update(in_params)
        sql += " ORDER BY priority ASC, created_epoch ASC, id ASC LIMIT :lim"
        with self._read() as c:
            rows = c.execute(text(sql), params).fetchall()
        return [self._row_to_request(r) for r in rows]

    @_retry_sql()
    def find_active_request(self, dedup_key: str) -> Optional[QueuedRequest]:
        with self._read() as c:
            row = c.execute(text("""
              SELECT * FROM request_queue
              WHERE dedup_key=:dk AND status IN ('queued','processing')
              ORDER BY created_epoch ASC LIMIT 1
            """), {"dk": dedup_key}).fetchone()
        return self._row_to_request(row) if row else None

    @_retry_sql()
    def purge_requests(self, before: float) -> int:
        with self._begin() as c:
            res = c.execute(text("""
              DELETE FROM request_queue WHERE status IN ('completed','failed') AND updated_epoch < :b
            """), {"b": float(before)})
        return int(res.rowcount or 0)


__all__ = ["Store", "SlotNotFoundError"]
