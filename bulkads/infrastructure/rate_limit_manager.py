from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from ..config import RateSettings
from .storage import Store
from .utils import Clock, RealClock

logger = logging.getLogger(__name__)

BUC_HEADER = "x-business-use-case-usage"
AD_ACCOUNT_HEADER = "x-ad-account-usage"
APP_USAGE_HEADER = "x-app-usage"


@dataclass
class RateStatus:
    allowed: bool
    reset_at: Optional[float]
    usage_pct: float = 0.0
    calls_used: int = 0
    call_limit: int = 0
    reason: str = ""


@dataclass
class UsageSnapshot:
    usage_pct: float
    reset_in_seconds: float = 0.0
    source: str = ""


def _lower_keys(headers: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    return {str(k).lower(): v for k, v in (headers or {}).items()}


def _load_header(raw: Any) -> Any:
    if isinstance(raw, (dict, list)):
        return raw
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable usage header: {str(raw)[:120]}")
        return None


def _pct(entry: Dict[str, Any], *keys: str) -> float:
    vals = []
    for k in keys:
        try:
            vals.append(float(entry.get(k) or 0.0))
        except (TypeError, ValueError):
            continue
    return max(vals) if vals else 0.0


def parse_usage_headers(headers: Optional[Mapping[str, Any]], resource: Optional[str] = None) -> Optional[UsageSnapshot]:
    """Derive the worst reported usage percentage and reset time from Graph usage headers."""
    h = _lower_keys(headers)
    best: Optional[UsageSnapshot] = None

    def consider(pct: float, reset_in: float, source: str) -> None:
        nonlocal best
        if best is None or pct > best.usage_pct or (pct == best.usage_pct and reset_in > best.reset_in_seconds):
            best = UsageSnapshot(usage_pct=pct, reset_in_seconds=max(0.0, reset_in), source=source)

    buc = _load_header(h.get(BUC_HEADER))
    if isinstance(buc, dict):
        wanted = (resource or "").replace("act_", "")
        keys = [k for k in buc if k == wanted] or list(buc)
        for key in keys:
            entries = buc.get(key)
            if isinstance(entries, dict):
                entries = [entries]
            for entry in entries or []:
                if not isinstance(entry, dict):
                    continue
                pct = _pct(entry, "call_count", "total_cputime", "total_time", "acc_id_util_pct")
                # estimated_time_to_regain_access is reported in minutes
                regain = _pct(entry, "estimated_time_to_regain_access") * 60.0
                consider(pct, regain, BUC_HEADER)

    acc = _load_header(h.get(AD_ACCOUNT_HEADER))
    if isinstance(acc, dict):
        consider(_pct(acc, "acc_id_util_pct"), _pct(acc, "reset_time_duration"), AD_ACCOUNT_HEADER)

    app = _load_header(h.get(APP_USAGE_HEADER))
    if isinstance(app, dict):
        consider(_pct(app, "call_count", "total_cputime", "total_time"), 0.0, APP_USAGE_HEADER)

    return best


class RateBudgetTracker:
    """Advisory per (owner, resource) call budget.

    Counters live in the store so every worker in the process (and restarts) see
    the same window. A call is admitted while usage is under the threshold.
    """

    def __init__(self, store: Store, settings: Optional[RateSettings] = None, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.settings = settings or RateSettings()
        self.clock = clock or RealClock()
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}

    def _lock_for(self, owner: str, resource: str) -> threading.Lock:
        key = (owner, resource)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _load(self, owner: str, resource: str, now: float) -> Dict[str, Any]:
        row = self.store.get_rate_limit(owner, resource)
        if row is None:
            return {
                "calls_used": 0,
                "call_limit": self.settings.default_limit,
                "usage_pct": 0.0,
                "reset_epoch": None,
                "fresh": True,
            }
        state = dict(row)
        state["fresh"] = False
        reset_at = state.get("reset_epoch")
        if reset_at is not None and now >= float(reset_at):
            logger.debug(f"Rate window elapsed for {owner}/{resource}, resetting counters")
            state.update(calls_used=0, usage_pct=0.0, reset_epoch=None)
        return state

    def _save(self, owner: str, resource: str, state: Dict[str, Any]) -> None:
        self.store.save_rate_limit(
            owner,
            resource,
            calls_used=int(state["calls_used"]),
            call_limit=int(state["call_limit"]),
            usage_pct=float(state["usage_pct"]),
            reset_at=state.get("reset_epoch"),
        )

    def _status(self, state: Dict[str, Any], allowed: bool, reason: str = "") -> RateStatus:
        return RateStatus(
            allowed=allowed,
            reset_at=state.get("reset_epoch"),
            usage_pct=round(float(state["usage_pct"]), 2),
            calls_used=int(state["calls_used"]),
            call_limit=int(state["call_limit"]),
            reason=reason,
        )

    def _blocked(self, state: Dict[str, Any]) -> bool:
        return float(state["usage_pct"]) >= self.settings.threshold_pct

    def check_and_consume(self, owner: str, resource: str, calls: int = 1) -> RateStatus:
        now = self.clock.time()
        with self._lock_for(owner, resource):
            state = self._load(owner, resource, now)
            if self._blocked(state):
                if state.get("reset_epoch") is None:
                    state["reset_epoch"] = now + self.settings.window_seconds
                    self._save(owner, resource, state)
                reason = f"usage {state['usage_pct']:.0f}% >= {self.settings.threshold_pct:.0f}%"
                logger.info(f"Rate budget blocked for {owner}/{resource}: {reason}")
                return self._status(state, False, reason)
            state["calls_used"] = int(state["calls_used"]) + max(1, int(calls))
            limit = max(1, int(state["call_limit"]))
            state["usage_pct"] = max(float(state["usage_pct"]), state["calls_used"] / limit * 100.0)
            if state.get("reset_epoch") is None:
                state["reset_epoch"] = now + self.settings.window_seconds
            self._save(owner, resource, state)
            return self._status(state, True)

    def peek(self, owner: str, resource: str) -> RateStatus:
        """Admission check without consuming budget. Unknown pairs are allowed."""
        now = self.clock.time()
        with self._lock_for(owner, resource):
            state = self._load(owner, resource, now)
        if state["fresh"]:
            return self._status(state, True)
        if self._blocked(state):
            return self._status(state, False, f"usage {state['usage_pct']:.0f}%")
        return self._status(state, True)

    def update_from_headers(self, owner: str, resource: str, headers: Optional[Mapping[str, Any]]) -> Optional[RateStatus]:
        snapshot = parse_usage_headers(headers, resource)
        if snapshot is None:
            return None
        now = self.clock.time()
        with self._lock_for(owner, resource):
            state = self._load(owner, resource, now)
            limit = max(1, int(state["call_limit"]))
            state["usage_pct"] = snapshot.usage_pct
            state["calls_used"] = int(round(snapshot.usage_pct / 100.0 * limit))
            if snapshot.reset_in_seconds > 0:
                state["reset_epoch"] = now + snapshot.reset_in_seconds
            elif state.get("reset_epoch") is None:
                state["reset_epoch"] = now + self.settings.window_seconds
            self._save(owner, resource, state)
            if snapshot.usage_pct >= 95:
                logger.warning(f"Remote usage high for {owner}/{resource}: {snapshot.usage_pct:.0f}% ({snapshot.source})")
            blocked = self._blocked(state)
            return self._status(state, not blocked)

    def record_throttled(self, owner: str, resource: str, retry_after: Optional[float] = None) -> RateStatus:
        """The remote rejected a call for quota; treat the window as exhausted."""
        now = self.clock.time()
        with self._lock_for(owner, resource):
            state = self._load(owner, resource, now)
            state["usage_pct"] = 100.0
            state["calls_used"] = int(state["call_limit"])
            wait = retry_after if retry_after and retry_after > 0 else self.settings.window_seconds
            state["reset_epoch"] = max(float(state.get("reset_epoch") or 0.0), now + wait)
            self._save(owner, resource, state)
            logger.warning(f"Remote throttled {owner}/{resource}; blocked until {state['reset_epoch']:.0f}")
            return self._status(state, False, "throttled by remote")


__all__ = ["RateBudgetTracker", "RateStatus", "UsageSnapshot", "parse_usage_headers"]
