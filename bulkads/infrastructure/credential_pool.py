from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..config import CredentialSettings
from ..models import Credential
from .storage import Store
from .utils import Clock, RealClock

logger = logging.getLogger(__name__)


@dataclass
class CredentialLease:
    credential: Credential
    reserved: int
    released: bool = False

    @property
    def secret(self) -> str:
        return self.credential.secret

    @property
    def id(self) -> str:
        return self.credential.id


class CredentialPool:
    """Interchangeable API credentials, each with its own hourly call budget.

    ``acquire`` hands out the least-loaded credential still under the high-water
    mark and reserves the expected calls against it; ``release`` turns the
    reservation into recorded usage. All counter updates happen under one lock.
    """

    def __init__(
        self,
        store: Store,
        settings: Optional[CredentialSettings] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings or CredentialSettings()
        self.clock = clock or RealClock()
        self._lock = threading.Lock()
        self._reserved: Dict[str, int] = defaultdict(int)

    def add_credential(
        self,
        name: str,
        secret: str,
        call_limit: Optional[int] = None,
        cred_id: Optional[str] = None,
        active: bool = True,
    ) -> Credential:
        cred = Credential(
            id=cred_id or uuid.uuid4().hex,
            name=name,
            secret=secret,
            call_limit=int(call_limit or self.settings.call_limit),
            active=active,
        )
        self.store.upsert_credential(cred)
        logger.info(f"Registered credential {cred.name} ({cred.id}) limit={cred.call_limit}")
        return cred

    def has_credentials(self) -> bool:
        return bool(self.store.list_credentials())

    def _high_water(self, cred: Credential) -> float:
        return cred.call_limit * self.settings.high_water

    def _sweep_locked(self, creds: List[Credential], now: float) -> int:
        n = 0
        for cred in creds:
            if cred.reset_at is not None and now >= cred.reset_at:
                cred.usage = 0
                cred.reset_at = None
                self.store.save_credential_usage(cred.id, 0, None)
                n += 1
        return n

    def acquire(self, calls: int = 1) -> Optional[CredentialLease]:
        """Least-loaded active credential with spare capacity, or None when all are saturated."""
        calls = max(1, int(calls))
        with self._lock:
            now = self.clock.time()
            creds = self.store.list_credentials(active_only=True)
            self._sweep_locked(creds, now)
            candidates = []
            for cred in creds:
                effective = cred.usage + self._reserved[cred.id]
                if effective < self._high_water(cred):
                    candidates.append((effective, cred.id, cred))
            if not candidates:
                logger.info("No credential under the high-water mark; caller should defer")
                return None
            candidates.sort(key=lambda t: (t[0], t[1]))
            cred = candidates[0][2]
            self._reserved[cred.id] += calls
            logger.debug(f"Acquired credential {cred.name} usage={cred.usage} reserved={self._reserved[cred.id]}")
            return CredentialLease(credential=cred, reserved=calls)

    def release(self, lease: Optional[CredentialLease], calls_used: int) -> Optional[Credential]:
        if lease is None or lease.released:
            return None
        with self._lock:
            lease.released = True
            cred_id = lease.credential.id
            self._reserved[cred_id] = max(0, self._reserved[cred_id] - lease.reserved)
            current = next((c for c in self.store.list_credentials() if c.id == cred_id), None)
            if current is None:
                logger.warning(f"Released credential {cred_id} no longer exists")
                return None
            now = self.clock.time()
            current.usage += max(0, int(calls_used))
            if current.usage >= current.call_limit:
                current.reset_at = now + self.settings.window_seconds
                logger.warning(
                    f"Credential {current.name} exhausted ({current.usage}/{current.call_limit}); "
                    f"resets in {self.settings.window_seconds}s"
                )
            elif current.reset_at is None and current.usage > 0:
                current.reset_at = now + self.settings.window_seconds
            self.store.save_credential_usage(current.id, current.usage, current.reset_at)
            return current

    def sweep(self) -> int:
        """Zero the usage of every credential whose window has elapsed."""
        with self._lock:
            n = self._sweep_locked(self.store.list_credentials(), self.clock.time())
        if n:
            logger.info(f"Credential sweep reset {n} credential(s)")
        return n

    def mark_exhausted(self, cred_id: str, retry_after: Optional[float] = None) -> None:
        with self._lock:
            cred = next((c for c in self.store.list_credentials() if c.id == cred_id), None)
            if cred is None:
                return
            wait = retry_after if retry_after and retry_after > 0 else self.settings.window_seconds
            self.store.save_credential_usage(cred.id, cred.call_limit, self.clock.time() + wait)
        logger.warning(f"Credential {cred_id} marked exhausted for {wait:.0f}s")

    def deactivate(self, cred_id: str) -> bool:
        with self._lock:
            ok = self.store.set_credential_active(cred_id, False)
        if ok:
            logger.warning(f"Credential {cred_id} deactivated")
        return ok

    def status_summary(self) -> Dict[str, Any]:
        with self._lock:
            creds = self.store.list_credentials()
            reserved = dict(self._reserved)
        rows = []
        for cred in creds:
            rows.append({
                **cred.to_dict(),
                "usage_pct": cred.usage_pct(),
                "reserved": reserved.get(cred.id, 0),
                "available": cred.active and cred.usage + reserved.get(cred.id, 0) < self._high_water(cred),
            })
        return {
            "total": len(rows),
            "active": sum(1 for r in rows if r["active"]),
            "available": sum(1 for r in rows if r["available"]),
            "credentials": rows,
        }


__all__ = ["CredentialPool", "CredentialLease"]
