from __future__ import annotations

import os
import re
import threading
import time
from datetime import datetime, timezone
from typing import Optional

UTC = timezone.utc


# -----------------------
# Clock primitives
# -----------------------
class Clock:
    def now_utc(self) -> datetime:
        raise NotImplementedError

    def time(self) -> float:
        return self.now_utc().timestamp()

    def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class RealClock(Clock):
    def now_utc(self) -> datetime:
        return datetime.now(UTC)

    def time(self) -> float:
        return time.time()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class FixedClock(Clock):
    """Clock frozen at a given instant; only moves when told to.

    ``sleep`` advances the clock instead of blocking, so code that waits on
    windows or staggers can be exercised instantly.
    """

    def __init__(self, dt_utc: datetime):
        if dt_utc.tzinfo is None:
            dt_utc = dt_utc.replace(tzinfo=UTC)
        self._epoch = dt_utc.astimezone(UTC).timestamp()
        self._lock = threading.Lock()

    @staticmethod
    def from_env(var: str = "NOW_UTC") -> Optional["FixedClock"]:
        val = os.getenv(var)
        if not val:
            return None
        return FixedClock(parse_any_datetime(val))

    def now_utc(self) -> datetime:
        return datetime.fromtimestamp(self._epoch, tz=UTC)

    def time(self) -> float:
        return self._epoch

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._epoch += float(seconds)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self.advance(seconds)


def parse_any_datetime(s: str) -> datetime:
    s = s.strip()
    if re.fullmatch(r"\d{10}", s):
        return datetime.fromtimestamp(int(s), tz=UTC)
    if re.fullmatch(r"\d{13}", s):
        return datetime.fromtimestamp(int(s) / 1000.0, tz=UTC)
    s = s.replace("Z", "+00:00")
    try:
        dt = datetime.fromisoformat(s)
    except ValueError as e:
        raise ValueError(f"Invalid datetime: {s!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def default_clock() -> Clock:
    return FixedClock.from_env() or RealClock()


def iso(epoch: Optional[float]) -> Optional[str]:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, tz=UTC).replace(microsecond=0).isoformat()


# -----------------------
# Env helpers
# -----------------------
def getenv_f(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


def getenv_i(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


def getenv_b(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")


__all__ = [
    "Clock",
    "RealClock",
    "FixedClock",
    "parse_any_datetime",
    "default_clock",
    "iso",
    "getenv_f",
    "getenv_i",
    "getenv_b",
    "UTC",
]
