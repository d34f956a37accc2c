from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self is not ErrorCategory.PERMANENT


class RemoteAPIError(RuntimeError):
    """Error reported by (or while talking to) the remote ads API."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[int] = None,
        subcode: Optional[int] = None,
        http_status: Optional[int] = None,
        timed_out: bool = False,
        category: Optional[ErrorCategory] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.subcode = subcode
        self.http_status = http_status
        self.timed_out = timed_out
        self.payload = payload or {}
        self.category = category or classify_error(self)

    @classmethod
    def from_error_body(cls, error: Optional[Dict[str, Any]], http_status: Optional[int] = None) -> "RemoteAPIError":
        error = error or {}
        return cls(
            str(error.get("message") or error.get("error_user_msg") or f"HTTP {http_status}"),
            code=_as_int(error.get("code")),
            subcode=_as_int(error.get("error_subcode")),
            http_status=http_status,
            payload=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "subcode": self.subcode,
            "http_status": self.http_status,
            "category": self.category.value,
            "timed_out": self.timed_out,
        }


class RateLimitedError(RemoteAPIError):
    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs: Any) -> None:
        kwargs.setdefault("category", ErrorCategory.RATE_LIMIT)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class JobNotFoundError(KeyError):
    pass


class JobStateError(RuntimeError):
    pass


# Graph API error codes
RATE_LIMIT_CODES = frozenset({4, 17, 32, 613, 80004} | set(range(80000, 80015)))
PERMANENT_CODES = frozenset({10, 100, 102, 190, 803, 1487741, 2635})
TRANSIENT_CODES = frozenset({1, 2})
POLICY_SUBCODES = frozenset({1487741, 1885183, 2446289})
NOT_FOUND_SUBCODES = frozenset({33})

_RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "throttle", "request limit reached")
_PERMANENT_MARKERS = (
    "account disabled",
    "account suspended",
    "account closed",
    "account is disabled",
    "invalid token",
    "access token",
    "session has expired",
    "permission",
    "policy",
    "invalid parameter",
)
_TRANSIENT_MARKERS = ("timeout", "timed out", "econnreset", "econnaborted", "etimedout", "connection reset", "connection aborted", "temporarily unavailable")
_NOT_FOUND_MARKERS = ("does not exist", "not found", "invalid id", "unsupported get request")


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _error_fields(exc: Any) -> Tuple[str, Optional[int], Optional[int], Optional[int], bool]:
    if isinstance(exc, RemoteAPIError):
        return exc.message.lower(), exc.code, exc.subcode, exc.http_status, exc.timed_out
    if isinstance(exc, dict):
        return (
            str(exc.get("message") or "").lower(),
            _as_int(exc.get("code")),
            _as_int(exc.get("error_subcode")),
            _as_int(exc.get("http_status")),
            False,
        )
    msg = str(exc or "").lower()
    timed_out = isinstance(exc, TimeoutError)
    return msg, None, None, None, timed_out


def classify_error(exc: Any) -> ErrorCategory:
    """Map an exception or Graph error body onto the retry taxonomy."""
    msg, code, subcode, http_status, timed_out = _error_fields(exc)
    if timed_out:
        return ErrorCategory.TRANSIENT
    if code in RATE_LIMIT_CODES or http_status == 429 or any(m in msg for m in _RATE_LIMIT_MARKERS):
        return ErrorCategory.RATE_LIMIT
    if subcode in POLICY_SUBCODES:
        return ErrorCategory.PERMANENT
    if code in PERMANENT_CODES or (code is not None and 200 <= code <= 299):
        return ErrorCategory.PERMANENT
    if http_status in (401, 403):
        return ErrorCategory.PERMANENT
    if any(m in msg for m in _PERMANENT_MARKERS):
        return ErrorCategory.PERMANENT
    if code in TRANSIENT_CODES or code == 368:
        return ErrorCategory.TRANSIENT
    if http_status is not None and http_status >= 500:
        return ErrorCategory.TRANSIENT
    if isinstance(exc, (ConnectionError, TimeoutError)) or any(m in msg for m in _TRANSIENT_MARKERS):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.UNKNOWN


def is_not_found(exc: Any) -> bool:
    msg, code, subcode, http_status, _ = _error_fields(exc)
    if code == 100 and subcode in NOT_FOUND_SUBCODES:
        return True
    if code == 803 or http_status == 404:
        return True
    return any(m in msg for m in _NOT_FOUND_MARKERS)


@dataclass
class RetryConfig:
    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_ratio: float = 0.1


@dataclass
class BackoffPolicy:
    """Delay schedules for job-level retries and deferred-queue retries."""

    retry: RetryConfig = field(default_factory=RetryConfig)
    rate_limit_ladder: Tuple[float, ...] = (60.0, 180.0, 300.0)
    transient_ladder: Tuple[float, ...] = (5.0, 15.0, 30.0)
    unknown_ladder: Tuple[float, ...] = (15.0, 45.0, 90.0)

    def job_delay(self, attempt: int) -> float:
        attempt = max(1, attempt)
        delay = self.retry.initial_delay * (self.retry.exponential_base ** (attempt - 1))
        delay = min(delay, self.retry.max_delay)
        if self.retry.jitter:
            spread = delay * self.retry.jitter_ratio
            delay = delay + random.uniform(-spread, spread)
        return max(0.0, delay)

    def queue_delay(self, category: ErrorCategory, attempt: int) -> Optional[float]:
        """Delay before the next attempt, or None when the error must not be retried."""
        if category is ErrorCategory.PERMANENT:
            return None
        if category is ErrorCategory.RATE_LIMIT:
            ladder = self.rate_limit_ladder
        elif category is ErrorCategory.TRANSIENT:
            ladder = self.transient_ladder
        else:
            ladder = self.unknown_ladder
        idx = min(max(0, attempt - 1), len(ladder) - 1)
        return float(ladder[idx])


__all__ = [
    "ErrorCategory",
    "RemoteAPIError",
    "RateLimitedError",
    "JobNotFoundError",
    "JobStateError",
    "classify_error",
    "is_not_found",
    "RetryConfig",
    "BackoffPolicy",
]
