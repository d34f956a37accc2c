"""
BULKADS INFRASTRUCTURE
Persistence, budgets and background work

This package contains:
- storage: SQLite persistence for jobs, slots, credentials, rate budgets and the queue
- rate_limit_manager: per owner/resource call budget
- credential_pool: least-loaded credential selection
- request_queue: durable deferred request queue
- scheduler: background queue draining
- error_handling: error taxonomy and backoff
- utils: clocks and env helpers
"""

from .storage import Store
from .error_handling import (
    ErrorCategory, RemoteAPIError, RateLimitedError, JobNotFoundError, JobStateError,
    BackoffPolicy, RetryConfig, classify_error, is_not_found
)
from .utils import getenv_f, getenv_i, getenv_b, Clock, RealClock, FixedClock

__all__ = [
    'Store',
    'ErrorCategory', 'RemoteAPIError', 'RateLimitedError', 'JobNotFoundError', 'JobStateError',
    'BackoffPolicy', 'RetryConfig', 'classify_error', 'is_not_found',
    'getenv_f', 'getenv_i', 'getenv_b', 'Clock', 'RealClock', 'FixedClock'
]
