from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, Final, Optional

import yaml
from dotenv import load_dotenv

from .infrastructure.utils import getenv_f, getenv_i

logger: Final = logging.getLogger(__name__)

# Rate budget (per owner/resource)
RATE_BUDGET_THRESHOLD_PCT: Final[float] = getenv_f("RATE_BUDGET_THRESHOLD_PCT", 80.0)
RATE_WINDOW_SECONDS: Final[int] = getenv_i("RATE_WINDOW_SECONDS", 3600)
RATE_DEFAULT_LIMIT: Final[int] = getenv_i("RATE_DEFAULT_LIMIT", 200)

# Credential pool
CREDENTIAL_CALL_LIMIT: Final[int] = getenv_i("CREDENTIAL_CALL_LIMIT", 200)
CREDENTIAL_HIGH_WATER: Final[float] = getenv_f("CREDENTIAL_HIGH_WATER", 0.9)
CREDENTIAL_WINDOW_SECONDS: Final[int] = getenv_i("CREDENTIAL_WINDOW_SECONDS", 3600)

# Batch orchestration
BATCH_QUALITY_THRESHOLD_PCT: Final[float] = getenv_f("BATCH_QUALITY_THRESHOLD_PCT", 90.0)
TARGET_STAGGER_SECONDS: Final[float] = getenv_f("TARGET_STAGGER_SECONDS", 30.0)
PAIRS_PER_BATCH: Final[int] = getenv_i("PAIRS_PER_BATCH", 5)
MAX_BATCH_OPERATIONS: Final[int] = 50
SINGLE_CALL_TIMEOUT: Final[float] = getenv_f("SINGLE_CALL_TIMEOUT", 30.0)
BATCH_CALL_TIMEOUT: Final[float] = getenv_f("BATCH_CALL_TIMEOUT", 120.0)

# Deferred queue
QUEUE_TICK_SECONDS: Final[int] = getenv_i("QUEUE_TICK_SECONDS", 60)
QUEUE_BATCH_LIMIT: Final[int] = getenv_i("QUEUE_BATCH_LIMIT", 10)
QUEUE_DEFAULT_PRIORITY: Final[int] = 5
QUEUE_MAX_ATTEMPTS: Final[int] = getenv_i("QUEUE_MAX_ATTEMPTS", 3)
QUEUE_DEFAULT_DEFER_SECONDS: Final[int] = 3600

# Jobs
JOB_RETRY_BUDGET: Final[int] = getenv_i("JOB_RETRY_BUDGET", 5)

DEFAULT_SETTINGS_PATH: Final[str] = os.getenv("BULKADS_SETTINGS", "config/settings.yaml")
DEFAULT_DB_PATH: Final[str] = os.getenv("BULKADS_DB_PATH", "data/bulkads.sqlite")


@dataclass
class RateSettings:
    threshold_pct: float = RATE_BUDGET_THRESHOLD_PCT
    window_seconds: int = RATE_WINDOW_SECONDS
    default_limit: int = RATE_DEFAULT_LIMIT


@dataclass
class CredentialSettings:
    call_limit: int = CREDENTIAL_CALL_LIMIT
    high_water: float = CREDENTIAL_HIGH_WATER
    window_seconds: int = CREDENTIAL_WINDOW_SECONDS


@dataclass
class BatchSettings:
    quality_threshold_pct: float = BATCH_QUALITY_THRESHOLD_PCT
    pairs_per_batch: int = PAIRS_PER_BATCH
    single_call_timeout: float = SINGLE_CALL_TIMEOUT
    batch_call_timeout: float = BATCH_CALL_TIMEOUT
    target_stagger_seconds: float = TARGET_STAGGER_SECONDS


@dataclass
class QueueSettings:
    tick_seconds: int = QUEUE_TICK_SECONDS
    batch_limit: int = QUEUE_BATCH_LIMIT
    default_priority: int = QUEUE_DEFAULT_PRIORITY
    max_attempts: int = QUEUE_MAX_ATTEMPTS
    default_defer_seconds: int = QUEUE_DEFAULT_DEFER_SECONDS


@dataclass
class JobSettings:
    retry_budget: int = JOB_RETRY_BUDGET
    retry_base_delay: float = 1.0
    retry_max_delay: float = 60.0
    retry_jitter: bool = True
    max_workers: int = 4
    auto_rollback: bool = True


@dataclass
class EngineSettings:
    db_path: str = DEFAULT_DB_PATH
    api_version: str = "v19.0"
    rate: RateSettings = field(default_factory=RateSettings)
    credentials: CredentialSettings = field(default_factory=CredentialSettings)
    batch: BatchSettings = field(default_factory=BatchSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    jobs: JobSettings = field(default_factory=JobSettings)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "EngineSettings":
        raw = dict(raw or {})
        settings = cls()
        settings.db_path = str(raw.get("db_path") or settings.db_path)
        settings.api_version = str(raw.get("api_version") or settings.api_version)
        for section, klass in (
            ("rate", RateSettings),
            ("credentials", CredentialSettings),
            ("batch", BatchSettings),
            ("queue", QueueSettings),
            ("jobs", JobSettings),
        ):
            values = raw.get(section) or {}
            if not isinstance(values, dict):
                raise ValueError(f"Settings section `{section}` must be a mapping.")
            current = getattr(settings, section)
            known = set(asdict(current))
            unknown = sorted(set(values) - known)
            if unknown:
                logger.warning(f"Ignoring unknown keys in `{section}`: {', '.join(unknown)}")
            merged = {**asdict(current), **{k: v for k, v in values.items() if k in known}}
            setattr(settings, section, klass(**merged))
        return settings


def validate_settings(settings: EngineSettings) -> None:
    """Raise ValueError when a threshold is outside its usable range."""
    if not 0 < settings.rate.threshold_pct <= 100:
        raise ValueError("rate.threshold_pct must be within (0, 100].")
    if settings.rate.window_seconds <= 0 or settings.rate.default_limit <= 0:
        raise ValueError("rate.window_seconds and rate.default_limit must be positive.")
    if not 0 < settings.credentials.high_water <= 1:
        raise ValueError("credentials.high_water must be within (0, 1].")
    if settings.credentials.call_limit <= 0 or settings.credentials.window_seconds <= 0:
        raise ValueError("credentials.call_limit and credentials.window_seconds must be positive.")
    if not 0 <= settings.batch.quality_threshold_pct <= 100:
        raise ValueError("batch.quality_threshold_pct must be within [0, 100].")
    if not 1 <= settings.batch.pairs_per_batch <= MAX_BATCH_OPERATIONS // 2:
        raise ValueError(
            f"batch.pairs_per_batch must be between 1 and {MAX_BATCH_OPERATIONS // 2}."
        )
    if settings.batch.single_call_timeout <= 0 or settings.batch.batch_call_timeout <= 0:
        raise ValueError("batch timeouts must be positive.")
    if settings.batch.target_stagger_seconds < 0:
        raise ValueError("batch.target_stagger_seconds cannot be negative.")
    if settings.queue.tick_seconds <= 0 or settings.queue.batch_limit <= 0:
        raise ValueError("queue.tick_seconds and queue.batch_limit must be positive.")
    if settings.queue.max_attempts < 1:
        raise ValueError("queue.max_attempts must be at least 1.")
    if settings.jobs.retry_budget < 1:
        raise ValueError("jobs.retry_budget must be at least 1.")
    if settings.jobs.max_workers < 1:
        raise ValueError("jobs.max_workers must be at least 1.")


def load_settings(path: Optional[str] = None, env_file: Optional[str] = None) -> EngineSettings:
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()
    settings_path = Path(path or DEFAULT_SETTINGS_PATH)
    raw: Dict[str, Any] = {}
    if settings_path.exists():
        with settings_path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
        if not isinstance(raw, dict):
            raise ValueError("Settings payload must be a dictionary.")
        logger.debug(f"Loaded settings from {settings_path}")
    else:
        logger.debug(f"Settings file {settings_path} missing, using defaults")
    settings = EngineSettings.from_dict(raw)
    if os.getenv("BULKADS_DB_PATH"):
        settings.db_path = os.environ["BULKADS_DB_PATH"]
    if os.getenv("FB_API_VERSION"):
        settings.api_version = os.environ["FB_API_VERSION"]
    validate_settings(settings)
    return settings


__all__ = [
    "EngineSettings",
    "RateSettings",
    "CredentialSettings",
    "BatchSettings",
    "QueueSettings",
    "JobSettings",
    "load_settings",
    "validate_settings",
    "MAX_BATCH_OPERATIONS",
]
