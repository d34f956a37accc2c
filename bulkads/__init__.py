"""
BULKADS
Bulk creation of paired ad entities with quota-aware batching

This package contains:
- engine: job tracking, batch orchestration, rollback and the service facade
- infrastructure: storage, rate budgets, credential pool, deferred queue, scheduler
- integrations: Graph API client and Slack alerts
"""

__version__ = "1.0.0"

from .config import EngineSettings, load_settings
from .engine.service import BulkCreationService

__all__ = ["BulkCreationService", "EngineSettings", "load_settings", "__version__"]
