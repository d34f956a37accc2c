"""
BULKADS ENGINE
Bulk job execution

This package contains:
- job_tracker: durable job/slot ledger and failure decisions
- batch_orchestrator: atomic and high-throughput pair creation
- rollback_manager: compensating deletes
- service: public facade over the engine
"""

from .job_tracker import JobTracker, IdempotencyStatus
from .batch_orchestrator import BatchOrchestrator, PairSpec
from .rollback_manager import RollbackManager, RollbackDecision
from .service import BulkCreationService

__all__ = [
    'JobTracker', 'IdempotencyStatus',
    'BatchOrchestrator', 'PairSpec',
    'RollbackManager', 'RollbackDecision',
    'BulkCreationService',
]
