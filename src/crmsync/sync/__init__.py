"""Bidirectional CRM sync engine.

Exports the service facade and the components it wires together.
"""

from src.crmsync.sync.audit import AuditTrail
from src.crmsync.sync.detector import ConflictDetector, classify_conflict, find_field_conflicts
from src.crmsync.sync.executor import SyncOperationExecutor
from src.crmsync.sync.preferences import PreferenceStore
from src.crmsync.sync.resolver import ConflictResolver, merge_snapshots
from src.crmsync.sync.rollback import RollbackCoordinator
from src.crmsync.sync.service import BidirectionalSyncService

__all__ = [
    "AuditTrail",
    "BidirectionalSyncService",
    "ConflictDetector",
    "ConflictResolver",
    "PreferenceStore",
    "RollbackCoordinator",
    "SyncOperationExecutor",
    "classify_conflict",
    "find_field_conflicts",
    "merge_snapshots",
]
