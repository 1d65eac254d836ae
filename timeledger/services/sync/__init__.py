from timeledger.services.sync.orchestrator import SyncOrchestrator, SyncRunResult
from timeledger.services.sync.reconciler import EntityReconciler, EntitySyncResult
from timeledger.services.sync.state import SyncStateStore


__all__ = [
    "EntityReconciler",
    "EntitySyncResult",
    "SyncOrchestrator",
    "SyncRunResult",
    "SyncStateStore",
]
