"""
Bidirectional sync engine: workers, coordinator, origin tracking and reconciliation.
"""

from .errors import SyncError, SyncConfigurationError, SyncConnectionError, WorkerStartError
from .models import (
    Side, SyncDirection, WorkerState, CoordinatorState, ApplyOutcome,
    WorkerHealth, CollectionReport, ReconciliationReport
)
from .origin_tracker import OriginTracker, fingerprint
from .worker import SyncWorker, WorkerConfig
from .reconciliation import ReconciliationJob
from .coordinator import SyncCoordinator

__all__ = [
    "SyncError",
    "SyncConfigurationError",
    "SyncConnectionError",
    "WorkerStartError",
    "Side",
    "SyncDirection",
    "WorkerState",
    "CoordinatorState",
    "ApplyOutcome",
    "WorkerHealth",
    "CollectionReport",
    "ReconciliationReport",
    "OriginTracker",
    "fingerprint",
    "SyncWorker",
    "WorkerConfig",
    "ReconciliationJob",
    "SyncCoordinator",
]
