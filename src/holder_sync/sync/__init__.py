"""Pool and bulk holder synchronization."""

from holder_sync.sync.coordinator import FetchResult, PoolSyncCoordinator
from holder_sync.sync.events import SyncEventRecorder
from holder_sync.sync.models import (
    BulkRunResult,
    HoldersStatus,
    NoHoldersFoundError,
    PoolSyncResult,
    SchedulerState,
    SchedulerStats,
    Severity,
    SyncEventType,
    SyncOutcome,
    SyncStep,
)
from holder_sync.sync.scheduler import BulkSyncScheduler

__all__ = [
    "BulkRunResult",
    "BulkSyncScheduler",
    "FetchResult",
    "HoldersStatus",
    "NoHoldersFoundError",
    "PoolSyncCoordinator",
    "PoolSyncResult",
    "SchedulerState",
    "SchedulerStats",
    "Severity",
    "SyncEventRecorder",
    "SyncEventType",
    "SyncOutcome",
    "SyncStep",
]
