"""Result, state and event types for pool and bulk syncs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class SyncStep(str, Enum):
    """Steps of a single-pool sync, in order."""

    START = "start"
    FETCH_HOLDERS = "fetch_holders"
    RESOLVE_PRICE = "resolve_price"
    PROCESS_RECORDS = "process_records"
    PERSIST_SWAP = "persist_swap"
    UPDATE_METRICS = "update_metrics"
    DONE = "done"
    ERROR = "error"


class SyncOutcome(str, Enum):
    """Terminal outcome of a single-pool sync."""

    SUCCESS = "success"
    NO_HOLDERS = "no_holders"
    FAILED = "failed"
    SKIPPED = "skipped"
    IN_PROGRESS = "in_progress"


class SyncEventType(str, Enum):
    """Operator-visible event taxonomy."""

    PROVIDER_UNAVAILABLE = "provider_unavailable"
    NO_HOLDERS_FOUND = "no_holders_found"
    PRICE_UNRESOLVED = "price_unresolved"
    PERSISTENCE_FAILURE = "persistence_failure"
    BULK_RUN_SKIPPED = "bulk_run_skipped"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class HoldersStatus(str, Enum):
    """How trustworthy a stored holder count is."""

    SUCCESS = "success"
    UNKNOWN = "unknown"
    FAILURE = "failure"


class NoHoldersFoundError(Exception):
    """Raised when no provider returned any holder for a pool."""

    def __init__(self, pool_id: str, token_address: str, *, errors: dict[str, str] | None = None) -> None:
        super().__init__(f"No holders found for pool {pool_id} ({token_address})")
        self.pool_id = pool_id
        self.token_address = token_address
        self.errors = errors or {}


@dataclass
class PoolSyncResult:
    """Outcome of syncing one pool."""

    pool_id: str
    outcome: SyncOutcome
    step: SyncStep = SyncStep.START
    holders_stored: int = 0
    holders_total: int | None = None
    holders_status: HoldersStatus | None = None
    price_usd: Decimal | None = None
    price_source: str | None = None
    provider: str | None = None
    error: str | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome is SyncOutcome.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "pool_id": self.pool_id,
            "outcome": self.outcome.value,
            "step": self.step.value,
            "holders_stored": self.holders_stored,
            "holders_total": self.holders_total,
            "holders_status": self.holders_status.value if self.holders_status else None,
            "price_usd": str(self.price_usd) if self.price_usd is not None else None,
            "price_source": self.price_source,
            "provider": self.provider,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class BulkRunResult:
    """Outcome of one pass over every tracked pool."""

    skipped: bool = False
    succeeded: int = 0
    failed: int = 0
    skipped_pools: int = 0
    results: list[PoolSyncResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.skipped_pools

    def to_dict(self) -> dict[str, Any]:
        return {
            "skipped": self.skipped,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped_pools": self.skipped_pools,
            "duration_seconds": round(self.duration_seconds, 3),
            "results": [r.to_dict() for r in self.results],
        }


class SchedulerState(str, Enum):
    """State of the bulk sync scheduler."""

    STOPPED = "stopped"
    STARTING = "starting"
    SYNCING = "syncing"
    IDLE = "idle"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class SchedulerStats:
    """Statistics for the bulk sync scheduler."""

    total_runs: int = 0
    skipped_runs: int = 0
    pools_succeeded: int = 0
    pools_failed: int = 0
    last_run_time: datetime | None = None
    last_run_duration_seconds: float = 0.0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_runs": self.total_runs,
            "skipped_runs": self.skipped_runs,
            "pools_succeeded": self.pools_succeeded,
            "pools_failed": self.pools_failed,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "last_run_duration_seconds": round(self.last_run_duration_seconds, 3),
            "last_error": self.last_error,
        }
