"""Tests for sync result and stats types."""

from datetime import UTC, datetime
from decimal import Decimal

from holder_sync.sync import (
    BulkRunResult,
    HoldersStatus,
    NoHoldersFoundError,
    PoolSyncResult,
    SchedulerStats,
    SyncOutcome,
    SyncStep,
)


def test_pool_result_to_dict() -> None:
    result = PoolSyncResult(
        pool_id="pool-1",
        outcome=SyncOutcome.SUCCESS,
        step=SyncStep.DONE,
        holders_stored=100,
        holders_total=250,
        holders_status=HoldersStatus.SUCCESS,
        price_usd=Decimal("1.00"),
        price_source="stablecoin",
        provider="moralis",
        duration_seconds=1.23456,
    )

    data = result.to_dict()

    assert result.succeeded
    assert data["outcome"] == "success"
    assert data["step"] == "done"
    assert data["holders_status"] == "success"
    assert data["price_usd"] == "1.00"
    assert data["duration_seconds"] == 1.235


def test_bulk_result_total() -> None:
    run = BulkRunResult(succeeded=3, failed=1, skipped_pools=2)
    assert run.total == 6
    assert run.to_dict()["results"] == []


def test_scheduler_stats_to_dict() -> None:
    stats = SchedulerStats(total_runs=2, last_run_time=datetime(2026, 1, 1, tzinfo=UTC))
    data = stats.to_dict()
    assert data["total_runs"] == 2
    assert data["last_run_time"] == "2026-01-01T00:00:00+00:00"
    assert data["last_error"] is None


def test_no_holders_error() -> None:
    error = NoHoldersFoundError("pool-1", "0xabc", errors={"moralis": "down"})
    assert "pool-1" in str(error)
    assert error.errors == {"moralis": "down"}
