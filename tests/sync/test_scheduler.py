"""Tests for the bulk sync scheduler."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from holder_sync.storage.database import DatabaseManager
from holder_sync.storage.repos import PoolDTO, PoolRepository
from holder_sync.sync import (
    BulkSyncScheduler,
    PoolSyncCoordinator,
    PoolSyncResult,
    SchedulerState,
    SyncOutcome,
)


@pytest.fixture
async def pools(db: DatabaseManager) -> list[str]:
    """Four pools with addresses and one without."""
    ids = ["pool-a", "pool-b", "pool-c", "pool-d"]
    async with db.get_async_session() as session:
        repo = PoolRepository(session)
        for i, pool_id in enumerate(ids, start=1):
            await repo.insert(
                PoolDTO(id=pool_id, token_pair="ETH/USDC", pool_address=f"0x{i:040x}", chain="ethereum")
            )
        await repo.insert(PoolDTO(id="no-address", token_pair="ETH/USDC", pool_address=None, chain="ethereum"))
    return ids


def _coordinator(outcomes: dict[str, SyncOutcome | Exception], *, delay: float = 0.0) -> MagicMock:
    async def sync_pool(pool_id: str) -> PoolSyncResult:
        if delay:
            await asyncio.sleep(delay)
        outcome = outcomes.get(pool_id, SyncOutcome.SUCCESS)
        if isinstance(outcome, Exception):
            raise outcome
        return PoolSyncResult(pool_id=pool_id, outcome=outcome)

    coordinator = MagicMock(spec=PoolSyncCoordinator)
    coordinator.sync_pool = AsyncMock(side_effect=sync_pool)
    return coordinator


class TestRunOnce:
    """Tests for a single bulk pass."""

    @pytest.mark.asyncio
    async def test_counts_outcomes(self, db, pools) -> None:
        coordinator = _coordinator(
            {
                "pool-b": SyncOutcome.NO_HOLDERS,
                "pool-c": SyncOutcome.SKIPPED,
                "pool-d": RuntimeError("boom"),
            }
        )
        scheduler = BulkSyncScheduler(db, coordinator, inter_pool_delay_seconds=0)

        run = await scheduler.run_once()

        assert not run.skipped
        assert (run.succeeded, run.failed, run.skipped_pools) == (1, 2, 1)
        assert run.total == 4
        assert [r.pool_id for r in run.results] == pools
        assert run.results[3].outcome is SyncOutcome.FAILED
        assert run.results[3].error == "boom"
        assert scheduler.stats.total_runs == 1
        assert scheduler.stats.pools_succeeded == 1
        assert scheduler.stats.pools_failed == 2
        assert scheduler.stats.last_run_time is not None
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_pools_without_address_are_not_synced(self, db, pools) -> None:
        coordinator = _coordinator({})
        scheduler = BulkSyncScheduler(db, coordinator, inter_pool_delay_seconds=0)

        await scheduler.run_once()

        synced = [call.args[0] for call in coordinator.sync_pool.await_args_list]
        assert synced == pools

    @pytest.mark.asyncio
    async def test_concurrent_run_is_skipped(self, db, pools) -> None:
        coordinator = _coordinator({}, delay=0.05)
        scheduler = BulkSyncScheduler(db, coordinator, inter_pool_delay_seconds=0)

        first = asyncio.create_task(scheduler.run_once())
        await asyncio.sleep(0.01)
        assert scheduler.is_running
        second = await scheduler.run_once()
        first_run = await first

        assert second.skipped
        assert second.total == 0
        assert first_run.succeeded == 4
        assert coordinator.sync_pool.await_count == 4
        assert scheduler.stats.skipped_runs == 1
        assert scheduler.stats.total_runs == 1

    @pytest.mark.asyncio
    async def test_inter_pool_delay(self, db, pools) -> None:
        scheduler = BulkSyncScheduler(db, _coordinator({}), inter_pool_delay_seconds=0.02)

        run = await scheduler.run_once()

        # Three gaps between four pools.
        assert run.duration_seconds >= 0.05

    @pytest.mark.asyncio
    async def test_run_complete_callback(self, db, pools) -> None:
        completed = []
        scheduler = BulkSyncScheduler(
            db, _coordinator({}), inter_pool_delay_seconds=0, on_run_complete=completed.append
        )

        run = await scheduler.run_once()

        assert completed == [run]


class TestLifecycle:
    """Start, stop and status."""

    @pytest.mark.asyncio
    async def test_start_runs_immediately_then_stops(self, db, pools) -> None:
        states: list[SchedulerState] = []
        coordinator = _coordinator({})
        scheduler = BulkSyncScheduler(
            db, coordinator, interval_seconds=3600, inter_pool_delay_seconds=0, on_state_change=states.append
        )

        await scheduler.start()
        try:
            assert scheduler.service_active
            assert scheduler.state is SchedulerState.IDLE
            assert coordinator.sync_pool.await_count == 4
        finally:
            await scheduler.stop()

        assert scheduler.state is SchedulerState.STOPPED
        assert not scheduler.service_active
        assert states[0] is SchedulerState.STARTING
        assert states[-1] is SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_loop_runs_on_interval(self, db, pools) -> None:
        coordinator = _coordinator({})
        scheduler = BulkSyncScheduler(db, coordinator, interval_seconds=0.05, inter_pool_delay_seconds=0)

        await scheduler.start()
        await asyncio.sleep(0.2)
        await scheduler.stop()

        assert scheduler.stats.total_runs >= 2

    @pytest.mark.asyncio
    async def test_failed_initial_run_still_starts(self, db) -> None:
        scheduler = BulkSyncScheduler(db, _coordinator({}), interval_seconds=3600)
        broken = MagicMock(spec=DatabaseManager)
        broken.get_async_session = MagicMock(side_effect=RuntimeError("db down"))
        scheduler._db = broken

        await scheduler.start()
        try:
            assert scheduler.service_active
            assert scheduler.stats.last_error == "db down"
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_when_stopped_is_noop(self, db) -> None:
        scheduler = BulkSyncScheduler(db, _coordinator({}))
        await scheduler.stop()
        assert scheduler.state is SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_status(self, db, pools) -> None:
        scheduler = BulkSyncScheduler(db, _coordinator({"pool-a": SyncOutcome.FAILED}), inter_pool_delay_seconds=0)
        await scheduler.run_once()

        status = scheduler.status()

        assert status["is_running"] is False
        assert status["service_active"] is False
        assert status["state"] == "stopped"
        assert status["total_runs"] == 1
        assert status["pools_succeeded"] == 3
        assert status["pools_failed"] == 1
        assert status["last_run_time"] is not None

    @pytest.mark.asyncio
    async def test_manual_sync_delegates(self, db) -> None:
        coordinator = _coordinator({})
        scheduler = BulkSyncScheduler(db, coordinator)

        result = await scheduler.sync_pool("pool-x")

        assert result.pool_id == "pool-x"
        coordinator.sync_pool.assert_awaited_once_with("pool-x")
