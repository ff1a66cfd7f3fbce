"""Bulk holder sync scheduler.

Runs the pool coordinator over every tracked pool, either once on demand
or on a fixed interval in the background. Only one bulk run executes at
a time; a run requested while another is active is skipped.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from holder_sync.storage.repos import PoolRepository
from holder_sync.sync.models import (
    BulkRunResult,
    PoolSyncResult,
    SchedulerState,
    SchedulerStats,
    SyncEventType,
    SyncOutcome,
)

if TYPE_CHECKING:
    from holder_sync.storage.database import DatabaseManager
    from holder_sync.sync.coordinator import PoolSyncCoordinator

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_INTERVAL_SECONDS = 30 * 60
DEFAULT_INTER_POOL_DELAY_SECONDS = 2.0

StateCallback = Callable[[SchedulerState], None]
RunCallback = Callable[[BulkRunResult], None]


class BulkSyncScheduler:
    """Background service that syncs every tracked pool.

    Example:
        ```python
        scheduler = BulkSyncScheduler(db, coordinator)
        await scheduler.start()  # initial run, then every 30 minutes

        print(scheduler.status())

        await scheduler.stop()
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        coordinator: PoolSyncCoordinator,
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        inter_pool_delay_seconds: float = DEFAULT_INTER_POOL_DELAY_SECONDS,
        on_state_change: StateCallback | None = None,
        on_run_complete: RunCallback | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            db: Database manager used to list pools.
            coordinator: Per-pool sync coordinator.
            interval_seconds: Interval between background runs (default: 30 min).
            inter_pool_delay_seconds: Pause between pools within a run.
            on_state_change: Callback for state changes.
            on_run_complete: Callback after each completed run.
        """
        self._db = db
        self._coordinator = coordinator
        self._interval = interval_seconds
        self._inter_pool_delay = inter_pool_delay_seconds
        self._on_state_change = on_state_change
        self._on_run_complete = on_run_complete

        self._state = SchedulerState.STOPPED
        self._stats = SchedulerStats()
        self._is_running = False
        self._loop_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def state(self) -> SchedulerState:
        """Current scheduler state."""
        return self._state

    @property
    def stats(self) -> SchedulerStats:
        """Current run statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Whether a bulk run is executing right now."""
        return self._is_running

    @property
    def service_active(self) -> bool:
        """Whether the background loop is alive."""
        return self._loop_task is not None and not self._loop_task.done()

    def _set_state(self, new_state: SchedulerState) -> None:
        old_state = self._state
        self._state = new_state
        if self._on_state_change and old_state != new_state:
            try:
                self._on_state_change(new_state)
            except Exception as e:
                logger.warning("State change callback failed: %s", e)

    def status(self) -> dict[str, Any]:
        return {
            "is_running": self._is_running,
            "service_active": self.service_active,
            "state": self._state.value,
            **self._stats.to_dict(),
        }

    async def start(self) -> None:
        """Run once, then keep running every ``interval_seconds``."""
        if self._state != SchedulerState.STOPPED:
            logger.warning("Cannot start scheduler: already in state %s", self._state.value)
            return

        self._set_state(SchedulerState.STARTING)
        self._stop_event.clear()

        try:
            await self.run_once()
        except Exception as e:
            # The loop still starts; the next interval retries.
            logger.error("Initial bulk sync failed: %s", e)
            self._stats.last_error = str(e)

        self._loop_task = asyncio.create_task(self._run_loop())
        self._set_state(SchedulerState.IDLE)
        logger.info("Bulk sync scheduler started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        """Stop the background loop, waiting for it to exit."""
        if self._state == SchedulerState.STOPPED:
            return

        self._set_state(SchedulerState.STOPPING)
        self._stop_event.set()

        if self._loop_task:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        self._set_state(SchedulerState.STOPPED)
        logger.info("Bulk sync scheduler stopped")

    async def wait_stopped(self) -> None:
        """Block until ``stop()`` is requested."""
        await self._stop_event.wait()

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                    break
                except TimeoutError:
                    pass

                if self._stop_event.is_set():
                    break

                await self.run_once()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Scheduler loop error: %s", e)
                self._stats.last_error = str(e)
                self._set_state(SchedulerState.ERROR)

    async def run_once(self) -> BulkRunResult:
        """Sync every pool with a contract address, one after another.

        Returns:
            Per-pool results and counts, or ``skipped=True`` if a run
            was already in progress.
        """
        if self._is_running:
            logger.info("[%s] Bulk sync already running; skipping", SyncEventType.BULK_RUN_SKIPPED.value)
            self._stats.skipped_runs += 1
            return BulkRunResult(skipped=True)

        self._is_running = True
        resume_state = self._state
        self._set_state(SchedulerState.SYNCING)
        started = time.monotonic()
        run = BulkRunResult()
        self._stats.total_runs += 1
        try:
            async with self._db.get_async_session() as session:
                pools = await PoolRepository(session).list_with_address()
            logger.info("Bulk sync starting for %d pools", len(pools))

            for i, pool in enumerate(pools):
                if i > 0 and self._inter_pool_delay > 0:
                    await asyncio.sleep(self._inter_pool_delay)
                result = await self._sync_one(pool.id)
                run.results.append(result)
                if result.outcome is SyncOutcome.SUCCESS:
                    run.succeeded += 1
                elif result.outcome in (SyncOutcome.SKIPPED, SyncOutcome.IN_PROGRESS):
                    run.skipped_pools += 1
                else:
                    run.failed += 1
        except Exception as e:
            self._stats.last_error = str(e)
            self._set_state(SchedulerState.ERROR)
            logger.error("Bulk sync aborted: %s", e)
            raise
        finally:
            self._is_running = False
            run.duration_seconds = time.monotonic() - started

        self._stats.pools_succeeded += run.succeeded
        self._stats.pools_failed += run.failed
        self._stats.last_run_time = datetime.now(UTC)
        self._stats.last_run_duration_seconds = run.duration_seconds
        self._stats.last_error = None
        self._set_state(SchedulerState.IDLE if self.service_active else resume_state)
        logger.info(
            "Bulk sync finished: %d succeeded, %d failed, %d skipped in %.2fs",
            run.succeeded,
            run.failed,
            run.skipped_pools,
            run.duration_seconds,
        )

        if self._on_run_complete:
            try:
                self._on_run_complete(run)
            except Exception as e:
                logger.warning("Run complete callback failed: %s", e)
        return run

    async def _sync_one(self, pool_id: str) -> PoolSyncResult:
        try:
            return await self._coordinator.sync_pool(pool_id)
        except Exception as e:
            logger.error("Pool %s failed during bulk sync: %s", pool_id, e)
            return PoolSyncResult(pool_id=pool_id, outcome=SyncOutcome.FAILED, error=str(e))

    async def sync_pool(self, pool_id: str) -> PoolSyncResult:
        """Manually sync a single pool."""
        return await self._coordinator.sync_pool(pool_id)
