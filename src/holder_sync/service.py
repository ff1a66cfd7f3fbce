"""Service wiring for the holder sync engine.

Builds every component from settings (database, Redis, providers, price
resolver, holder processor, coordinator and scheduler) and owns their
lifecycle.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from holder_sync.config import Settings, get_settings
from holder_sync.holders import HolderDataProcessor
from holder_sync.pricing import PriceResolver
from holder_sync.providers import ProviderRegistry, build_providers
from holder_sync.storage.database import DatabaseManager
from holder_sync.storage.repos import SyncEventDTO, SyncEventRepository
from holder_sync.sync import (
    BulkRunResult,
    BulkSyncScheduler,
    PoolSyncCoordinator,
    PoolSyncResult,
    SyncEventRecorder,
)

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class Components:
    db: DatabaseManager
    registry: ProviderRegistry
    resolver: PriceResolver
    processor: HolderDataProcessor
    coordinator: PoolSyncCoordinator
    scheduler: BulkSyncScheduler


def build_components(
    settings: Settings,
    *,
    db: DatabaseManager | None = None,
    redis: Redis | None = None,
    registry: ProviderRegistry | None = None,
) -> Components:
    """Wire the engine from settings; injected parts take precedence."""
    db = db or DatabaseManager(settings.database.url, pool_size=settings.database.pool_size)
    registry = registry or build_providers(settings, redis=redis)

    resolver = PriceResolver(
        price_sources=registry.price_sources,
        db=db,
        morpho=registry.morpho,
        cache_ttl_seconds=settings.pricing.cache_ttl_seconds,
        morpho_vaults=settings.pricing.morpho_vaults,
    )
    processor = HolderDataProcessor(
        portfolio=registry.portfolio,
        chain_clients=registry.chain_clients,
        wallet_lookup_concurrency=settings.holders.wallet_lookup_concurrency,
    )
    coordinator = PoolSyncCoordinator(
        db,
        holder_providers=registry.holder_providers,
        resolver=resolver,
        processor=processor,
        chain_clients=registry.chain_clients,
        events=SyncEventRecorder(db),
        top_holders_limit=settings.sync.top_holders_limit,
        fetch_timeout_seconds=settings.sync.fetch_timeout_seconds,
        chain_timeouts=settings.sync.chain_timeouts,
        quick_fetch_timeout_seconds=settings.sync.quick_fetch_timeout_seconds,
        default_decimals=settings.holders.default_decimals,
    )
    scheduler = BulkSyncScheduler(
        db,
        coordinator,
        interval_seconds=settings.scheduler.interval_seconds,
        inter_pool_delay_seconds=settings.scheduler.inter_pool_delay_seconds,
    )
    return Components(
        db=db,
        registry=registry,
        resolver=resolver,
        processor=processor,
        coordinator=coordinator,
        scheduler=scheduler,
    )


class HolderSyncService:
    """Owns the engine's resources for the lifetime of a process.

    Example:
        ```python
        async with HolderSyncService() as service:
            result = await service.sync_pool("pool-1")
            run = await service.run_once()
        ```
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._state = ServiceState.STOPPED
        self._redis: Redis | None = None
        self._components: Components | None = None

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def components(self) -> Components:
        if self._components is None:
            raise RuntimeError("Service is not open")
        return self._components

    async def open(self) -> None:
        """Create connections and components without starting the loop."""
        if self._components is not None:
            return
        if self._settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(self._settings.redis.url)
        self._components = build_components(self._settings, redis=self._redis)
        logger.debug("Holder sync components initialized")

    async def close(self) -> None:
        """Release provider clients, database connections and Redis."""
        if self._components is not None:
            await self._components.scheduler.stop()
            await self._components.registry.aclose()
            await self._components.db.dispose_async()
            self._components = None
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        self._state = ServiceState.STOPPED
        logger.debug("Resources cleaned up")

    async def init_schema(self) -> None:
        await self.components.db.init_schema_async()

    async def sync_pool(self, pool_id: str) -> PoolSyncResult:
        return await self.components.scheduler.sync_pool(pool_id)

    async def run_once(self) -> BulkRunResult:
        return await self.components.scheduler.run_once()

    def status(self) -> dict[str, Any]:
        return self.components.scheduler.status()

    async def recent_events(self, *, limit: int = 20) -> list[SyncEventDTO]:
        async with self.components.db.get_async_session() as session:
            return await SyncEventRepository(session).list_recent(limit=limit)

    async def run(self) -> None:
        """Run the scheduler until cancelled or interrupted."""
        await self.open()
        self._state = ServiceState.STARTING
        try:
            await self.components.scheduler.start()
            self._state = ServiceState.RUNNING
            logger.info("Holder sync service running")
            await self.components.scheduler.wait_stopped()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            self._state = ServiceState.ERROR
            logger.error("Holder sync service failed: %s", e)
            raise
        finally:
            self._state = ServiceState.STOPPING
            await self.close()

    async def __aenter__(self) -> HolderSyncService:
        await self.open()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
