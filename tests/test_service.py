"""End-to-end tests for service wiring."""

from decimal import Decimal

import pytest

from holder_sync.config import Settings, clear_settings_cache
from holder_sync.providers import ProviderRegistry
from holder_sync.service import HolderSyncService, ServiceState, build_components
from holder_sync.storage.repos import HolderRepository, PoolMetricsRepository
from holder_sync.sync import SyncOutcome


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch) -> Settings:
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    for name in ("MORALIS_API_KEY", "ALCHEMY_API_KEY", "ETHERSCAN_API_KEY", "RPC_URL", "REDIS_URL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("COINGECKO_ENABLED", "false")
    monkeypatch.setenv("MORPHO_ENABLED", "false")
    monkeypatch.setenv("SCHEDULER_INTER_POOL_DELAY_SECONDS", "0")
    clear_settings_cache()
    yield Settings()
    clear_settings_cache()


@pytest.mark.asyncio
async def test_bulk_run_with_injected_providers(settings, db, pool, provider_factory, holders_factory) -> None:
    provider = provider_factory("moralis", holders=holders_factory(3), count=42, price=Decimal("2"))
    registry = ProviderRegistry(holder_providers=[provider], price_sources=[provider])

    components = build_components(settings, db=db, registry=registry)
    run = await components.scheduler.run_once()

    assert run.succeeded == 1
    assert run.results[0].outcome is SyncOutcome.SUCCESS
    async with db.get_async_session() as session:
        assert await HolderRepository(session).count_for_pool(pool.id) == 3
        metrics = await PoolMetricsRepository(session).get(pool.id)
    assert metrics.holders_count == 42


@pytest.mark.asyncio
async def test_service_lifecycle(settings: Settings) -> None:
    async with HolderSyncService(settings) as service:
        await service.init_schema()
        result = await service.sync_pool("missing")
        status = service.status()
        events = await service.recent_events()

    assert result.outcome is SyncOutcome.SKIPPED
    assert status["total_runs"] == 0
    assert events == []
    assert service.state is ServiceState.STOPPED
    with pytest.raises(RuntimeError):
        service.components
