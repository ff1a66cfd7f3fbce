"""Tests for the per-pool sync coordinator."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from aiohttp import ClientConnectionError

from holder_sync.holders import HolderDataProcessor
from holder_sync.pricing import PriceResolver
from holder_sync.providers.base import HolderBalance
from holder_sync.providers.chain import EvmChainClient
from holder_sync.providers.moralis import MoralisProvider
from holder_sync.storage.database import DatabaseManager
from holder_sync.storage.repos import (
    HolderRepository,
    PersistenceError,
    PoolDTO,
    PoolMetricsRepository,
    PoolRepository,
    SyncEventRepository,
)
from holder_sync.sync import (
    HoldersStatus,
    PoolSyncCoordinator,
    SyncEventType,
    SyncOutcome,
    SyncStep,
)


@pytest.fixture
def make_coordinator(db: DatabaseManager):
    def _make(providers, **kwargs) -> PoolSyncCoordinator:
        if "price_sources" in kwargs:
            price_sources = kwargs.pop("price_sources")
        else:
            price_sources = [p for p in providers if p.price is not None]
        kwargs.setdefault("resolver", PriceResolver(price_sources=price_sources))
        kwargs.setdefault("processor", HolderDataProcessor())
        return PoolSyncCoordinator(db, holder_providers=providers, **kwargs)

    return _make


async def _rows(db: DatabaseManager, pool_id: str = "pool-1"):
    async with db.get_async_session() as session:
        return await HolderRepository(session).list_for_pool(pool_id)


async def _metrics(db: DatabaseManager, pool_id: str = "pool-1"):
    async with db.get_async_session() as session:
        return await PoolMetricsRepository(session).get(pool_id)


async def _events(db: DatabaseManager, event_type: SyncEventType):
    async with db.get_async_session() as session:
        return await SyncEventRepository(session).list_recent(event_type=event_type.value)


class TestSuccessfulSync:
    """Happy-path syncs."""

    @pytest.mark.asyncio
    async def test_stores_top_holders_and_full_count(
        self, db, pool, make_coordinator, provider_factory, holders_factory
    ) -> None:
        provider = provider_factory("moralis", holders=holders_factory(250), count=250, price=Decimal("2"))
        coordinator = make_coordinator([provider], top_holders_limit=100)

        result = await coordinator.sync_pool(pool.id)

        assert result.outcome is SyncOutcome.SUCCESS
        assert result.step is SyncStep.DONE
        assert result.provider == "moralis"
        assert result.holders_stored == 100
        assert result.holders_total == 250
        assert result.holders_status is HoldersStatus.SUCCESS
        assert result.price_source == "provider"

        rows = await _rows(db)
        assert [r.rank for r in rows] == list(range(1, 101))
        assert rows[0].holder_address == holders_factory(1)[0].address

        metrics = await _metrics(db)
        assert metrics is not None
        assert metrics.holders_count == 250
        assert metrics.holders_status == "success"

    @pytest.mark.asyncio
    async def test_replaces_previous_snapshot(self, db, pool, make_coordinator, provider_factory, holders_factory) -> None:
        provider = provider_factory("moralis", holders=holders_factory(5), count=5)
        coordinator = make_coordinator([provider])
        await coordinator.sync_pool(pool.id)

        provider.holders = holders_factory(3, start=500)
        result = await coordinator.sync_pool(pool.id)

        assert result.holders_stored == 3
        rows = await _rows(db)
        assert [int(r.token_balance) for r in rows] == [h.raw_balance for h in holders_factory(3, start=500)]

    @pytest.mark.asyncio
    async def test_falls_back_through_providers(
        self, pool, make_coordinator, provider_factory, holders_factory
    ) -> None:
        broken = provider_factory("moralis", error=True)
        empty = provider_factory("alchemy")
        working = provider_factory("etherscan", holders=holders_factory(4), count=4)
        coordinator = make_coordinator([broken, empty, working])

        result = await coordinator.sync_pool(pool.id)

        assert result.outcome is SyncOutcome.SUCCESS
        assert result.provider == "etherscan"
        assert (broken.list_calls, empty.list_calls, working.list_calls) == (1, 1, 1)

    @pytest.mark.asyncio
    async def test_undecodable_body_falls_back(
        self, db, pool, make_coordinator, provider_factory, holders_factory
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, headers={"Content-Encoding": "gzip"}, content=b"not-gzip")

        moralis = MoralisProvider(
            "test-key",
            max_requests_per_second=1000,
            retry_base_delay=0,
            transport=httpx.MockTransport(handler),
        )
        working = provider_factory("etherscan", holders=holders_factory(3), count=3)
        coordinator = make_coordinator([moralis, working], price_sources=[])

        result = await coordinator.sync_pool(pool.id)
        await moralis.aclose()

        assert result.outcome is SyncOutcome.SUCCESS
        assert result.provider == "etherscan"
        assert len(await _rows(db)) == 3

    @pytest.mark.asyncio
    async def test_unknown_count_uses_fetched_length(
        self, db, pool, make_coordinator, provider_factory, holders_factory
    ) -> None:
        provider = provider_factory("moralis", holders=holders_factory(7), count=None)
        coordinator = make_coordinator([provider])

        result = await coordinator.sync_pool(pool.id)

        assert result.holders_total == 7
        assert result.holders_status is HoldersStatus.UNKNOWN
        metrics = await _metrics(db)
        assert metrics.holders_status == "unknown"

    @pytest.mark.asyncio
    async def test_decimals_from_chain_client(self, pool, make_coordinator, provider_factory, holders_factory) -> None:
        client = MagicMock(spec=EvmChainClient)
        client.get_token_decimals = AsyncMock(return_value=6)
        processor = MagicMock(spec=HolderDataProcessor)
        processor.process = AsyncMock(return_value=[])
        provider = provider_factory("moralis", holders=holders_factory(2), count=2)
        coordinator = make_coordinator([provider], processor=processor, chain_clients={"ethereum": client})

        await coordinator.sync_pool(pool.id)

        assert processor.process.await_args.kwargs["decimals"] == 6

    @pytest.mark.asyncio
    async def test_rpc_outage_defaults_decimals(
        self, db, pool, make_coordinator, provider_factory, holders_factory
    ) -> None:
        client = EvmChainClient("http://127.0.0.1:9", max_retries=1, retry_delay_seconds=0)
        contract = MagicMock()
        contract.functions.decimals.return_value.call = AsyncMock(side_effect=ClientConnectionError("refused"))
        processor = HolderDataProcessor()
        process = AsyncMock(wraps=processor.process)
        provider = provider_factory("moralis", holders=holders_factory(2), count=2)
        coordinator = make_coordinator([provider], processor=processor, chain_clients={"ethereum": client})

        with (
            patch.object(client._endpoints[0].w3.eth, "contract", MagicMock(return_value=contract)),
            patch.object(processor, "process", process),
        ):
            result = await coordinator.sync_pool(pool.id)

        assert result.outcome is SyncOutcome.SUCCESS
        assert process.await_args.kwargs["decimals"] == 18
        assert len(await _rows(db)) == 2

    @pytest.mark.asyncio
    async def test_unresolved_price_records_event(
        self, db, pool, make_coordinator, provider_factory, holders_factory
    ) -> None:
        provider = provider_factory("moralis", holders=holders_factory(2), count=2)
        coordinator = make_coordinator([provider])

        result = await coordinator.sync_pool(pool.id)

        assert result.outcome is SyncOutcome.SUCCESS
        assert result.price_usd == Decimal("1.00")
        assert result.price_source == "default"
        events = await _events(db, SyncEventType.PRICE_UNRESOLVED)
        assert len(events) == 1
        assert events[0].severity == "low"

    @pytest.mark.asyncio
    async def test_pair_name_is_not_a_price_hint(self, db, make_coordinator, provider_factory, holders_factory) -> None:
        async with db.get_async_session() as session:
            await PoolRepository(session).insert(
                PoolDTO(id="pool-2", token_pair="USDC/WETH", pool_address="0x" + "2" * 40, chain="ethereum")
            )
        provider = provider_factory("moralis", holders=holders_factory(2), count=2)
        coordinator = make_coordinator([provider])

        result = await coordinator.sync_pool("pool-2")

        assert result.price_source == "default"


class TestNoHolders:
    """Empty provider results leave the stored snapshot alone."""

    @pytest.mark.asyncio
    async def test_empty_keeps_previous_rows(
        self, db, pool, make_coordinator, provider_factory, holders_factory
    ) -> None:
        provider = provider_factory("moralis", holders=holders_factory(3), count=3)
        coordinator = make_coordinator([provider])
        await coordinator.sync_pool(pool.id)

        provider.holders = []
        provider.count = None
        result = await coordinator.sync_pool(pool.id)

        assert result.outcome is SyncOutcome.NO_HOLDERS
        assert result.step is SyncStep.DONE
        assert len(await _rows(db)) == 3
        assert len(await _events(db, SyncEventType.NO_HOLDERS_FOUND)) == 1
        assert await _events(db, SyncEventType.PROVIDER_UNAVAILABLE) == []

        metrics = await _metrics(db)
        assert metrics.holders_status == "failure"
        assert metrics.holders_count == 3

    @pytest.mark.asyncio
    async def test_every_provider_failed(self, db, pool, make_coordinator, provider_factory) -> None:
        coordinator = make_coordinator(
            [provider_factory("moralis", error=True), provider_factory("alchemy", error=True)]
        )

        result = await coordinator.sync_pool(pool.id)

        assert result.outcome is SyncOutcome.NO_HOLDERS
        unavailable = await _events(db, SyncEventType.PROVIDER_UNAVAILABLE)
        assert len(unavailable) == 1
        assert set(unavailable[0].details["errors"]) == {"moralis", "alchemy"}
        no_holders = await _events(db, SyncEventType.NO_HOLDERS_FOUND)
        assert no_holders[0].severity == "medium"
        assert await _rows(db) == []


class TestTimeouts:
    """Primary timeout followed by a raced quick fetch."""

    @pytest.mark.asyncio
    async def test_quick_fetch_after_timeout(self, make_coordinator, provider_factory, holders_factory) -> None:
        slow = provider_factory("moralis", holders=holders_factory(3), delay=5)
        fast = provider_factory("alchemy", holders=holders_factory(2), delay=0.01)
        coordinator = make_coordinator(
            [slow, fast], fetch_timeout_seconds=0.05, chain_timeouts={}, quick_fetch_timeout_seconds=2
        )

        fetched = await coordinator.fetch_holders("0x" + "1" * 40, "ethereum")

        assert fetched.timed_out
        assert fetched.provider == "alchemy"
        assert len(fetched.holders) == 2
        assert slow.list_calls == 2
        assert slow.cancelled

    @pytest.mark.asyncio
    async def test_quick_fetch_prefers_priority_on_tie(self, make_coordinator, provider_factory, holders_factory) -> None:
        stuck = provider_factory("etherscan", holders=holders_factory(1), delay=5)
        first = provider_factory("moralis", holders=holders_factory(3))
        second = provider_factory("alchemy", holders=holders_factory(2))
        coordinator = make_coordinator(
            [stuck, first, second], fetch_timeout_seconds=0.05, chain_timeouts={}, quick_fetch_timeout_seconds=1
        )

        fetched = await coordinator.fetch_holders("0x" + "1" * 40, "ethereum")

        assert fetched.provider == "moralis"

    @pytest.mark.asyncio
    async def test_nothing_within_quick_window(self, db, pool, make_coordinator, provider_factory) -> None:
        slow = provider_factory("moralis", delay=5)
        coordinator = make_coordinator(
            [slow], fetch_timeout_seconds=0.05, chain_timeouts={}, quick_fetch_timeout_seconds=0.05
        )

        result = await coordinator.sync_pool(pool.id)

        assert result.outcome is SyncOutcome.NO_HOLDERS
        events = await _events(db, SyncEventType.NO_HOLDERS_FOUND)
        assert events[0].details["timed_out"] is True

    @pytest.mark.asyncio
    async def test_chain_timeout_overrides(self, make_coordinator) -> None:
        coordinator = make_coordinator([], fetch_timeout_seconds=60)
        assert coordinator.timeout_for("Base") == 30
        assert coordinator.timeout_for("ethereum") == 60


class TestGuards:
    """Concurrency guard, skips and persistence failures."""

    @pytest.mark.asyncio
    async def test_concurrent_sync_of_same_pool(self, pool, make_coordinator, provider_factory, holders_factory) -> None:
        provider = provider_factory("moralis", holders=holders_factory(2), count=2, delay=0.2)
        coordinator = make_coordinator([provider])

        first = asyncio.create_task(coordinator.sync_pool(pool.id))
        await asyncio.sleep(0.05)
        assert coordinator.is_syncing(pool.id)
        second = await coordinator.sync_pool(pool.id)
        first_result = await first

        assert second.outcome is SyncOutcome.IN_PROGRESS
        assert first_result.outcome is SyncOutcome.SUCCESS
        assert provider.list_calls == 1
        assert not coordinator.is_syncing(pool.id)

    @pytest.mark.asyncio
    async def test_missing_pool_is_skipped(self, db, make_coordinator, provider_factory) -> None:
        provider = provider_factory("moralis")
        result = await make_coordinator([provider]).sync_pool("nope")

        assert result.outcome is SyncOutcome.SKIPPED
        assert provider.list_calls == 0

    @pytest.mark.asyncio
    async def test_pool_without_address_is_skipped(self, db, make_coordinator, provider_factory) -> None:
        async with db.get_async_session() as session:
            await PoolRepository(session).insert(
                PoolDTO(id="pool-3", token_pair="ETH/USDC", pool_address=None, chain="ethereum")
            )

        result = await make_coordinator([provider_factory("moralis")]).sync_pool("pool-3")

        assert result.outcome is SyncOutcome.SKIPPED

    @pytest.mark.asyncio
    async def test_persistence_failure_keeps_previous_snapshot(
        self, db, pool, make_coordinator, provider_factory, holders_factory
    ) -> None:
        provider = provider_factory("moralis", holders=holders_factory(3), count=3)
        coordinator = make_coordinator([provider])
        await coordinator.sync_pool(pool.id)

        provider.holders = holders_factory(5, start=10)
        provider.count = 5
        with patch.object(
            HolderRepository,
            "replace_for_pool",
            AsyncMock(side_effect=PersistenceError("disk full", pool_id=pool.id)),
        ):
            result = await coordinator.sync_pool(pool.id)

        assert result.outcome is SyncOutcome.FAILED
        assert result.step is SyncStep.ERROR
        assert "disk full" in result.error
        assert len(await _rows(db)) == 3
        events = await _events(db, SyncEventType.PERSISTENCE_FAILURE)
        assert len(events) == 1
        assert events[0].severity == "high"
        # Metrics are still refreshed.
        assert (await _metrics(db)).holders_count == 5

    @pytest.mark.asyncio
    async def test_duplicate_ranks_roll_back(self, db, pool, make_coordinator, provider_factory, holders_factory) -> None:
        provider = provider_factory("moralis", holders=holders_factory(2), count=2)
        coordinator = make_coordinator([provider])
        await coordinator.sync_pool(pool.id)

        good = await HolderDataProcessor().process(
            [HolderBalance("0x" + "a" * 40, 10), HolderBalance("0x" + "b" * 40, 5)],
            pool_id=pool.id,
            token_address=pool.pool_address,
            unit_price=Decimal(1),
            decimals=0,
            chain="ethereum",
        )
        good[1].rank = 1
        processor = MagicMock(spec=HolderDataProcessor)
        processor.process = AsyncMock(return_value=good)
        coordinator = make_coordinator([provider], processor=processor)

        result = await coordinator.sync_pool(pool.id)

        assert result.outcome is SyncOutcome.FAILED
        rows = await _rows(db)
        assert [r.holder_address for r in rows] == [h.address for h in holders_factory(2)]

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self, pool, make_coordinator, provider_factory, holders_factory) -> None:
        processor = MagicMock(spec=HolderDataProcessor)
        processor.process = AsyncMock(side_effect=RuntimeError("bug"))
        provider = provider_factory("moralis", holders=holders_factory(2))
        coordinator = make_coordinator([provider], processor=processor)

        with pytest.raises(RuntimeError, match="bug"):
            await coordinator.sync_pool(pool.id)
        assert not coordinator.is_syncing(pool.id)
