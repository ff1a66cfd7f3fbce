"""Per-pool holder sync orchestration.

A sync walks a fixed sequence of steps:

    START -> FETCH_HOLDERS -> RESOLVE_PRICE -> PROCESS_RECORDS
          -> PERSIST_SWAP -> UPDATE_METRICS -> DONE

Holder lists come from the first provider (in priority order) that
returns a non-empty list, under a per-chain timeout. When that times
out, every provider is raced once for a shorter window. The stored
snapshot is only ever replaced as a whole; when nothing is found the
previous snapshot is left in place.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from holder_sync.providers.base import HolderBalance, HolderDataProvider, ProviderError, sort_holders
from holder_sync.storage.repos import (
    HolderRecordDTO,
    HolderRepository,
    PersistenceError,
    PoolDTO,
    PoolMetricsRepository,
    PoolRepository,
)
from holder_sync.sync.events import SyncEventRecorder
from holder_sync.sync.models import (
    HoldersStatus,
    NoHoldersFoundError,
    PoolSyncResult,
    Severity,
    SyncEventType,
    SyncOutcome,
    SyncStep,
)

if TYPE_CHECKING:
    from holder_sync.holders.processor import HolderDataProcessor
    from holder_sync.pricing.resolver import PriceResolver
    from holder_sync.providers.chain import EvmChainClient
    from holder_sync.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_TOP_HOLDERS_LIMIT = 100
DEFAULT_FETCH_TIMEOUT_SECONDS = 60.0
DEFAULT_QUICK_FETCH_TIMEOUT_SECONDS = 15.0
DEFAULT_CHAIN_TIMEOUTS: dict[str, float] = {"base": 30.0}
DEFAULT_TOKEN_DECIMALS = 18


@dataclass
class FetchResult:
    """Holders from the winning provider plus per-provider errors."""

    holders: list[HolderBalance] = field(default_factory=list)
    provider: str | None = None
    errors: dict[str, str] = field(default_factory=dict)
    timed_out: bool = False


class PoolSyncCoordinator:
    """Synchronizes the holder snapshot and metrics of one pool at a time.

    Example:
        ```python
        coordinator = PoolSyncCoordinator(
            db,
            holder_providers=registry.holder_providers,
            resolver=resolver,
            processor=processor,
        )
        result = await coordinator.sync_pool("pool-1")
        print(result.outcome, result.holders_stored)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        holder_providers: Sequence[HolderDataProvider],
        resolver: PriceResolver,
        processor: HolderDataProcessor,
        chain_clients: Mapping[str, EvmChainClient] | None = None,
        events: SyncEventRecorder | None = None,
        top_holders_limit: int = DEFAULT_TOP_HOLDERS_LIMIT,
        fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        chain_timeouts: Mapping[str, float] | None = None,
        quick_fetch_timeout_seconds: float = DEFAULT_QUICK_FETCH_TIMEOUT_SECONDS,
        default_decimals: int = DEFAULT_TOKEN_DECIMALS,
    ) -> None:
        """Initialize the coordinator.

        Args:
            db: Database manager for pool reads and snapshot writes.
            holder_providers: Holder sources in priority order.
            resolver: Token price resolver.
            processor: Holder record builder.
            chain_clients: Optional chain clients keyed by chain, for decimals.
            events: Event recorder (defaults to one backed by ``db``).
            top_holders_limit: Holders stored per pool.
            fetch_timeout_seconds: Default timeout for the sequential fetch.
            chain_timeouts: Per-chain overrides of ``fetch_timeout_seconds``.
            quick_fetch_timeout_seconds: Window for the racing fallback fetch.
            default_decimals: Decimals assumed without a chain client.
        """
        self._db = db
        self._providers = list(holder_providers)
        self._resolver = resolver
        self._processor = processor
        self._chain_clients = {k.lower(): v for k, v in (chain_clients or {}).items()}
        self._events = events or SyncEventRecorder(db)
        self._limit = top_holders_limit
        self._fetch_timeout = fetch_timeout_seconds
        self._chain_timeouts = {
            k.lower(): v for k, v in (DEFAULT_CHAIN_TIMEOUTS if chain_timeouts is None else chain_timeouts).items()
        }
        self._quick_timeout = quick_fetch_timeout_seconds
        self._default_decimals = default_decimals

        self._locks: dict[str, asyncio.Lock] = {}

    def timeout_for(self, chain: str) -> float:
        return self._chain_timeouts.get(chain.lower(), self._fetch_timeout)

    def is_syncing(self, pool_id: str) -> bool:
        lock = self._locks.get(pool_id)
        return lock is not None and lock.locked()

    async def sync_pool(self, pool_id: str) -> PoolSyncResult:
        """Sync one pool's holders, price and metrics.

        Returns immediately with ``IN_PROGRESS`` if the same pool is
        already being synced.

        Raises:
            Exception: Only for failures outside the handled taxonomy
                (provider, empty-result and persistence failures are
                reported through the result).
        """
        lock = self._locks.setdefault(pool_id, asyncio.Lock())
        if lock.locked():
            logger.info("Sync already in progress for pool %s", pool_id)
            return PoolSyncResult(pool_id=pool_id, outcome=SyncOutcome.IN_PROGRESS)

        async with lock:
            started = time.monotonic()
            result = PoolSyncResult(pool_id=pool_id, outcome=SyncOutcome.FAILED)
            try:
                await self._run(pool_id, result)
            except Exception as e:
                result.step = SyncStep.ERROR
                result.error = str(e)
                logger.exception("Unexpected error syncing pool %s", pool_id)
                raise
            finally:
                result.duration_seconds = time.monotonic() - started
            logger.info(
                "Pool %s sync finished: outcome=%s stored=%d total=%s provider=%s (%.2fs)",
                pool_id,
                result.outcome.value,
                result.holders_stored,
                result.holders_total,
                result.provider,
                result.duration_seconds,
            )
            return result

    async def _run(self, pool_id: str, result: PoolSyncResult) -> None:
        pool = await self._load_pool(pool_id)
        if pool is None or not pool.pool_address:
            logger.info("Skipping pool %s: not found or no contract address", pool_id)
            result.outcome = SyncOutcome.SKIPPED
            result.step = SyncStep.DONE
            return

        token_address = pool.pool_address.lower()
        chain = pool.chain.lower()

        result.step = SyncStep.FETCH_HOLDERS
        fetched = await self.fetch_holders(token_address, chain)
        result.provider = fetched.provider

        if not fetched.holders:
            await self._handle_no_holders(pool, token_address, fetched)
            result.step = SyncStep.UPDATE_METRICS
            await self._update_metrics(pool, token_address, chain, fetched_count=0, result=result)
            result.outcome = SyncOutcome.NO_HOLDERS
            result.step = SyncStep.DONE
            return

        fetched_count = len(fetched.holders)
        top = sort_holders(fetched.holders)[: self._limit]

        result.step = SyncStep.RESOLVE_PRICE
        resolution = await self._resolver.resolve(
            token_address,
            chain=chain,
            name=self._price_hint(pool),
            platform=pool.platform,
        )
        result.price_usd = resolution.price
        result.price_source = resolution.source.value
        if resolution.degraded:
            await self._events.record(
                SyncEventType.PRICE_UNRESOLVED,
                Severity.LOW,
                f"No price source resolved {token_address}; using {resolution.price}",
                pool_id=pool.id,
                details={"token_address": token_address, "chain": chain},
            )

        result.step = SyncStep.PROCESS_RECORDS
        decimals = await self._token_decimals(token_address, chain)
        records = await self._processor.process(
            top,
            pool_id=pool.id,
            token_address=token_address,
            unit_price=resolution.price,
            decimals=decimals,
            chain=chain,
        )

        result.step = SyncStep.PERSIST_SWAP
        try:
            result.holders_stored = await self._persist(pool.id, records)
        except PersistenceError as e:
            result.error = str(e)
            await self._events.record(
                SyncEventType.PERSISTENCE_FAILURE,
                Severity.HIGH,
                f"Holder snapshot swap failed for pool {pool.id}; previous snapshot kept",
                pool_id=pool.id,
                details={"error": str(e), "records": len(records)},
            )
            await self._update_metrics(pool, token_address, chain, fetched_count=fetched_count, result=result)
            result.outcome = SyncOutcome.FAILED
            result.step = SyncStep.ERROR
            return

        result.step = SyncStep.UPDATE_METRICS
        await self._update_metrics(pool, token_address, chain, fetched_count=fetched_count, result=result)

        result.outcome = SyncOutcome.SUCCESS
        result.step = SyncStep.DONE

    async def _load_pool(self, pool_id: str) -> PoolDTO | None:
        async with self._db.get_async_session() as session:
            return await PoolRepository(session).get_by_id(pool_id)

    @staticmethod
    def _price_hint(pool: PoolDTO) -> str | None:
        # Multi-asset pair names would trip the stablecoin name match.
        symbols = pool.pair_symbols
        return symbols[0] if len(symbols) == 1 else None

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def fetch_holders(self, token_address: str, chain: str) -> FetchResult:
        """Fetch holders with provider fallback and a timeout-bounded race."""
        result = FetchResult()
        timeout = self.timeout_for(chain)
        try:
            await asyncio.wait_for(self._fetch_sequential(token_address, chain, result), timeout=timeout)
        except TimeoutError:
            result.timed_out = True
            logger.warning(
                "Holder fetch for %s on %s timed out after %.0fs; racing providers for %.0fs",
                token_address,
                chain,
                timeout,
                self._quick_timeout,
            )
            await self._quick_fetch(token_address, chain, result)
        return result

    async def _fetch_sequential(self, token_address: str, chain: str, result: FetchResult) -> None:
        for provider in self._providers:
            try:
                holders = await provider.list_holders(token_address, chain, self._limit)
            except ProviderError as e:
                result.errors[provider.name] = str(e)
                logger.warning("Provider %s failed for %s on %s: %s", provider.name, token_address, chain, e)
                continue
            if holders:
                result.holders = holders
                result.provider = provider.name
                logger.debug("Provider %s returned %d holders for %s", provider.name, len(holders), token_address)
                return
            logger.info("Provider %s returned no holders for %s on %s", provider.name, token_address, chain)

    async def _quick_fetch(self, token_address: str, chain: str, result: FetchResult) -> None:
        if not self._providers:
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._quick_timeout
        tasks: dict[asyncio.Task[list[HolderBalance]], int] = {
            asyncio.create_task(p.list_holders(token_address, chain, self._limit)): i
            for i, p in enumerate(self._providers)
        }
        pending: set[asyncio.Task[list[HolderBalance]]] = set(tasks)
        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                # Prefer the higher-priority provider when several finish together.
                for task in sorted(done, key=tasks.__getitem__):
                    provider = self._providers[tasks[task]]
                    exc = task.exception()
                    if exc is not None:
                        result.errors[provider.name] = str(exc)
                        logger.warning("Quick fetch via %s failed for %s: %s", provider.name, token_address, exc)
                        continue
                    holders = task.result()
                    if holders:
                        result.holders = holders
                        result.provider = provider.name
                        logger.info(
                            "Quick fetch via %s returned %d holders for %s", provider.name, len(holders), token_address
                        )
                        return
            if pending:
                logger.warning(
                    "Quick fetch for %s timed out with %d provider(s) outstanding", token_address, len(pending)
                )
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def _handle_no_holders(self, pool: PoolDTO, token_address: str, fetched: FetchResult) -> None:
        error = NoHoldersFoundError(pool.id, token_address, errors=fetched.errors)
        if self._providers and len(fetched.errors) == len(self._providers):
            await self._events.record(
                SyncEventType.PROVIDER_UNAVAILABLE,
                Severity.MEDIUM,
                f"Every holder provider failed for {token_address}",
                pool_id=pool.id,
                details={"errors": fetched.errors},
            )
        await self._events.record(
            SyncEventType.NO_HOLDERS_FOUND,
            Severity.MEDIUM,
            str(error),
            pool_id=pool.id,
            details={
                "token_address": token_address,
                "chain": pool.chain,
                "token_pair": pool.token_pair,
                "providers": [p.name for p in self._providers],
                "errors": fetched.errors,
                "timed_out": fetched.timed_out,
            },
        )

    # ------------------------------------------------------------------
    # Persist and metrics
    # ------------------------------------------------------------------

    async def _token_decimals(self, token_address: str, chain: str) -> int:
        client = self._chain_clients.get(chain)
        if client is None:
            return self._default_decimals
        return await client.get_token_decimals(token_address)

    async def _persist(self, pool_id: str, records: list[HolderRecordDTO]) -> int:
        try:
            async with self._db.get_async_session() as session:
                return await HolderRepository(session).replace_for_pool(pool_id, records)
        except PersistenceError:
            raise
        except SQLAlchemyError as e:
            # Commit-time failures surface outside the repository.
            raise PersistenceError(f"Failed to commit holders for pool {pool_id}: {e}", pool_id=pool_id) from e

    async def _count_holders(self, token_address: str, chain: str) -> tuple[int | None, str | None]:
        timeout = self.timeout_for(chain)
        for provider in self._providers:
            try:
                count = await asyncio.wait_for(provider.count_holders(token_address, chain), timeout=timeout)
            except (ProviderError, TimeoutError) as e:
                logger.warning("Holder count via %s failed for %s: %s", provider.name, token_address, e)
                continue
            if count is not None:
                return count, provider.name
        return None, None

    async def _update_metrics(
        self,
        pool: PoolDTO,
        token_address: str,
        chain: str,
        *,
        fetched_count: int,
        result: PoolSyncResult,
    ) -> None:
        count, source = await self._count_holders(token_address, chain)
        if count is not None:
            status = HoldersStatus.SUCCESS
        elif fetched_count > 0:
            count, status = fetched_count, HoldersStatus.UNKNOWN
        else:
            status = HoldersStatus.FAILURE

        try:
            async with self._db.get_async_session() as session:
                await PoolMetricsRepository(session).upsert_holders(
                    pool.id, holders_count=count, status=status.value
                )
        except SQLAlchemyError as e:
            logger.error("Failed to update metrics for pool %s: %s", pool.id, e)
            return

        result.holders_total = count
        result.holders_status = status
        logger.debug("Metrics for pool %s: holders=%s status=%s source=%s", pool.id, count, status.value, source)
