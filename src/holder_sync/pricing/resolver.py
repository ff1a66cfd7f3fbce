"""Tiered USD price resolution for pool tokens.

Each tier either resolves a price or reports that it does not apply, and
the resolver walks tiers in order until one resolves:

1. Stablecoin (address allow-list, then name/symbol pattern)
2. Static known-token table
3. Vault exchange-rate table (multiplier x underlying price)
4. Local price cache (fresh rows only)
5. External price sources, in priority order
6. Morpho vault share price x underlying price
7. Fallback to 1.00, logged as degraded

Tiers 1-4 never touch the network; tiers 5 and 6 write their result to
the cache.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Final

from sqlalchemy.exc import SQLAlchemyError

from holder_sync.pricing import tables
from holder_sync.providers.base import ProviderError, TokenPriceSource
from holder_sync.storage.repos import TokenPriceRepository

if TYPE_CHECKING:
    from holder_sync.providers.morpho import MorphoClient
    from holder_sync.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

ONE: Final = Decimal("1.00")
MAX_RESOLUTION_DEPTH: Final = 3
DEFAULT_CACHE_TTL_SECONDS: Final = 3600


class PriceSource(str, Enum):
    """Which tier produced a price."""

    STABLECOIN = "stablecoin"
    STATIC = "static"
    VAULT_TABLE = "vault_table"
    CACHE = "cache"
    PROVIDER = "provider"
    PROTOCOL_VAULT = "protocol_vault"
    DEFAULT = "default"


@dataclass(frozen=True)
class Resolved:
    """A resolved USD unit price and the tier that produced it."""

    price: Decimal
    source: PriceSource
    detail: str | None = None

    @property
    def degraded(self) -> bool:
        return self.source is PriceSource.DEFAULT


class _NotApplicable:
    _instance: _NotApplicable | None = None

    def __new__(cls) -> _NotApplicable:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_APPLICABLE"


NOT_APPLICABLE: Final = _NotApplicable()

TierResult = Resolved | _NotApplicable


@dataclass(frozen=True)
class PriceQuery:
    token_address: str
    chain: str
    name: str | None = None
    symbol: str | None = None
    platform: str | None = None
    depth: int = 0


class PriceResolver:
    """Resolves a USD unit price for a token address.

    Example:
        ```python
        resolver = PriceResolver(price_sources=registry.price_sources, db=db)
        result = await resolver.resolve("0xa0b8...", chain="ethereum")
        print(result.price, result.source)
        ```
    """

    def __init__(
        self,
        *,
        price_sources: Sequence[TokenPriceSource] = (),
        db: DatabaseManager | None = None,
        morpho: MorphoClient | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        morpho_vaults: Sequence[str] = (),
        stablecoin_addresses: frozenset[str] = tables.STABLECOIN_ADDRESSES,
        static_prices: Mapping[str, Decimal] = tables.STATIC_PRICES,
        vault_rates: Mapping[str, tables.VaultRate] = tables.VAULT_RATES,
    ) -> None:
        self._price_sources = list(price_sources)
        self._db = db
        self._morpho = morpho
        self._cache_ttl = timedelta(seconds=cache_ttl_seconds)
        self._morpho_vaults = frozenset(a.lower() for a in morpho_vaults)
        self._stablecoins = frozenset(a.lower() for a in stablecoin_addresses)
        self._static_prices = {a.lower(): p for a, p in static_prices.items()}
        self._vault_rates = {a.lower(): r for a, r in vault_rates.items()}

        self._tiers: tuple[Callable[[PriceQuery], Awaitable[TierResult]], ...] = (
            self._stablecoin_tier,
            self._static_tier,
            self._vault_table_tier,
            self._cache_tier,
            self._provider_tier,
            self._protocol_vault_tier,
        )

    async def resolve(
        self,
        token_address: str,
        *,
        chain: str,
        name: str | None = None,
        symbol: str | None = None,
        platform: str | None = None,
    ) -> Resolved:
        """Resolve a USD unit price. Never raises for provider failures."""
        query = PriceQuery(
            token_address=token_address.lower(),
            chain=chain.lower(),
            name=name,
            symbol=symbol,
            platform=platform,
        )
        return await self._resolve(query)

    async def _resolve(self, query: PriceQuery) -> Resolved:
        for tier in self._tiers:
            result = await tier(query)
            if isinstance(result, Resolved):
                logger.debug(
                    "Price for %s resolved by %s: %s", query.token_address, result.source.value, result.price
                )
                return result

        logger.warning(
            "No price source resolved %s on %s; defaulting to %s (degraded)",
            query.token_address,
            query.chain,
            ONE,
        )
        return Resolved(price=ONE, source=PriceSource.DEFAULT)

    async def _resolve_underlying(self, query: PriceQuery, underlying_address: str) -> Resolved:
        if query.depth + 1 >= MAX_RESOLUTION_DEPTH:
            logger.warning(
                "Underlying resolution for %s exceeded depth %d; using %s",
                query.token_address,
                MAX_RESOLUTION_DEPTH,
                ONE,
            )
            return Resolved(price=ONE, source=PriceSource.DEFAULT)
        nested = PriceQuery(
            token_address=underlying_address.lower(),
            chain=query.chain,
            depth=query.depth + 1,
        )
        return await self._resolve(nested)

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    async def _stablecoin_tier(self, query: PriceQuery) -> TierResult:
        if query.token_address in self._stablecoins:
            return Resolved(price=ONE, source=PriceSource.STABLECOIN, detail="address")
        # Explicit address tables outrank name guesses.
        if query.token_address in self._static_prices or query.token_address in self._vault_rates:
            return NOT_APPLICABLE
        pattern = tables.matches_stablecoin_pattern(query.name, query.symbol)
        if pattern is not None:
            return Resolved(price=ONE, source=PriceSource.STABLECOIN, detail=f"pattern:{pattern}")
        return NOT_APPLICABLE

    async def _static_tier(self, query: PriceQuery) -> TierResult:
        price = self._static_prices.get(query.token_address)
        if price is None:
            return NOT_APPLICABLE
        return Resolved(price=price, source=PriceSource.STATIC)

    async def _vault_table_tier(self, query: PriceQuery) -> TierResult:
        rate = self._vault_rates.get(query.token_address)
        if rate is None:
            return NOT_APPLICABLE
        underlying = await self._resolve_underlying(query, rate.underlying_address)
        return Resolved(
            price=rate.multiplier * underlying.price,
            source=PriceSource.VAULT_TABLE,
            detail=f"{rate.multiplier}x{underlying.source.value}",
        )

    async def _cache_tier(self, query: PriceQuery) -> TierResult:
        if self._db is None:
            return NOT_APPLICABLE
        try:
            async with self._db.get_async_session() as session:
                cached = await TokenPriceRepository(session).get_fresh(
                    query.token_address, max_age=self._cache_ttl
                )
        except SQLAlchemyError as e:
            logger.warning("Price cache read failed for %s: %s", query.token_address, e)
            return NOT_APPLICABLE
        if cached is None:
            return NOT_APPLICABLE
        return Resolved(price=cached.price_usd, source=PriceSource.CACHE, detail=cached.source)

    async def _provider_tier(self, query: PriceQuery) -> TierResult:
        for source in self._price_sources:
            try:
                price = await source.price_of(query.token_address, query.chain)
            except ProviderError as e:
                logger.warning("Price source %s failed for %s: %s", source.name, query.token_address, e)
                continue
            if price is not None and price.is_finite() and price > 0:
                result = Resolved(price=price, source=PriceSource.PROVIDER, detail=source.name)
                await self._write_cache(query.token_address, result)
                return result
        return NOT_APPLICABLE

    def _is_morpho_vault(self, query: PriceQuery) -> bool:
        if query.token_address in self._morpho_vaults:
            return True
        return bool(query.platform and "morpho" in query.platform.lower())

    async def _protocol_vault_tier(self, query: PriceQuery) -> TierResult:
        if self._morpho is None or not self._is_morpho_vault(query):
            return NOT_APPLICABLE
        try:
            quote = await self._morpho.get_vault_quote(query.token_address, query.chain)
        except ProviderError as e:
            logger.warning("Morpho vault lookup failed for %s: %s", query.token_address, e)
            return NOT_APPLICABLE
        if quote is None or quote.share_price <= 0:
            return NOT_APPLICABLE

        underlying = await self._resolve_underlying(query, quote.underlying_address)
        result = Resolved(
            price=quote.share_price * underlying.price,
            source=PriceSource.PROTOCOL_VAULT,
            detail=f"morpho:{quote.underlying_symbol or quote.underlying_address}",
        )
        await self._write_cache(query.token_address, result)
        return result

    async def _write_cache(self, token_address: str, result: Resolved) -> None:
        if self._db is None:
            return
        source = result.source.value if result.detail is None else f"{result.source.value}:{result.detail}"
        try:
            async with self._db.get_async_session() as session:
                await TokenPriceRepository(session).upsert(token_address, result.price, source[:32])
        except SQLAlchemyError as e:
            logger.warning("Price cache write failed for %s: %s", token_address, e)
