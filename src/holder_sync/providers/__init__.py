"""Provider adapters - external holder, price and chain data sources."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from holder_sync.providers.alchemy import AlchemyProvider
from holder_sync.providers.base import (
    HolderBalance,
    HolderDataProvider,
    HttpProvider,
    PortfolioValueProvider,
    ProviderError,
    ProviderUnavailableError,
    RateLimiter,
    TokenPriceSource,
)
from holder_sync.providers.chain import ChainClientError, EvmChainClient, RPCError
from holder_sync.providers.coingecko import CoinGeckoPriceSource
from holder_sync.providers.etherscan import EtherscanProvider
from holder_sync.providers.moralis import MoralisProvider
from holder_sync.providers.morpho import MorphoClient, VaultQuote

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from holder_sync.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class ProviderRegistry:
    """Configured adapters, in priority order where order matters."""

    holder_providers: list[HolderDataProvider] = field(default_factory=list)
    price_sources: list[TokenPriceSource] = field(default_factory=list)
    portfolio: PortfolioValueProvider | None = None
    morpho: MorphoClient | None = None
    chain_clients: dict[str, EvmChainClient] = field(default_factory=dict)

    async def aclose(self) -> None:
        closers: list[object] = [*self.holder_providers, *self.price_sources, self.morpho]
        closers.extend(self.chain_clients.values())
        seen: set[int] = set()
        for obj in closers:
            if obj is None or id(obj) in seen:
                continue
            seen.add(id(obj))
            close = getattr(obj, "aclose", None)
            if callable(close):
                try:
                    await close()
                except Exception as e:
                    logger.warning("Failed to close %s: %s", type(obj).__name__, e)


def build_providers(settings: Settings, *, redis: Redis | None = None) -> ProviderRegistry:
    """Build adapters from settings, skipping any without credentials."""
    wanted = set(settings.sync.providers_priority)
    available: dict[str, HolderDataProvider] = {}
    if "moralis" in wanted and settings.moralis.api_key is not None:
        available["moralis"] = MoralisProvider(
            settings.moralis.api_key.get_secret_value(),
            base_url=settings.moralis.base_url,
            max_requests_per_second=settings.moralis.max_requests_per_second,
        )
    if "alchemy" in wanted and settings.alchemy.api_key is not None:
        available["alchemy"] = AlchemyProvider(
            settings.alchemy.api_key.get_secret_value(),
            max_transfer_pages=settings.alchemy.max_transfer_pages,
            max_requests_per_second=settings.alchemy.max_requests_per_second,
        )
    if "etherscan" in wanted and settings.etherscan.api_key is not None:
        available["etherscan"] = EtherscanProvider(
            settings.etherscan.api_key.get_secret_value(),
            base_url=settings.etherscan.base_url,
            max_requests_per_second=settings.etherscan.max_requests_per_second,
        )

    registry = ProviderRegistry()
    for name in settings.sync.providers_priority:
        provider = available.pop(name, None)
        if provider is None:
            logger.info("Provider %s is not configured; skipping", name)
            continue
        registry.holder_providers.append(provider)

    # Holder providers double as price sources; CoinGecko slots in after the first.
    price_sources: list[TokenPriceSource] = [p for p in registry.holder_providers if p.name != "etherscan"]
    if settings.coingecko.enabled:
        coingecko = CoinGeckoPriceSource(
            base_url=settings.coingecko.base_url,
            api_key=settings.coingecko.api_key.get_secret_value() if settings.coingecko.api_key else None,
        )
        price_sources.insert(min(1, len(price_sources)), coingecko)
    registry.price_sources = price_sources

    moralis = next((p for p in registry.holder_providers if isinstance(p, MoralisProvider)), None)
    registry.portfolio = moralis

    if settings.morpho.enabled:
        registry.morpho = MorphoClient(graphql_url=settings.morpho.graphql_url)

    if settings.rpc.url:
        registry.chain_clients[settings.rpc.chain.lower()] = EvmChainClient(
            settings.rpc.url,
            chain=settings.rpc.chain,
            fallback_rpc_url=settings.rpc.fallback_url,
            redis=redis,
            max_requests_per_second=settings.rpc.max_requests_per_second,
        )

    logger.info(
        "Providers: holders=%s prices=%s portfolio=%s morpho=%s chains=%s",
        [p.name for p in registry.holder_providers],
        [p.name for p in registry.price_sources],
        "moralis" if registry.portfolio else "none",
        registry.morpho is not None,
        sorted(registry.chain_clients),
    )
    return registry


__all__ = [
    "AlchemyProvider",
    "ChainClientError",
    "CoinGeckoPriceSource",
    "EtherscanProvider",
    "EvmChainClient",
    "HolderBalance",
    "HolderDataProvider",
    "HttpProvider",
    "MoralisProvider",
    "MorphoClient",
    "PortfolioValueProvider",
    "ProviderError",
    "ProviderRegistry",
    "ProviderUnavailableError",
    "RPCError",
    "RateLimiter",
    "TokenPriceSource",
    "VaultQuote",
    "build_providers",
]
