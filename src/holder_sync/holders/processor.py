"""Holder record computation.

Turns raw provider balances into ranked, USD-valued holder records ready
for a snapshot swap. Pool share is computed against the sum of the
balances passed in, not the on-chain total supply, so shares across a
top-N subset always add up to 100.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from holder_sync.providers.base import HolderBalance, PortfolioValueProvider, ProviderError
from holder_sync.providers.chain import ChainClientError
from holder_sync.storage.repos import HolderRecordDTO

if TYPE_CHECKING:
    from holder_sync.providers.chain import EvmChainClient

logger = logging.getLogger(__name__)

DEFAULT_WALLET_LOOKUP_CONCURRENCY = 5
ZERO = Decimal(0)
HUNDRED = Decimal(100)


@dataclass(frozen=True)
class WalletValues:
    usd: Decimal
    eth: Decimal


class HolderDataProcessor:
    """Builds holder records for one pool.

    Wallet lookups are optional. Without a portfolio provider the wallet
    value equals the holder's position value; without a chain client the
    ETH balance is zero.
    """

    def __init__(
        self,
        *,
        portfolio: PortfolioValueProvider | None = None,
        chain_clients: Mapping[str, EvmChainClient] | None = None,
        wallet_lookup_concurrency: int = DEFAULT_WALLET_LOOKUP_CONCURRENCY,
    ) -> None:
        self._portfolio = portfolio
        self._chain_clients = {k.lower(): v for k, v in (chain_clients or {}).items()}
        self._concurrency = max(1, wallet_lookup_concurrency)

    async def process(
        self,
        holders: Sequence[HolderBalance],
        *,
        pool_id: str,
        token_address: str,
        unit_price: Decimal,
        decimals: int,
        chain: str,
    ) -> list[HolderRecordDTO]:
        """Rank holders and compute per-holder values.

        Args:
            holders: Raw balances in any order.
            pool_id: Pool the records belong to.
            token_address: Pool token address.
            unit_price: USD price of one whole token.
            decimals: Token decimals used to format raw balances.
            chain: Chain identifier for wallet lookups.

        Returns:
            Records with ranks ``1..N`` by non-increasing balance.
        """
        if not holders:
            return []

        # sorted() is stable, so equal balances keep provider order.
        ordered = sorted(holders, key=lambda h: h.raw_balance, reverse=True)
        total = sum(h.raw_balance for h in ordered)
        scale = Decimal(10) ** decimals
        now = datetime.now(UTC)

        semaphore = asyncio.Semaphore(self._concurrency)
        position_values = [(Decimal(h.raw_balance) / scale) * unit_price for h in ordered]
        wallets = await asyncio.gather(
            *(
                self._lookup_wallet(h.address, usd_value, chain, semaphore)
                for h, usd_value in zip(ordered, position_values)
            )
        )

        records: list[HolderRecordDTO] = []
        for i, (holder, usd_value, wallet) in enumerate(zip(ordered, position_values, wallets)):
            share = (Decimal(holder.raw_balance) / Decimal(total) * HUNDRED) if total > 0 else ZERO
            records.append(
                HolderRecordDTO(
                    pool_id=pool_id,
                    token_address=token_address.lower(),
                    holder_address=holder.address.lower(),
                    token_balance=str(holder.raw_balance),
                    token_balance_formatted=Decimal(holder.raw_balance) / scale,
                    usd_value=usd_value,
                    wallet_balance_usd=wallet.usd,
                    wallet_balance_eth=wallet.eth,
                    pool_share_percentage=share,
                    rank=i + 1,
                    last_updated=now,
                )
            )

        logger.debug(
            "Processed %d holders for pool %s (price=%s, decimals=%d)",
            len(records),
            pool_id,
            unit_price,
            decimals,
        )
        return records

    async def _lookup_wallet(
        self,
        address: str,
        usd_value: Decimal,
        chain: str,
        semaphore: asyncio.Semaphore,
    ) -> WalletValues:
        async with semaphore:
            usd = await self._wallet_usd(address, usd_value, chain)
            eth = await self._wallet_eth(address, chain)
        return WalletValues(usd=usd, eth=eth)

    async def _wallet_usd(self, address: str, usd_value: Decimal, chain: str) -> Decimal:
        if self._portfolio is None:
            return usd_value
        try:
            portfolio = await self._portfolio.portfolio_value_usd(address, chain)
        except ProviderError as e:
            logger.debug("Portfolio lookup failed for %s: %s", address, e)
            return usd_value
        if not portfolio.is_finite():
            logger.debug("Portfolio value for %s is not finite: %s", address, portfolio)
            return usd_value
        # A wallet is never worth less than the position it holds.
        return max(portfolio, usd_value)

    async def _wallet_eth(self, address: str, chain: str) -> Decimal:
        client = self._chain_clients.get(chain.lower())
        if client is None:
            return ZERO
        try:
            return await client.get_native_balance(address)
        except (ChainClientError, ValueError) as e:
            logger.debug("Native balance lookup failed for %s: %s", address, e)
            return ZERO
