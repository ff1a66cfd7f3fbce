"""Moralis Web3 Data API adapter.

Provides paginated ERC20 owner lists, holder counts, token prices and
wallet net worth. First-page owner responses are cached briefly and
identical concurrent requests share one in-flight call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any

import httpx

from holder_sync.providers.base import (
    HolderBalance,
    HttpProvider,
    ProviderUnavailableError,
    sort_holders,
    to_finite_decimal,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://deep-index.moralis.io/api/v2.2"
PAGE_SIZE = 100
DEFAULT_FIRST_PAGE_CACHE_TTL_SECONDS = 300

CHAIN_IDS: dict[str, str] = {
    "ethereum": "0x1",
    "eth": "0x1",
    "polygon": "0x89",
    "bsc": "0x38",
    "binance": "0x38",
    "base": "0x2105",
    "arbitrum": "0xa4b1",
    "optimism": "0xa",
}

# Net-worth endpoint takes chain names rather than hex ids.
NET_WORTH_CHAINS: dict[str, str] = {
    "ethereum": "eth",
    "eth": "eth",
    "polygon": "polygon",
    "bsc": "bsc",
    "binance": "bsc",
    "base": "base",
    "arbitrum": "arbitrum",
    "optimism": "optimism",
}

_Page = tuple[list[HolderBalance], str | None]


class MoralisProvider(HttpProvider):
    """Holder data, price and portfolio value from Moralis.

    Example:
        ```python
        moralis = MoralisProvider(api_key="...")
        holders = await moralis.list_holders("0xae7a...", "ethereum", 100)
        await moralis.aclose()
        ```
    """

    name = "moralis"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        max_requests_per_second: float = 20.0,
        first_page_cache_ttl_seconds: float = DEFAULT_FIRST_PAGE_CACHE_TTL_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            base_url=base_url,
            headers={"X-API-Key": api_key},
            max_requests_per_second=max_requests_per_second,
            transport=transport,
            **kwargs,
        )
        self._first_page_ttl = first_page_cache_ttl_seconds
        self._first_page_cache: dict[tuple[str, str, int], tuple[float, _Page]] = {}
        self._in_flight: dict[tuple[str, str, int, str | None], asyncio.Task[_Page]] = {}
        self._waiters: dict[tuple[str, str, int, str | None], int] = {}

    def _chain_id(self, chain: str) -> str:
        chain_id = CHAIN_IDS.get(chain.lower())
        if chain_id is None:
            raise ProviderUnavailableError(self.name, f"unsupported chain {chain!r}")
        return chain_id

    async def list_holders(self, token_address: str, chain: str, max_count: int) -> list[HolderBalance]:
        chain_id = self._chain_id(chain)
        holders: list[HolderBalance] = []
        cursor: str | None = None

        while len(holders) < max_count:
            limit = min(PAGE_SIZE, max_count - len(holders))
            page, cursor = await self._get_owners_page(token_address.lower(), chain_id, limit, cursor)
            holders.extend(page)
            if not cursor or not page:
                break

        return sort_holders(holders)[:max_count]

    async def _get_owners_page(
        self, token_address: str, chain_id: str, limit: int, cursor: str | None
    ) -> _Page:
        cache_key = (token_address, chain_id, limit)
        if cursor is None and self._first_page_ttl > 0:
            cached = self._first_page_cache.get(cache_key)
            if cached is not None:
                expires_at, page = cached
                if expires_at > time.monotonic():
                    logger.debug("Moralis first-page cache hit for %s", token_address)
                    return page
                self._first_page_cache.pop(cache_key, None)

        flight_key = (token_address, chain_id, limit, cursor)
        task = self._in_flight.get(flight_key)
        if task is None:
            task = asyncio.create_task(self._fetch_owners_page(token_address, chain_id, limit, cursor))
            self._in_flight[flight_key] = task
            task.add_done_callback(lambda _t: self._in_flight.pop(flight_key, None))

        # Shielded so one cancelled waiter does not cancel a request others
        # still wait on; the last waiter to leave cancels it.
        self._waiters[flight_key] = self._waiters.get(flight_key, 0) + 1
        try:
            page = await asyncio.shield(task)
        except asyncio.CancelledError:
            if self._waiters.get(flight_key, 0) <= 1:
                task.cancel()
            raise
        finally:
            remaining = self._waiters.get(flight_key, 1) - 1
            if remaining > 0:
                self._waiters[flight_key] = remaining
            else:
                self._waiters.pop(flight_key, None)
        if cursor is None and self._first_page_ttl > 0:
            self._first_page_cache[cache_key] = (time.monotonic() + self._first_page_ttl, page)
        return page

    async def _fetch_owners_page(
        self, token_address: str, chain_id: str, limit: int, cursor: str | None
    ) -> _Page:
        params: dict[str, Any] = {"chain": chain_id, "limit": limit, "order": "DESC"}
        if cursor:
            params["cursor"] = cursor
        data = await self._request_json("GET", f"/erc20/{token_address}/owners", params=params)
        if not isinstance(data, dict):
            raise ProviderUnavailableError(self.name, "owners response is not an object")

        page: list[HolderBalance] = []
        for row in data.get("result") or []:
            try:
                page.append(HolderBalance(address=str(row["owner_address"]).lower(), raw_balance=int(row["balance"])))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed Moralis owner row for %s: %s", token_address, e)
        logger.debug("Moralis returned %d holders for %s", len(page), token_address)
        return page, data.get("cursor") or None

    async def count_holders(self, token_address: str, chain: str) -> int | None:
        data = await self._request_json(
            "GET",
            f"/erc20/{token_address.lower()}/holders",
            params={"chain": self._chain_id(chain)},
        )
        total = data.get("totalHolders") if isinstance(data, dict) else None
        if total is None:
            return None
        try:
            return int(total)
        except (TypeError, ValueError) as e:
            raise ProviderUnavailableError(self.name, f"invalid totalHolders {total!r}") from e

    async def price_of(self, token_address: str, chain: str) -> Decimal | None:
        data = await self._request_json(
            "GET",
            f"/erc20/{token_address.lower()}/price",
            params={"chain": self._chain_id(chain)},
        )
        price = to_finite_decimal(data.get("usdPrice")) if isinstance(data, dict) else None
        return price if price is not None and price > 0 else None

    async def portfolio_value_usd(self, address: str, chain: str) -> Decimal:
        """Total wallet net worth in USD on the pool's chain."""
        net_worth_chain = NET_WORTH_CHAINS.get(chain.lower())
        if net_worth_chain is None:
            raise ProviderUnavailableError(self.name, f"unsupported chain {chain!r}")
        data = await self._request_json(
            "GET",
            f"/wallets/{address.lower()}/net-worth",
            params={"chains[0]": net_worth_chain, "exclude_spam": "true"},
        )
        value = data.get("total_networth_usd") if isinstance(data, dict) else None
        if value is None:
            raise ProviderUnavailableError(self.name, "net-worth response missing total_networth_usd")
        net_worth = to_finite_decimal(value)
        if net_worth is None:
            raise ProviderUnavailableError(self.name, f"invalid total_networth_usd {value!r}")
        return net_worth
