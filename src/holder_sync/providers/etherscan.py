"""Etherscan v2 adapter (token holder list and holder count)."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

import httpx

from holder_sync.providers.base import (
    HolderBalance,
    HttpProvider,
    ProviderUnavailableError,
    sort_holders,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.etherscan.io/v2/api"
PAGE_SIZE = 1000
DEFAULT_MAX_PAGES = 1

CHAIN_IDS: dict[str, int] = {
    "ethereum": 1,
    "eth": 1,
    "polygon": 137,
    "bsc": 56,
    "base": 8453,
    "arbitrum": 42161,
    "optimism": 10,
}

# Etherscan reports "no rows" as status 0 with one of these messages.
_EMPTY_MESSAGES = ("no data found", "no token holder found", "no records found")


class EtherscanProvider(HttpProvider):
    """Token holder list and count from the Etherscan v2 multichain API."""

    name = "etherscan"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        max_pages: int = DEFAULT_MAX_PAGES,
        max_requests_per_second: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            base_url=base_url,
            max_requests_per_second=max_requests_per_second,
            transport=transport,
            **kwargs,
        )
        self._endpoint = base_url
        self._api_key = api_key
        self._max_pages = max_pages

    def _chain_id(self, chain: str) -> int:
        chain_id = CHAIN_IDS.get(chain.lower())
        if chain_id is None:
            raise ProviderUnavailableError(self.name, f"unsupported chain {chain!r}")
        return chain_id

    async def _call(self, chain: str, **params: Any) -> Any:
        query = {"chainid": self._chain_id(chain), "apikey": self._api_key, **params}
        data = await self._request_json("GET", self._endpoint, params=query)
        if not isinstance(data, dict):
            raise ProviderUnavailableError(self.name, "response is not an object")
        if str(data.get("status")) == "0":
            message = str(data.get("message") or "")
            result = data.get("result")
            if any(m in f"{message} {result}".lower() for m in _EMPTY_MESSAGES):
                return []
            raise ProviderUnavailableError(self.name, f"{message}: {result}")
        return data.get("result")

    async def list_holders(self, token_address: str, chain: str, max_count: int) -> list[HolderBalance]:
        holders: list[HolderBalance] = []
        for page in range(1, self._max_pages + 1):
            rows = await self._call(
                chain,
                module="token",
                action="tokenholderlist",
                contractaddress=token_address.lower(),
                page=page,
                offset=PAGE_SIZE,
            )
            if not isinstance(rows, list) or not rows:
                break
            for row in rows:
                try:
                    holders.append(
                        HolderBalance(
                            address=str(row["TokenHolderAddress"]).lower(),
                            raw_balance=int(row["TokenHolderQuantity"]),
                        )
                    )
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping malformed Etherscan holder row for %s: %s", token_address, e)
            if len(rows) < PAGE_SIZE:
                break
        return sort_holders(holders)[:max_count]

    async def count_holders(self, token_address: str, chain: str) -> int | None:
        result = await self._call(
            chain,
            module="token",
            action="tokenholdercount",
            contractaddress=token_address.lower(),
        )
        if result in (None, []):
            return None
        try:
            return int(result)
        except (TypeError, ValueError) as e:
            raise ProviderUnavailableError(self.name, f"invalid holder count {result!r}") from e

    async def price_of(self, token_address: str, chain: str) -> Decimal | None:
        return None
