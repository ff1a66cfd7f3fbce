"""CoinGecko token price source (price only, no holder data)."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import httpx

from holder_sync.providers.base import HttpProvider, to_finite_decimal

DEFAULT_BASE_URL = "https://api.coingecko.com/api/v3"

PLATFORMS = {
    "ethereum": "ethereum",
    "eth": "ethereum",
    "polygon": "polygon-pos",
    "arbitrum": "arbitrum-one",
    "optimism": "optimistic-ethereum",
    "base": "base",
    "bsc": "binance-smart-chain",
}


class CoinGeckoPriceSource(HttpProvider):
    """Quotes ``/simple/token_price/{platform}`` in USD."""

    name = "coingecko"

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str | None = None,
        max_requests_per_second: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        headers = {"x-cg-demo-api-key": api_key} if api_key else None
        super().__init__(
            base_url=base_url,
            headers=headers,
            max_requests_per_second=max_requests_per_second,
            transport=transport,
            **kwargs,
        )

    async def price_of(self, token_address: str, chain: str) -> Decimal | None:
        platform = PLATFORMS.get(chain.lower())
        if platform is None:
            return None
        token_key = token_address.lower()
        payload = await self._request_json(
            "GET",
            f"/simple/token_price/{platform}",
            params={"contract_addresses": token_key, "vs_currencies": "usd"},
        )
        quote = payload.get(token_key) if isinstance(payload, dict) else None
        if not isinstance(quote, dict):
            return None
        price = to_finite_decimal(quote.get("usd"))
        return price if price is not None and price > 0 else None
