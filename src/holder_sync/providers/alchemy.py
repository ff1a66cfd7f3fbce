"""Alchemy adapter.

Alchemy has no holder-list endpoint, so holders are reconstructed by
replaying ``alchemy_getAssetTransfers`` pages for the token and netting
each address's inflows and outflows. The replay is bounded by a page cap,
which makes this a best-effort fallback for tokens with long histories.
Prices come from the Alchemy Prices API.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any

import httpx

from holder_sync.providers.base import (
    ZERO_ADDRESS,
    HolderBalance,
    HttpProvider,
    ProviderUnavailableError,
    sort_holders,
    to_finite_decimal,
)

logger = logging.getLogger(__name__)

PRICES_BASE_URL = "https://api.g.alchemy.com"
TRANSFERS_PAGE_SIZE_HEX = "0x3e8"  # 1000
DEFAULT_MAX_TRANSFER_PAGES = 10

NETWORKS: dict[str, str] = {
    "ethereum": "eth-mainnet",
    "eth": "eth-mainnet",
    "polygon": "polygon-mainnet",
    "base": "base-mainnet",
    "arbitrum": "arb-mainnet",
    "optimism": "opt-mainnet",
    "bsc": "bnb-mainnet",
}


def _parse_raw_value(transfer: dict[str, Any]) -> int:
    raw_contract = transfer.get("rawContract") or {}
    if not isinstance(raw_contract, dict):
        raise ValueError(f"rawContract is not an object: {raw_contract!r}")
    raw = raw_contract.get("value")
    if raw is None:
        return 0
    return int(str(raw), 16) if str(raw).startswith("0x") else int(str(raw))


class AlchemyProvider(HttpProvider):
    """Holder list via transfer replay and prices via the Prices API."""

    name = "alchemy"

    def __init__(
        self,
        api_key: str,
        *,
        max_transfer_pages: int = DEFAULT_MAX_TRANSFER_PAGES,
        max_requests_per_second: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            base_url=PRICES_BASE_URL,
            max_requests_per_second=max_requests_per_second,
            transport=transport,
            **kwargs,
        )
        self._api_key = api_key
        self._max_transfer_pages = max_transfer_pages
        self._rpc_id = 0

    def _network(self, chain: str) -> str:
        network = NETWORKS.get(chain.lower())
        if network is None:
            raise ProviderUnavailableError(self.name, f"unsupported chain {chain!r}")
        return network

    def _rpc_url(self, chain: str) -> str:
        return f"https://{self._network(chain)}.g.alchemy.com/v2/{self._api_key}"

    async def _rpc(self, chain: str, method: str, params: list[Any]) -> Any:
        self._rpc_id += 1
        body = {"jsonrpc": "2.0", "id": self._rpc_id, "method": method, "params": params}
        data = await self._request_json("POST", self._rpc_url(chain), json=body)
        if not isinstance(data, dict):
            raise ProviderUnavailableError(self.name, f"{method} returned a non-object")
        if data.get("error"):
            message = data["error"].get("message") if isinstance(data["error"], dict) else data["error"]
            raise ProviderUnavailableError(self.name, f"{method} error: {message}")
        return data.get("result")

    async def list_holders(self, token_address: str, chain: str, max_count: int) -> list[HolderBalance]:
        token = token_address.lower()
        balances: dict[str, int] = defaultdict(int)
        page_key: str | None = None

        for page in range(self._max_transfer_pages):
            query: dict[str, Any] = {
                "fromBlock": "0x0",
                "toBlock": "latest",
                "contractAddresses": [token],
                "category": ["erc20"],
                "withMetadata": False,
                "excludeZeroValue": True,
                "maxCount": TRANSFERS_PAGE_SIZE_HEX,
            }
            if page_key:
                query["pageKey"] = page_key
            result = await self._rpc(chain, "alchemy_getAssetTransfers", [query])
            if result is None:
                break
            if not isinstance(result, dict) or not isinstance(result.get("transfers") or [], list):
                raise ProviderUnavailableError(self.name, "alchemy_getAssetTransfers returned an unexpected shape")

            for transfer in result.get("transfers") or []:
                if not isinstance(transfer, dict):
                    logger.warning("Skipping non-object transfer for %s", token)
                    continue
                try:
                    amount = _parse_raw_value(transfer)
                except ValueError:
                    logger.warning("Skipping transfer with unparseable value for %s", token)
                    continue
                sender = str(transfer.get("from") or "").lower()
                recipient = str(transfer.get("to") or "").lower()
                if sender and sender != ZERO_ADDRESS:
                    balances[sender] -= amount
                if recipient and recipient != ZERO_ADDRESS:
                    balances[recipient] += amount

            page_key = result.get("pageKey")
            if not page_key:
                break
        else:
            logger.warning(
                "Alchemy transfer replay for %s stopped at %d pages; balances may be incomplete",
                token,
                self._max_transfer_pages,
            )

        holders = [
            HolderBalance(address=address, raw_balance=balance)
            for address, balance in balances.items()
            if balance > 0 and address != token
        ]
        return sort_holders(holders)[:max_count]

    async def count_holders(self, token_address: str, chain: str) -> int | None:
        return None

    async def price_of(self, token_address: str, chain: str) -> Decimal | None:
        body = {"addresses": [{"network": self._network(chain), "address": token_address.lower()}]}
        data = await self._request_json("POST", f"/prices/v1/{self._api_key}/tokens/by-address", json=body)
        rows = data.get("data") if isinstance(data, dict) else None
        if not isinstance(rows, list) or not rows:
            return None
        if not isinstance(rows[0], dict) or not isinstance(rows[0].get("prices") or [], list):
            raise ProviderUnavailableError(self.name, "prices response has an unexpected shape")
        for quote in rows[0].get("prices") or []:
            if not isinstance(quote, dict) or str(quote.get("currency", "")).lower() != "usd":
                continue
            price = to_finite_decimal(quote.get("value"))
            return price if price is not None and price > 0 else None
        return None
