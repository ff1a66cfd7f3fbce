"""Morpho vault client (GraphQL) used to price vault share tokens."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import httpx

from holder_sync.providers.base import HttpProvider, ProviderUnavailableError, to_finite_decimal

logger = logging.getLogger(__name__)

DEFAULT_GRAPHQL_URL = "https://blue-api.morpho.org/graphql"

CHAIN_IDS: dict[str, int] = {
    "ethereum": 1,
    "eth": 1,
    "base": 8453,
    "polygon": 137,
    "arbitrum": 42161,
    "optimism": 10,
}

VAULT_QUERY = """
query VaultSharePrice($address: String!, $chainId: Int) {
  vaultByAddress(address: $address, chainId: $chainId) {
    address
    asset { address symbol decimals }
    state { sharePrice }
  }
}
"""


@dataclass(frozen=True)
class VaultQuote:
    """Underlying assets per vault share, and the underlying token."""

    vault_address: str
    share_price: Decimal
    underlying_address: str
    underlying_symbol: str | None = None


class MorphoClient(HttpProvider):
    """Reads vault share prices from the Morpho API."""

    name = "morpho"

    def __init__(
        self,
        *,
        graphql_url: str = DEFAULT_GRAPHQL_URL,
        max_requests_per_second: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            base_url=graphql_url,
            max_requests_per_second=max_requests_per_second,
            transport=transport,
            **kwargs,
        )
        self._graphql_url = graphql_url

    async def get_vault_quote(self, vault_address: str, chain: str) -> VaultQuote | None:
        """Fetch the share price of a vault.

        Returns:
            The quote, or ``None`` if Morpho does not know the vault.

        Raises:
            ProviderUnavailableError: If the API call fails.
        """
        chain_id = CHAIN_IDS.get(chain.lower())
        if chain_id is None:
            return None

        data = await self._request_json(
            "POST",
            self._graphql_url,
            json={"query": VAULT_QUERY, "variables": {"address": vault_address.lower(), "chainId": chain_id}},
        )
        if not isinstance(data, dict):
            raise ProviderUnavailableError(self.name, "GraphQL response is not an object")

        payload = data.get("data") or {}
        vault = payload.get("vaultByAddress") if isinstance(payload, dict) else None
        if not isinstance(vault, dict):
            logger.debug("Morpho has no vault %s on %s: %s", vault_address, chain, data.get("errors"))
            return None

        asset = vault.get("asset") or {}
        state = vault.get("state") or {}
        if not isinstance(asset, dict) or not isinstance(state, dict):
            raise ProviderUnavailableError(self.name, f"unexpected vault shape for {vault_address}")
        raw_share_price = state.get("sharePrice")
        if raw_share_price is None or not asset.get("address"):
            return None
        try:
            decimals = int(asset.get("decimals") or 18)
        except (TypeError, ValueError) as e:
            raise ProviderUnavailableError(self.name, f"invalid asset decimals {asset.get('decimals')!r}") from e
        raw_price = to_finite_decimal(raw_share_price)
        if raw_price is None:
            raise ProviderUnavailableError(self.name, f"invalid share price {raw_share_price!r}")
        share_price = raw_price / (Decimal(10) ** decimals)

        return VaultQuote(
            vault_address=vault_address.lower(),
            share_price=share_price,
            underlying_address=str(asset["address"]).lower(),
            underlying_symbol=asset.get("symbol"),
        )
