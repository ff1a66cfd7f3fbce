"""Tests for the Morpho vault client."""

import json
from decimal import Decimal

import httpx
import pytest

from holder_sync.providers.base import ProviderUnavailableError
from holder_sync.providers.morpho import MorphoClient

VAULT = "0xBEEF000000000000000000000000000000000001"
USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"


def _client(handler) -> MorphoClient:
    return MorphoClient(
        graphql_url="https://morpho.test/graphql",
        max_requests_per_second=1000,
        retry_base_delay=0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_vault_quote() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["variables"] == {"address": VAULT.lower(), "chainId": 1}
        return httpx.Response(
            200,
            json={
                "data": {
                    "vaultByAddress": {
                        "address": VAULT,
                        "asset": {"address": USDC.upper().replace("0X", "0x"), "symbol": "USDC", "decimals": 6},
                        "state": {"sharePrice": "1050000"},
                    }
                }
            },
        )

    client = _client(handler)
    quote = await client.get_vault_quote(VAULT, "ethereum")
    await client.aclose()

    assert quote is not None
    assert quote.share_price == Decimal("1.05")
    assert quote.underlying_address == USDC
    assert quote.underlying_symbol == "USDC"


@pytest.mark.asyncio
async def test_unknown_vault() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"data": {"vaultByAddress": None}, "errors": [{"message": "No results matching given parameters"}]},
        )

    client = _client(handler)
    assert await client.get_vault_quote(VAULT, "ethereum") is None
    await client.aclose()


@pytest.mark.asyncio
async def test_unsupported_chain_makes_no_call() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    client = _client(handler)
    assert await client.get_vault_quote(VAULT, "solana") is None
    await client.aclose()


@pytest.mark.asyncio
async def test_invalid_share_price() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": {
                    "vaultByAddress": {
                        "asset": {"address": USDC, "decimals": 6},
                        "state": {"sharePrice": "not-a-number"},
                    }
                }
            },
        )

    client = _client(handler)
    with pytest.raises(ProviderUnavailableError):
        await client.get_vault_quote(VAULT, "ethereum")
    await client.aclose()
