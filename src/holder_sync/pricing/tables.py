"""Static pricing reference data.

Addresses are stored lower-cased. These tables are consulted before any
network call, so most stable-denominated pool tokens never reach a
provider.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

USDC_ETHEREUM = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"

STABLECOIN_ADDRESSES: frozenset[str] = frozenset(
    {
        USDC_ETHEREUM,  # USDC
        "0xdac17f958d2ee523a2206206994597c13d831ec7",  # USDT
        "0x6b175474e89094c44da98b954eedeac495271d0f",  # DAI
        "0x4fabb145d64652a948d72533023f6e7a623c7c53",  # BUSD
        "0x8e870d67f660d95d5be530380d0ec0bd388289e1",  # USDP
        "0x056fd409e1d7a124bd7017459dfea2f387b6d5cd",  # GUSD
        "0x853d955acef822db058eb8505911ed77f175b99e",  # FRAX
        "0x5f98805a4e8be255a32880fdec7f6728c6568ba0",  # LUSD
        "0x0000000000085d4780b73119b644ae5ecd22b376",  # TUSD
        "0x57ab1ec28d129707052df4df418d58a2d46d5f51",  # sUSD
        "0xe2f2a5c287993345a840db3b0845fbc70f5935a5",  # mUSD
        "0x1456688345527be1f37e9e627da0837d6f08c925",  # USDP (old)
        "0xa47c8bf37f92abed4a126bda807a7b7498661acd",  # UST
        "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913",  # USDC (Base)
        "0xd9aaec86b65d86f6a7b5b1b0c42ffa531710b6ca",  # USDbC (Base)
    }
)

# Substrings matched against lower-cased token name and symbol.
STABLECOIN_PATTERNS: tuple[str, ...] = (
    # tickers
    "usdc", "usdt", "dai", "busd", "tusd", "usdp", "gusd", "frax", "lusd", "mimatic",
    "susd", "cusd", "usdd", "usdn", "usds", "usde", "usdm", "pyusd", "crvusd", "gho",
    "mkusd", "alusd", "dola", "ousd", "usdc.e", "usdt.e", "dai.e",
    # full names
    "usd coin", "tether", "binance usd", "true usd", "pax dollar", "gemini dollar",
    "bridged usdc", "bridged usdt",
    # curated vault shares denominated in USD
    "steakusd", "infiniusd", "hyperusd", "smokeusd", "vaultusd", "tacusd", "mevusd",
)

# Canonical prices for well-known tokens that are not caught by the
# stablecoin rules.
STATIC_PRICES: dict[str, Decimal] = {
    "0xbeef1f5bd88285e5b239b6aacb991d38cca23ac9": Decimal("1.00"),  # Steakhouse USDC
}


@dataclass(frozen=True)
class VaultRate:
    """Fixed exchange rate of a vault share against its underlying."""

    multiplier: Decimal
    underlying_address: str


# Share tokens whose exchange rate is not reliably readable on-chain.
VAULT_RATES: dict[str, VaultRate] = {
    "0x1e2aaadcf528b9cc08f43d4fd7db488ce89f5741": VaultRate(  # TAC USDC
        multiplier=Decimal("3.6"),
        underlying_address=USDC_ETHEREUM,
    ),
}


def matches_stablecoin_pattern(name: str | None, symbol: str | None) -> str | None:
    """Return the first pattern found in the name or symbol, if any."""
    haystacks = [s.lower() for s in (name, symbol) if s]
    for pattern in STABLECOIN_PATTERNS:
        if any(pattern in h for h in haystacks):
            return pattern
    return None
