"""Price resolution - tiered USD pricing for pool tokens."""

from holder_sync.pricing.resolver import (
    MAX_RESOLUTION_DEPTH,
    NOT_APPLICABLE,
    ONE,
    PriceResolver,
    PriceSource,
    Resolved,
)
from holder_sync.pricing.tables import (
    STABLECOIN_ADDRESSES,
    STATIC_PRICES,
    VAULT_RATES,
    VaultRate,
)

__all__ = [
    "MAX_RESOLUTION_DEPTH",
    "NOT_APPLICABLE",
    "ONE",
    "PriceResolver",
    "PriceSource",
    "Resolved",
    "STABLECOIN_ADDRESSES",
    "STATIC_PRICES",
    "VAULT_RATES",
    "VaultRate",
]
