"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from holder_sync.providers.base import HolderBalance, ProviderUnavailableError
from holder_sync.storage.database import DatabaseManager
from holder_sync.storage.repos import PoolDTO, PoolRepository

POOL_ADDRESS = "0x1234567890abcdef1234567890abcdef12345678"


class FakeHolderProvider:
    """In-memory holder provider with call counting."""

    def __init__(
        self,
        name: str,
        *,
        holders: list[HolderBalance] | None = None,
        count: int | None = None,
        price: Decimal | None = None,
        error: bool = False,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.holders = holders or []
        self.count = count
        self.price = price
        self.error = error
        self.delay = delay
        self.list_calls = 0
        self.count_calls = 0
        self.price_calls = 0
        self.cancelled = False

    async def list_holders(self, token_address: str, chain: str, max_count: int) -> list[HolderBalance]:
        self.list_calls += 1
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.error:
            raise ProviderUnavailableError(self.name, "boom")
        return list(self.holders)

    async def count_holders(self, token_address: str, chain: str) -> int | None:
        self.count_calls += 1
        if self.error:
            raise ProviderUnavailableError(self.name, "boom")
        return self.count

    async def price_of(self, token_address: str, chain: str) -> Decimal | None:
        self.price_calls += 1
        if self.error:
            raise ProviderUnavailableError(self.name, "boom")
        return self.price

    async def aclose(self) -> None:
        return None


def make_holders(n: int, *, start: int = 1_000_000) -> list[HolderBalance]:
    """``n`` holders with strictly decreasing balances."""
    return [
        HolderBalance(address=f"0x{i:040x}", raw_balance=(start - i) * 10**18)
        for i in range(1, n + 1)
    ]


@pytest.fixture
def provider_factory() -> type[FakeHolderProvider]:
    return FakeHolderProvider


@pytest.fixture
def holders_factory():
    return make_holders


@pytest.fixture
async def db():
    """In-memory SQLite database with the schema created."""
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
async def pool(db: DatabaseManager) -> PoolDTO:
    """A tracked pool with a contract address."""
    async with db.get_async_session() as session:
        return await PoolRepository(session).insert(
            PoolDTO(
                id="pool-1",
                token_pair="ETH/stETH",
                pool_address=POOL_ADDRESS,
                chain="ethereum",
                platform="lido",
            )
        )
