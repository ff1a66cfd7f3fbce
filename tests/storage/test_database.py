"""Tests for engine construction and session scoping."""

import pytest

from holder_sync.storage.database import DatabaseManager, normalize_async_database_url
from holder_sync.storage.repos import PoolDTO, PoolRepository


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("postgresql://u:p@host/db", "postgresql+asyncpg://u:p@host/db"),
        ("postgresql+asyncpg://u:p@host/db", "postgresql+asyncpg://u:p@host/db"),
        ("sqlite:///holders.db", "sqlite+aiosqlite:///holders.db"),
        ("sqlite+aiosqlite:///:memory:", "sqlite+aiosqlite:///:memory:"),
    ],
)
def test_normalize_async_database_url(url: str, expected: str) -> None:
    assert normalize_async_database_url(url) == expected


@pytest.mark.asyncio
async def test_session_commits_on_exit(db: DatabaseManager) -> None:
    async with db.get_async_session() as session:
        await PoolRepository(session).insert(
            PoolDTO(id="p", token_pair="ETH/USDC", pool_address="0x" + "1" * 40, chain="ethereum")
        )

    async with db.get_async_session() as session:
        assert await PoolRepository(session).get_by_id("p") is not None


@pytest.mark.asyncio
async def test_session_rolls_back_on_error(db: DatabaseManager) -> None:
    with pytest.raises(RuntimeError):
        async with db.get_async_session() as session:
            await PoolRepository(session).insert(
                PoolDTO(id="p", token_pair="ETH/USDC", pool_address="0x" + "1" * 40, chain="ethereum")
            )
            raise RuntimeError("abort")

    async with db.get_async_session() as session:
        assert await PoolRepository(session).get_by_id("p") is None


@pytest.mark.asyncio
async def test_dispose_is_idempotent(db: DatabaseManager) -> None:
    await db.dispose_async()
    await db.dispose_async()
