"""Repository pattern implementations for data access.

This module provides clean data access abstractions for pools, stored
holder snapshots, pool metrics, cached token prices and sync events.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from holder_sync.storage.models import (
    PoolMetricsModel,
    PoolModel,
    SyncEventModel,
    TokenHolderModel,
    TokenPriceModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when a holder snapshot cannot be written atomically."""

    def __init__(self, message: str, *, pool_id: str | None = None) -> None:
        super().__init__(message)
        self.pool_id = pool_id


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _upsert(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-appropriate INSERT supporting ON CONFLICT."""
    bind = session.get_bind()
    if bind.dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


@dataclass
class PoolDTO:
    """Data transfer object for tracked pools."""

    id: str
    token_pair: str
    pool_address: str | None
    chain: str
    platform: str | None = None
    is_active: bool = True

    @classmethod
    def from_model(cls, model: PoolModel) -> PoolDTO:
        return cls(
            id=model.id,
            token_pair=model.token_pair,
            pool_address=model.pool_address,
            chain=model.chain,
            platform=model.platform,
            is_active=model.is_active,
        )

    @property
    def pair_symbols(self) -> tuple[str, ...]:
        """Symbols parsed from the display pair, e.g. ``"USDC/WETH"``."""
        parts = self.token_pair.replace("-", "/").split("/")
        return tuple(p.strip() for p in parts if p.strip())


@dataclass
class HolderRecordDTO:
    """Data transfer object for a stored holder row."""

    pool_id: str
    token_address: str
    holder_address: str
    token_balance: str
    token_balance_formatted: Decimal
    usd_value: Decimal
    wallet_balance_usd: Decimal
    wallet_balance_eth: Decimal
    pool_share_percentage: Decimal
    rank: int
    last_updated: datetime | None = None

    @classmethod
    def from_model(cls, model: TokenHolderModel) -> HolderRecordDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            pool_id=model.pool_id,
            token_address=model.token_address,
            holder_address=model.holder_address,
            token_balance=model.token_balance,
            token_balance_formatted=model.token_balance_formatted,
            usd_value=model.usd_value,
            wallet_balance_usd=model.wallet_balance_usd,
            wallet_balance_eth=model.wallet_balance_eth,
            pool_share_percentage=model.pool_share_percentage,
            rank=model.rank,
            last_updated=_as_utc(model.last_updated),
        )


@dataclass
class PoolMetricsDTO:
    """Data transfer object for current pool metrics."""

    pool_id: str
    holders_count: int | None
    holders_status: str
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: PoolMetricsModel) -> PoolMetricsDTO:
        return cls(
            pool_id=model.pool_id,
            holders_count=model.holders_count,
            holders_status=model.holders_status,
            updated_at=_as_utc(model.updated_at),
        )


@dataclass
class TokenPriceDTO:
    """Data transfer object for cached token prices."""

    token_address: str
    price_usd: Decimal
    source: str
    updated_at: datetime

    @classmethod
    def from_model(cls, model: TokenPriceModel) -> TokenPriceDTO:
        return cls(
            token_address=model.token_address,
            price_usd=model.price_usd,
            source=model.source,
            updated_at=_as_utc(model.updated_at),
        )


@dataclass
class SyncEventDTO:
    """Data transfer object for sync events."""

    event_type: str
    severity: str
    message: str
    pool_id: str | None = None
    details: dict[str, Any] | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: SyncEventModel) -> SyncEventDTO:
        return cls(
            event_type=model.event_type,
            severity=model.severity,
            message=model.message,
            pool_id=model.pool_id,
            details=json.loads(model.details) if model.details else None,
            created_at=_as_utc(model.created_at),
        )


class PoolRepository:
    """Read-only access to tracked pools."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, pool_id: str) -> PoolDTO | None:
        result = await self.session.execute(select(PoolModel).where(PoolModel.id == pool_id))
        model = result.scalar_one_or_none()
        return PoolDTO.from_model(model) if model else None

    async def list_with_address(self) -> list[PoolDTO]:
        """List pools that have a non-empty contract address."""
        result = await self.session.execute(
            select(PoolModel)
            .where(PoolModel.pool_address.is_not(None), PoolModel.pool_address != "")
            .order_by(PoolModel.created_at.asc(), PoolModel.id.asc())
        )
        return [PoolDTO.from_model(m) for m in result.scalars().all()]

    async def insert(self, dto: PoolDTO) -> PoolDTO:
        """Insert a pool (used by seeding and tests)."""
        model = PoolModel(
            id=dto.id,
            token_pair=dto.token_pair,
            pool_address=dto.pool_address.lower() if dto.pool_address else dto.pool_address,
            chain=dto.chain,
            platform=dto.platform,
            is_active=dto.is_active,
        )
        self.session.add(model)
        await self.session.flush()
        return PoolDTO.from_model(model)


class HolderRepository:
    """Repository for stored holder snapshots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_for_pool(self, pool_id: str) -> list[HolderRecordDTO]:
        result = await self.session.execute(
            select(TokenHolderModel)
            .where(TokenHolderModel.pool_id == pool_id)
            .order_by(TokenHolderModel.rank.asc())
        )
        return [HolderRecordDTO.from_model(m) for m in result.scalars().all()]

    async def count_for_pool(self, pool_id: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(TokenHolderModel).where(TokenHolderModel.pool_id == pool_id)
        )
        return int(result.scalar_one())

    async def replace_for_pool(self, pool_id: str, records: list[HolderRecordDTO]) -> int:
        """Atomically replace every stored holder row for a pool.

        Deletes the previous set and bulk-inserts the new one in the
        session's transaction. On failure the caller must roll back, which
        leaves the previous rows in place.

        Args:
            pool_id: Pool whose snapshot is replaced.
            records: New rows, ranks 1..N.

        Returns:
            Number of rows inserted.

        Raises:
            PersistenceError: If the delete or insert fails.
        """
        now = datetime.now(UTC)
        try:
            await self.session.execute(
                delete(TokenHolderModel).where(TokenHolderModel.pool_id == pool_id)
            )
            self.session.add_all(
                [
                    TokenHolderModel(
                        pool_id=pool_id,
                        token_address=r.token_address.lower(),
                        holder_address=r.holder_address.lower(),
                        token_balance=r.token_balance,
                        token_balance_formatted=r.token_balance_formatted,
                        usd_value=r.usd_value,
                        wallet_balance_usd=r.wallet_balance_usd,
                        wallet_balance_eth=r.wallet_balance_eth,
                        pool_share_percentage=r.pool_share_percentage,
                        rank=r.rank,
                        last_updated=r.last_updated or now,
                    )
                    for r in records
                ]
            )
            await self.session.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to replace holders for pool {pool_id}: {e}", pool_id=pool_id
            ) from e
        return len(records)


class PoolMetricsRepository:
    """Repository for the current-metrics row of each pool."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, pool_id: str) -> PoolMetricsDTO | None:
        result = await self.session.execute(
            select(PoolMetricsModel).where(PoolMetricsModel.pool_id == pool_id)
        )
        model = result.scalar_one_or_none()
        return PoolMetricsDTO.from_model(model) if model else None

    async def upsert_holders(self, pool_id: str, *, holders_count: int | None, status: str) -> None:
        """Upsert holder count and status by pool id.

        A ``None`` count keeps whatever count is already stored.
        """
        now = datetime.now(UTC)
        stmt = _upsert(self.session, PoolMetricsModel).values(
            pool_id=pool_id,
            holders_count=holders_count,
            holders_status=status,
            updated_at=now,
        )
        set_: dict[str, Any] = {
            "holders_status": stmt.excluded.holders_status,
            "updated_at": stmt.excluded.updated_at,
        }
        if holders_count is not None:
            set_["holders_count"] = stmt.excluded.holders_count
        stmt = stmt.on_conflict_do_update(index_elements=["pool_id"], set_=set_)
        await self.session.execute(stmt)
        await self.session.flush()


class TokenPriceRepository:
    """Repository for the token price cache."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, token_address: str) -> TokenPriceDTO | None:
        result = await self.session.execute(
            select(TokenPriceModel).where(TokenPriceModel.token_address == token_address.lower())
        )
        model = result.scalar_one_or_none()
        return TokenPriceDTO.from_model(model) if model else None

    async def get_fresh(
        self, token_address: str, *, max_age: timedelta, now: datetime | None = None
    ) -> TokenPriceDTO | None:
        """Return the cached price if it is younger than ``max_age``."""
        dto = await self.get(token_address)
        if dto is None:
            return None
        now = now or datetime.now(UTC)
        if now - dto.updated_at > max_age:
            return None
        return dto

    async def upsert(self, token_address: str, price_usd: Decimal, source: str) -> None:
        now = datetime.now(UTC)
        stmt = _upsert(self.session, TokenPriceModel).values(
            token_address=token_address.lower(),
            price_usd=price_usd,
            source=source,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["token_address"],
            set_={
                "price_usd": stmt.excluded.price_usd,
                "source": stmt.excluded.source,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()


class SyncEventRepository:
    """Append-only repository for sync events."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: SyncEventDTO) -> None:
        model = SyncEventModel(
            pool_id=dto.pool_id,
            event_type=dto.event_type,
            severity=dto.severity,
            message=dto.message,
            details=json.dumps(dto.details, default=str) if dto.details else None,
        )
        self.session.add(model)
        await self.session.flush()

    async def list_recent(
        self, *, pool_id: str | None = None, event_type: str | None = None, limit: int = 100
    ) -> list[SyncEventDTO]:
        stmt = select(SyncEventModel)
        if pool_id is not None:
            stmt = stmt.where(SyncEventModel.pool_id == pool_id)
        if event_type is not None:
            stmt = stmt.where(SyncEventModel.event_type == event_type)
        stmt = stmt.order_by(SyncEventModel.created_at.desc(), SyncEventModel.id.desc()).limit(limit)
        result = await self.session.execute(stmt)
        return [SyncEventDTO.from_model(m) for m in result.scalars().all()]
