"""SQLAlchemy models for persistent storage.

This module defines the database schema for tracked pools, their stored
top-holder snapshots, per-pool metrics, cached token prices and the
operator-facing sync event log.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class PoolModel(Base):
    """Tracked liquidity pool.

    Owned by the pool management surface; the sync engine only reads it.
    """

    __tablename__ = "pools"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    token_pair: Mapped[str] = mapped_column(String(128), nullable=False)
    pool_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    chain: Mapped[str] = mapped_column(String(32), nullable=False, default="ethereum")
    platform: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_pools_address", "pool_address"),)


class TokenHolderModel(Base):
    """One stored top-holder row for a pool.

    The full set for a pool is replaced on every successful sync.
    """

    __tablename__ = "token_holders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pool_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("pools.id", ondelete="CASCADE"), nullable=False
    )
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    holder_address: Mapped[str] = mapped_column(String(42), nullable=False)

    # Raw uint256 balance; exceeds every portable integer column type.
    token_balance: Mapped[str] = mapped_column(String(80), nullable=False)
    token_balance_formatted: Mapped[Decimal] = mapped_column(Numeric(78, 18), nullable=False)
    usd_value: Mapped[Decimal] = mapped_column(Numeric(38, 8), nullable=False)
    wallet_balance_usd: Mapped[Decimal] = mapped_column(Numeric(38, 8), nullable=False)
    wallet_balance_eth: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    pool_share_percentage: Mapped[Decimal] = mapped_column(Numeric(12, 8), nullable=False)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)

    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("pool_id", "rank", name="uq_token_holders_pool_rank"),
        Index("idx_token_holders_pool", "pool_id"),
        Index("idx_token_holders_holder", "holder_address"),
    )


class PoolMetricsModel(Base):
    """Current holder metrics for a pool (one row per pool)."""

    __tablename__ = "pool_metrics_current"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pool_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("pools.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    holders_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    holders_status: Mapped[str] = mapped_column(String(16), nullable=False, default="unknown")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class TokenPriceModel(Base):
    """Read-through cache of resolved USD token prices."""

    __tablename__ = "token_prices"

    token_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    price_usd: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class SyncEventModel(Base):
    """Operator-visible sync event (errors and degradations)."""

    __tablename__ = "sync_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pool_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_sync_events_pool_created", "pool_id", "created_at"),
        Index("idx_sync_events_type", "event_type"),
    )
