"""Initial schema for pools, holder snapshots, metrics, price cache and sync events.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tracked pools (owned by pool management; read-only here)
    op.create_table(
        "pools",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("token_pair", sa.String(128), nullable=False),
        sa.Column("pool_address", sa.String(42), nullable=True),
        sa.Column("chain", sa.String(32), nullable=False),
        sa.Column("platform", sa.String(64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_pools_address", "pools", ["pool_address"])

    # Top-holder snapshots, replaced wholesale per pool
    op.create_table(
        "token_holders",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pool_id", sa.String(64), nullable=False),
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("holder_address", sa.String(42), nullable=False),
        sa.Column("token_balance", sa.String(80), nullable=False),
        sa.Column("token_balance_formatted", sa.Numeric(78, 18), nullable=False),
        sa.Column("usd_value", sa.Numeric(38, 8), nullable=False),
        sa.Column("wallet_balance_usd", sa.Numeric(38, 8), nullable=False),
        sa.Column("wallet_balance_eth", sa.Numeric(38, 18), nullable=False),
        sa.Column("pool_share_percentage", sa.Numeric(12, 8), nullable=False),
        sa.Column("rank", sa.Integer(), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["pool_id"], ["pools.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("pool_id", "rank", name="uq_token_holders_pool_rank"),
    )
    op.create_index("idx_token_holders_pool", "token_holders", ["pool_id"])
    op.create_index("idx_token_holders_holder", "token_holders", ["holder_address"])

    # Current metrics, one row per pool
    op.create_table(
        "pool_metrics_current",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pool_id", sa.String(64), nullable=False),
        sa.Column("holders_count", sa.Integer(), nullable=True),
        sa.Column("holders_status", sa.String(16), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["pool_id"], ["pools.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("pool_id"),
    )

    # Token price cache
    op.create_table(
        "token_prices",
        sa.Column("token_address", sa.String(42), nullable=False),
        sa.Column("price_usd", sa.Numeric(38, 18), nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("token_address"),
    )

    # Sync event log
    op.create_table(
        "sync_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pool_id", sa.String(64), nullable=True),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_sync_events_pool_created", "sync_events", ["pool_id", "created_at"])
    op.create_index("idx_sync_events_type", "sync_events", ["event_type"])


def downgrade() -> None:
    op.drop_index("idx_sync_events_type", table_name="sync_events")
    op.drop_index("idx_sync_events_pool_created", table_name="sync_events")
    op.drop_table("sync_events")
    op.drop_table("token_prices")
    op.drop_table("pool_metrics_current")
    op.drop_index("idx_token_holders_holder", table_name="token_holders")
    op.drop_index("idx_token_holders_pool", table_name="token_holders")
    op.drop_table("token_holders")
    op.drop_index("idx_pools_address", table_name="pools")
    op.drop_table("pools")
