"""add staking events

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "staking_events",
        sa.Column("signature", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("user_pubkey", sa.String(length=64), nullable=False),
        # Text on SQLite: its NUMERIC affinity would coerce large u64 values to REAL.
        sa.Column(
            "amount",
            sa.Numeric(20, 0).with_variant(sa.String(length=20), "sqlite"),
            nullable=True,
        ),
        sa.Column("block_time", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "event_type in ('stake', 'unstake', 'withdrawRewards')",
            name="ck_staking_events_event_type",
        ),
        sa.CheckConstraint(
            "amount is null or amount >= 0",
            name="ck_staking_events_amount_non_negative",
        ),
        sa.PrimaryKeyConstraint("signature", name="pk_staking_events"),
    )
    op.create_index("ix_staking_events_event_type", "staking_events", ["event_type"])
    op.create_index("ix_staking_events_created_at", "staking_events", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_staking_events_created_at", table_name="staking_events")
    op.drop_index("ix_staking_events_event_type", table_name="staking_events")
    op.drop_table("staking_events")
