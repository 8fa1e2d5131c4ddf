from __future__ import annotations

import datetime as dt
from decimal import Decimal

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Index, Numeric, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

U64_MAX = 2**64 - 1


class Base(DeclarativeBase):
    pass


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class TokenAmount(TypeDecorator):
    """Unsigned 64-bit token amount stored as NUMERIC(20, 0), surfaced as ``int``.

    SQLite binds NUMERIC through float, which cannot hold every u64, so there
    the digits are stored as text instead.
    """

    impl = Numeric(20, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(20))
        return dialect.type_descriptor(Numeric(20, 0))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "sqlite":
            return str(int(value))
        return Decimal(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class StakingEvent(Base):
    __tablename__ = "staking_events"
    __table_args__ = (
        CheckConstraint(
            "event_type in ('stake', 'unstake', 'withdrawRewards')",
            name="ck_staking_events_event_type",
        ),
        CheckConstraint(
            "amount is null or amount >= 0",
            name="ck_staking_events_amount_non_negative",
        ),
        Index("ix_staking_events_event_type", "event_type"),
        Index("ix_staking_events_created_at", "created_at"),
    )

    signature: Mapped[str] = mapped_column(String(128), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    user_pubkey: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int | None] = mapped_column(TokenAmount(), nullable=True)
    block_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
