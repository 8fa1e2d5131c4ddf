from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends
from sqlalchemy import desc, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stakewatch_api.db.models import StakingEvent, utcnow
from stakewatch_api.db.session import create_sessionmaker
from stakewatch_api.domain.classification import EventType
from stakewatch_api.settings import Settings, get_settings


@dataclass(frozen=True)
class NewEvent:
    signature: str
    event_type: EventType
    user_pubkey: str
    amount: int | None = None
    block_time: int | None = None
    created_at: dt.datetime | None = None


@dataclass(frozen=True)
class EventInserted:
    event: StakingEvent


@dataclass(frozen=True)
class EventAlreadyExists:
    existing: StakingEvent


InsertOutcome = EventInserted | EventAlreadyExists


def _insert_for(dialect_name: str):
    if dialect_name == "sqlite":
        return sqlite_insert
    return pg_insert


class EventStore:
    """Staking event persistence keyed by transaction signature.

    Each call runs in its own short-lived session. Uniqueness is enforced by the
    table's primary key: concurrent inserts of one signature resolve to exactly
    one row, and every other caller observes ``EventAlreadyExists``.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def get(self, signature: str) -> StakingEvent | None:
        async with self._sessionmaker() as db:
            return await db.get(StakingEvent, signature)

    async def insert_if_absent(self, event: NewEvent) -> InsertOutcome:
        async with self._sessionmaker() as db:
            insert = _insert_for(db.get_bind().dialect.name)
            stmt = (
                insert(StakingEvent)
                .values(
                    signature=event.signature,
                    event_type=event.event_type.value,
                    user_pubkey=event.user_pubkey,
                    amount=event.amount,
                    block_time=event.block_time,
                    created_at=event.created_at or utcnow(),
                )
                .on_conflict_do_nothing(index_elements=["signature"])
                .returning(StakingEvent.signature)
            )
            result = await db.execute(stmt)
            inserted_signature = result.scalar_one_or_none()
            await db.commit()

            stored = await db.get(StakingEvent, event.signature)
            if stored is None:
                raise RuntimeError("Staking event insert failed without leaving a stored row.")
            if inserted_signature is not None:
                return EventInserted(event=stored)
            return EventAlreadyExists(existing=stored)

    async def backfill_amount(self, signature: str, amount: int) -> bool:
        """Set ``amount`` when the stored row has none; returns whether a row changed."""
        async with self._sessionmaker() as db:
            result = await db.execute(
                update(StakingEvent)
                .where(StakingEvent.signature == signature, StakingEvent.amount.is_(None))
                .values(amount=amount)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def count_by_type(self, event_type: EventType) -> int:
        async with self._sessionmaker() as db:
            count = await db.scalar(
                select(func.count())
                .select_from(StakingEvent)
                .where(StakingEvent.event_type == event_type.value)
            )
            return int(count or 0)

    async def count_all_types(self) -> dict[EventType, int]:
        async with self._sessionmaker() as db:
            rows = (
                await db.execute(
                    select(StakingEvent.event_type, func.count()).group_by(StakingEvent.event_type)
                )
            ).all()
        counts = {event_type: 0 for event_type in EventType}
        for event_type, count in rows:
            counts[EventType(event_type)] = int(count)
        return counts

    async def list_recent(self, limit: int) -> list[StakingEvent]:
        async with self._sessionmaker() as db:
            query = (
                select(StakingEvent)
                .order_by(desc(StakingEvent.created_at), desc(StakingEvent.signature))
                .limit(limit)
            )
            return list((await db.scalars(query)).all())

    async def list_missing_amount(self, limit: int, *, after: str | None = None) -> list[str]:
        """Signatures of rows without an amount, in signature order, starting after ``after``."""
        async with self._sessionmaker() as db:
            query = select(StakingEvent.signature).where(StakingEvent.amount.is_(None))
            if after is not None:
                query = query.where(StakingEvent.signature > after)
            query = query.order_by(StakingEvent.signature.asc()).limit(limit)
            return list((await db.scalars(query)).all())


def get_event_store(settings: Annotated[Settings, Depends(get_settings)]) -> EventStore:
    return EventStore(create_sessionmaker(settings.database_url))


EventStoreDep = Annotated[EventStore, Depends(get_event_store)]
