from __future__ import annotations

import asyncio
import logging
from functools import lru_cache

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

logger = logging.getLogger(__name__)


@lru_cache(maxsize=4)
def create_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, pool_pre_ping=True)


@lru_cache(maxsize=4)
def create_sessionmaker(database_url: str) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(create_engine(database_url), expire_on_commit=False)


async def wait_for_database(
    engine: AsyncEngine,
    *,
    retry_seconds: float,
    max_attempts: int | None = None,
) -> None:
    """Block until ``select 1`` succeeds, retrying on connection errors."""
    attempt = 0
    while True:
        attempt += 1
        try:
            async with engine.connect() as conn:
                await conn.execute(text("select 1"))
        except (OSError, SQLAlchemyError) as exc:
            if max_attempts is not None and attempt >= max_attempts:
                raise
            logger.warning(
                "database_unavailable",
                extra={"attempt": attempt, "retry_in_seconds": retry_seconds, "error": str(exc)},
            )
            await asyncio.sleep(retry_seconds)
        else:
            logger.info("database_connected", extra={"attempt": attempt})
            return
