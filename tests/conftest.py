from __future__ import annotations

import os
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from alembic import command
from alembic.config import Config
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete

from stakewatch_api.db.models import StakingEvent
from stakewatch_api.db.session import create_engine, create_sessionmaker
from stakewatch_api.domain.errors import LedgerSubscriptionError
from stakewatch_api.domain.event_store import EventStore
from stakewatch_api.domain.ledger import (
    LogNotification,
    ParsedInstruction,
    ParsedTransaction,
    SignatureInfo,
)
from stakewatch_api.main import create_app
from stakewatch_api.settings import get_settings

PROGRAM_ID = "Stake11111111111111111111111111111111111111"
USER = "Use11111111111111111111111111111111111111111"


def _get_test_database_url(tmp_dir: Path) -> str:
    explicit = os.environ.get("DATABASE_URL_TEST") or os.environ.get("TEST_DATABASE_URL")
    if explicit:
        return explicit
    return f"sqlite+aiosqlite:///{tmp_dir / 'stakewatch_test.db'}"


def _set_test_environment(test_url: str) -> None:
    os.environ["DATABASE_URL"] = test_url
    os.environ["INGEST_ENABLED"] = "false"
    os.environ["PROGRAM_ID"] = PROGRAM_ID
    get_settings.cache_clear()


@pytest.fixture(scope="session")
def alembic_config() -> Config:
    config_dir = Path(__file__).resolve().parents[1]
    cfg = Config(str(config_dir / "alembic.ini"))
    cfg.set_main_option("script_location", str(config_dir / "src/stakewatch_api/db/migrations"))
    cfg.set_main_option("prepend_sys_path", str(config_dir / "src"))
    return cfg


@pytest.fixture(scope="session", autouse=True)
def migrate_db(alembic_config: Config, tmp_path_factory: pytest.TempPathFactory) -> str:
    test_url = _get_test_database_url(tmp_path_factory.mktemp("db"))
    _set_test_environment(test_url)
    alembic_config.attributes["database_url"] = test_url
    command.upgrade(alembic_config, "head")
    return test_url


@pytest_asyncio.fixture
async def db_sessionmaker(migrate_db: str):
    # Engines hold connections bound to the event loop that opened them.
    create_sessionmaker.cache_clear()
    create_engine.cache_clear()
    sessionmaker = create_sessionmaker(migrate_db)
    yield sessionmaker
    await create_engine(migrate_db).dispose()
    create_sessionmaker.cache_clear()
    create_engine.cache_clear()


@pytest.fixture(autouse=True)
def test_settings(migrate_db: str):
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture(autouse=True)
async def reset_db(db_sessionmaker):
    async with db_sessionmaker() as session:
        await session.execute(delete(StakingEvent))
        await session.commit()
    yield


@pytest.fixture
def store(db_sessionmaker) -> EventStore:
    return EventStore(db_sessionmaker)


@pytest_asyncio.fixture
async def client(db_sessionmaker) -> AsyncIterator[AsyncClient]:
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class FakeLedger:
    """In-memory ledger: newest-first signature history plus canned transactions."""

    def __init__(self) -> None:
        self.history: list[SignatureInfo] = []
        self.transactions: dict[str, ParsedTransaction] = {}
        self.list_calls: list[dict[str, Any]] = []
        self.fetch_calls: list[str] = []
        self.list_errors: list[Exception] = []
        self.fetch_errors: dict[str, Exception] = {}
        self.subscriptions: list[list[LogNotification | Exception]] = []
        self.subscribe_calls = 0

    def add(self, tx: ParsedTransaction, *, block_time: int | None = None) -> None:
        """Record ``tx`` as the newest transaction of the program."""
        self.transactions[tx.signature] = tx
        self.history.insert(
            0,
            SignatureInfo(
                signature=tx.signature,
                block_time=block_time if block_time is not None else tx.block_time,
                failed=tx.failed,
            ),
        )

    async def list_signatures(
        self, program_id: str, *, before: str | None = None, limit: int = 100
    ) -> list[SignatureInfo]:
        self.list_calls.append({"program_id": program_id, "before": before, "limit": limit})
        if self.list_errors:
            raise self.list_errors.pop(0)
        start = 0
        if before is not None:
            start = next(
                i + 1 for i, info in enumerate(self.history) if info.signature == before
            )
        return self.history[start : start + limit]

    async def fetch_transaction(self, signature: str) -> ParsedTransaction | None:
        self.fetch_calls.append(signature)
        if signature in self.fetch_errors:
            raise self.fetch_errors[signature]
        return self.transactions.get(signature)

    async def subscribe_logs(self, program_id: str) -> AsyncIterator[LogNotification]:
        self.subscribe_calls += 1
        script = self.subscriptions.pop(0) if self.subscriptions else []
        for item in script:
            if isinstance(item, Exception):
                raise item
            yield item
        raise LedgerSubscriptionError("logsSubscribe", "subscription closed by remote")


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


def build_transaction(
    signature: str,
    *,
    logs: list[str] | tuple[str, ...] = (),
    failed: bool = False,
    block_time: int | None = 1_700_000_000,
    account_keys: tuple[str, ...] = (USER, PROGRAM_ID),
    instructions: tuple[ParsedInstruction, ...] = (),
) -> ParsedTransaction:
    return ParsedTransaction(
        signature=signature,
        slot=1,
        block_time=block_time,
        failed=failed,
        log_messages=tuple(logs),
        account_keys=account_keys,
        instructions=instructions,
    )


@pytest.fixture
def make_tx():
    return build_transaction


@pytest.fixture
def program_id() -> str:
    return PROGRAM_ID


@pytest.fixture
def user_pubkey() -> str:
    return USER
