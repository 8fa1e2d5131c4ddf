from __future__ import annotations

import argparse
import asyncio

from stakewatch_api.db.session import create_engine, create_sessionmaker, wait_for_database
from stakewatch_api.domain.engine import IngestionEngine
from stakewatch_api.domain.event_store import EventStore
from stakewatch_api.domain.ledger_solana import create_ledger_client
from stakewatch_api.observability.logging import configure_logging
from stakewatch_api.observability.tracing import configure_tracing
from stakewatch_api.settings import get_settings


async def main() -> None:
    parser = argparse.ArgumentParser(description="Ingest staking program events from the ledger.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--backfill-only",
        action="store_true",
        help="Replay history from the configured checkpoint and exit.",
    )
    mode.add_argument(
        "--no-backfill",
        action="store_true",
        help="Skip the checkpoint replay and only follow live notifications.",
    )
    args = parser.parse_args()

    configure_logging()
    configure_tracing(default_service_name="stakewatch-ingestion")
    settings = get_settings()
    await wait_for_database(
        create_engine(settings.database_url),
        retry_seconds=settings.db_connect_retry_seconds,
    )
    store = EventStore(create_sessionmaker(settings.database_url))

    async with create_ledger_client(settings) as ledger:
        engine = IngestionEngine.from_settings(settings, ledger, store)
        if args.backfill_only:
            report = await engine.backfill.run()
            if report is None:
                print("run_ingestion: backfill skipped")
            else:
                print(
                    "run_ingestion: "
                    f"pages={report.pages} considered={report.considered} "
                    f"failures={report.failures} aborted={report.aborted}"
                )
        elif args.no_backfill:
            await engine.run_live()
        else:
            await engine.run()


if __name__ == "__main__":
    asyncio.run(main())
