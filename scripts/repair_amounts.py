from __future__ import annotations

import argparse
import asyncio

from stakewatch_api.db.session import create_sessionmaker
from stakewatch_api.domain.event_store import EventStore
from stakewatch_api.domain.ingestion import EventIngestor, repair_missing_amounts
from stakewatch_api.domain.ledger_solana import create_ledger_client
from stakewatch_api.observability.logging import configure_logging
from stakewatch_api.settings import get_settings


async def main() -> None:
    parser = argparse.ArgumentParser(
        description="Re-derive amounts for stored events that were recorded without one."
    )
    parser.add_argument("--batch-size", type=int, default=100)
    args = parser.parse_args()
    if args.batch_size < 1:
        raise ValueError("--batch-size must be at least 1.")

    configure_logging()
    settings = get_settings()
    store = EventStore(create_sessionmaker(settings.database_url))
    async with create_ledger_client(settings) as ledger:
        ingestor = EventIngestor(ledger, store, program_id=settings.program_id)
        report = await repair_missing_amounts(ingestor, batch_size=args.batch_size)
    print(
        "repair_amounts: "
        f"scanned={report.scanned} backfilled={report.backfilled} failures={report.failures}"
    )


if __name__ == "__main__":
    asyncio.run(main())
