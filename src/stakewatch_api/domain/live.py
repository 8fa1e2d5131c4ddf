from __future__ import annotations

import logging

from stakewatch_api.domain.ingestion import EventIngestor, IngestSource
from stakewatch_api.domain.ledger import LedgerClient
from stakewatch_api.observability import metrics

logger = logging.getLogger(__name__)


class LiveIngestion:
    """Feeds confirmed log notifications for the program into the ingestor.

    Subscription errors propagate to the caller; replaying signatures after a
    resubscribe is harmless because ingestion is idempotent.
    """

    def __init__(self, ingestor: EventIngestor, ledger: LedgerClient, *, program_id: str) -> None:
        self._ingestor = ingestor
        self._ledger = ledger
        self._program_id = program_id
        self.received = 0

    async def run(self) -> None:
        logger.info("live_ingestion_started", extra={"program_id": self._program_id})
        async for notification in self._ledger.subscribe_logs(self._program_id):
            self.received += 1
            if not notification.logs_ok:
                metrics.ingest_total.labels(
                    source=IngestSource.LIVE.value, outcome="failed_on_chain"
                ).inc()
                continue
            await self._ingestor.ingest_or_skip(notification.signature, source=IngestSource.LIVE)
