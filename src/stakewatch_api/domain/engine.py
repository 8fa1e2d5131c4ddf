from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

from stakewatch_api.domain.backfill import BackfillCoordinator
from stakewatch_api.domain.event_store import EventStore
from stakewatch_api.domain.ingestion import EventIngestor
from stakewatch_api.domain.ledger import LedgerClient
from stakewatch_api.domain.live import LiveIngestion
from stakewatch_api.observability import metrics
from stakewatch_api.settings import Settings

logger = logging.getLogger(__name__)


class IngestionEngine:
    """Runs the checkpoint backfill and the live subscription against one event store."""

    def __init__(
        self,
        ledger: LedgerClient,
        store: EventStore,
        *,
        program_id: str,
        checkpoint_signature: str | None,
        page_size: int = 100,
        live_waits_for_backfill: bool = True,
        reconnect_delay_seconds: float = 1.0,
        reconnect_max_delay_seconds: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._ledger = ledger
        self._program_id = program_id
        self._live_waits_for_backfill = live_waits_for_backfill
        self._reconnect_delay = reconnect_delay_seconds
        self._reconnect_max_delay = max(reconnect_max_delay_seconds, reconnect_delay_seconds)
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self.ingestor = EventIngestor(ledger, store, program_id=program_id)
        self.backfill = BackfillCoordinator(
            self.ingestor,
            ledger,
            program_id=program_id,
            checkpoint_signature=checkpoint_signature,
            page_size=page_size,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, ledger: LedgerClient, store: EventStore
    ) -> "IngestionEngine":
        return cls(
            ledger,
            store,
            program_id=settings.program_id,
            checkpoint_signature=settings.start_transaction_signature,
            page_size=settings.backfill_page_size,
            live_waits_for_backfill=settings.live_waits_for_backfill,
            reconnect_delay_seconds=settings.live_reconnect_delay_seconds,
            reconnect_max_delay_seconds=settings.live_reconnect_max_delay_seconds,
        )

    async def run(self) -> None:
        if self._live_waits_for_backfill:
            await self.backfill.run()
            await self.run_live()
        else:
            await asyncio.gather(self.backfill.run(), self.run_live())

    async def run_live(self) -> None:
        """Keep a live subscription open, resubscribing with backoff whenever it ends."""
        delay = self._reconnect_delay
        while True:
            live = LiveIngestion(self.ingestor, self._ledger, program_id=self._program_id)
            try:
                await live.run()
            except Exception as exc:
                metrics.live_subscription_total.labels(outcome="error").inc()
                logger.warning(
                    "live_subscription_failed",
                    extra={"error": str(exc), "received": live.received},
                    exc_info=True,
                )
            else:
                metrics.live_subscription_total.labels(outcome="closed").inc()
                logger.warning("live_subscription_closed", extra={"received": live.received})

            if live.received:
                delay = self._reconnect_delay
            logger.info("live_resubscribe_scheduled", extra={"retry_in_seconds": delay})
            await self._sleep(delay)
            delay = min(delay * 2, self._reconnect_max_delay)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="stakewatch-ingestion")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
