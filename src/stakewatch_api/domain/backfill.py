"""Historical replay of program transactions back to an operator checkpoint.

Signature pages are requested newest-first, each page after the first using the
oldest signature of the previous page as the ``before`` cursor, until the page
holding the checkpoint turns up or the history runs out. Only signatures from
the checkpoint forward are ever fetched; they are replayed oldest-first.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field

from stakewatch_api.domain.errors import LedgerError
from stakewatch_api.domain.ingestion import EventIngestor, IngestSource
from stakewatch_api.domain.ledger import LedgerClient, SignatureInfo
from stakewatch_api.observability.ops import observe_operation

logger = logging.getLogger(__name__)


@dataclass
class BackfillReport:
    checkpoint_found: bool = False
    pages: int = 0
    considered: int = 0
    failures: int = 0
    aborted: bool = False
    outcomes: Counter[str] = field(default_factory=Counter)


class BackfillCoordinator:
    def __init__(
        self,
        ingestor: EventIngestor,
        ledger: LedgerClient,
        *,
        program_id: str,
        checkpoint_signature: str | None,
        page_size: int = 100,
        page_attempts: int = 3,
        page_retry_delay_seconds: float = 1.0,
    ) -> None:
        self._ingestor = ingestor
        self._ledger = ledger
        self._program_id = program_id
        self._checkpoint = checkpoint_signature
        self._page_size = page_size
        self._page_attempts = max(page_attempts, 1)
        self._page_retry_delay = page_retry_delay_seconds
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def run(self) -> BackfillReport | None:
        """Replay history from the checkpoint; ``None`` when skipped or already running."""
        if not self._checkpoint:
            logger.info("backfill_skipped", extra={"reason": "no_checkpoint"})
            return None
        if self._running:
            logger.info("backfill_skipped", extra={"reason": "already_running"})
            return None

        self._running = True
        try:
            logger.info("backfill_started", extra={"checkpoint": self._checkpoint})
            async with observe_operation("backfill", attributes={"program_id": self._program_id}):
                report = await self._replay(await self._collect_window())
            logger.info(
                "backfill_finished",
                extra={
                    "checkpoint_found": report.checkpoint_found,
                    "pages": report.pages,
                    "considered": report.considered,
                    "failures": report.failures,
                    "outcomes": dict(report.outcomes),
                },
            )
            return report
        except Exception:
            logger.exception("backfill_failed")
            return None
        finally:
            self._running = False

    async def _fetch_page(self, before: str | None) -> list[SignatureInfo]:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._ledger.list_signatures(
                    self._program_id, before=before, limit=self._page_size
                )
            except LedgerError as exc:
                if attempt >= self._page_attempts:
                    raise
                logger.warning(
                    "backfill_page_retry",
                    extra={"before": before, "attempt": attempt, "error": str(exc)},
                )
                await asyncio.sleep(self._page_retry_delay)

    async def _collect_window(self) -> tuple[BackfillReport, list[list[SignatureInfo]]]:
        report = BackfillReport()
        # Each entry is one page in oldest-first order; pages themselves are newest-first.
        window: list[list[SignatureInfo]] = []
        before: str | None = None
        while True:
            try:
                page = await self._fetch_page(before)
            except LedgerError:
                logger.exception("backfill_page_failed", extra={"before": before})
                report.aborted = True
                return report, []
            if not page:
                break
            report.pages += 1
            chronological = list(reversed(page))
            checkpoint_index = next(
                (i for i, info in enumerate(chronological) if info.signature == self._checkpoint),
                None,
            )
            if checkpoint_index is not None:
                report.checkpoint_found = True
                window.append(chronological[checkpoint_index:])
                break
            window.append(chronological)
            before = chronological[0].signature

        if not report.checkpoint_found:
            logger.warning("backfill_checkpoint_not_found", extra={"pages": report.pages})
            return report, []
        return report, window

    async def _replay(
        self, collected: tuple[BackfillReport, list[list[SignatureInfo]]]
    ) -> BackfillReport:
        report, window = collected
        for page in reversed(window):
            for info in page:
                report.considered += 1
                if info.failed:
                    report.outcomes["failed_on_chain"] += 1
                    continue
                outcome = await self._ingestor.ingest_or_skip(
                    info.signature, info.block_time, source=IngestSource.BACKFILL
                )
                if outcome is None:
                    report.failures += 1
                else:
                    report.outcomes[outcome.value] += 1
        return report
