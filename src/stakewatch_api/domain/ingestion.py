from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from stakewatch_api.db.models import StakingEvent, utcnow
from stakewatch_api.domain.classification import EventType, classify_transaction, extract_amount
from stakewatch_api.domain.event_store import EventInserted, EventStore, NewEvent
from stakewatch_api.domain.ledger import LedgerClient
from stakewatch_api.observability import metrics
from stakewatch_api.observability.context import ingest_context
from stakewatch_api.observability.ops import ingest_span

logger = logging.getLogger(__name__)


class IngestSource(StrEnum):
    BACKFILL = "backfill"
    LIVE = "live"
    REPAIR = "repair"
    MANUAL = "manual"


class IngestOutcome(StrEnum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    AMOUNT_BACKFILLED = "amount_backfilled"
    UNCHANGED = "unchanged"
    NOT_FOUND = "not_found"
    FAILED_ON_CHAIN = "failed_on_chain"
    UNCLASSIFIED = "unclassified"
    MALFORMED = "malformed"


class EventIngestor:
    """Turns one transaction signature into at most one stored staking event.

    Stored rows lacking an amount are re-examined on every sighting, so
    improvements to amount extraction fill older rows without a migration.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        store: EventStore,
        *,
        program_id: str,
        now: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self._ledger = ledger
        self._store = store
        self._program_id = program_id
        self._now = now

    @property
    def store(self) -> EventStore:
        return self._store

    async def ingest_signature(
        self,
        signature: str,
        block_time_hint: int | None = None,
        *,
        source: IngestSource,
    ) -> IngestOutcome:
        with (
            ingest_context(source=source.value, signature=signature),
            ingest_span(source=source.value, signature=signature) as span,
        ):
            existing = await self._store.get(signature)
            if existing is not None:
                outcome = await self._repair_existing(existing)
            else:
                outcome = await self._create(signature, block_time_hint)
            span.set_attribute("ingest.outcome", outcome.value)
        metrics.ingest_total.labels(source=source.value, outcome=outcome.value).inc()
        return outcome

    async def ingest_or_skip(
        self,
        signature: str,
        block_time_hint: int | None = None,
        *,
        source: IngestSource,
    ) -> IngestOutcome | None:
        """``ingest_signature`` that logs and swallows per-transaction failures."""
        try:
            return await self.ingest_signature(signature, block_time_hint, source=source)
        except Exception:
            with ingest_context(source=source.value, signature=signature):
                logger.exception("ingest_failed")
            metrics.ingest_total.labels(source=source.value, outcome="error").inc()
            return None

    async def _repair_existing(self, existing: StakingEvent) -> IngestOutcome:
        if existing.amount is not None:
            return IngestOutcome.UNCHANGED

        tx = await self._ledger.fetch_transaction(existing.signature)
        if tx is None or tx.failed:
            return IngestOutcome.UNCHANGED
        event_type = classify_transaction(tx.log_messages)
        if event_type is None:
            return IngestOutcome.UNCHANGED
        if event_type.value != existing.event_type:
            logger.warning(
                "event_type_mismatch",
                extra={"stored_type": existing.event_type, "observed_type": event_type.value},
            )
            return IngestOutcome.UNCHANGED

        amount = extract_amount(tx, event_type, self._program_id)
        if amount is None:
            return IngestOutcome.UNCHANGED
        if await self._store.backfill_amount(existing.signature, amount):
            logger.info("event_amount_backfilled", extra={"event_type": event_type.value, "amount": amount})
            return IngestOutcome.AMOUNT_BACKFILLED
        return IngestOutcome.UNCHANGED

    async def _create(self, signature: str, block_time_hint: int | None) -> IngestOutcome:
        tx = await self._ledger.fetch_transaction(signature)
        if tx is None:
            return IngestOutcome.NOT_FOUND
        if tx.failed:
            return IngestOutcome.FAILED_ON_CHAIN
        event_type = classify_transaction(tx.log_messages)
        if event_type is None:
            return IngestOutcome.UNCLASSIFIED
        user_pubkey = tx.fee_payer
        if user_pubkey is None:
            logger.warning("transaction_missing_account_keys")
            return IngestOutcome.MALFORMED

        amount = extract_amount(tx, event_type, self._program_id)
        outcome = await self._store.insert_if_absent(
            NewEvent(
                signature=signature,
                event_type=event_type,
                user_pubkey=user_pubkey,
                amount=amount,
                block_time=block_time_hint if block_time_hint is not None else tx.block_time,
                created_at=self._now(),
            )
        )
        if isinstance(outcome, EventInserted):
            logger.info("event_created", extra={"event_type": event_type.value, "amount": amount})
            return IngestOutcome.CREATED

        # Another path stored this signature first.
        if (
            outcome.existing.amount is None
            and amount is not None
            and await self._store.backfill_amount(signature, amount)
        ):
            return IngestOutcome.AMOUNT_BACKFILLED
        return IngestOutcome.ALREADY_EXISTS


class SubmitStatus(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    ALREADY_EXISTS = "already_exists"


@dataclass(frozen=True)
class SubmitResult:
    status: SubmitStatus
    event: StakingEvent


async def _merge_submitted_amount(
    store: EventStore, existing: StakingEvent, amount: int | None
) -> SubmitResult:
    if existing.amount is None and amount is not None:
        if await store.backfill_amount(existing.signature, amount):
            updated = await store.get(existing.signature)
            return SubmitResult(status=SubmitStatus.UPDATED, event=updated or existing)
    return SubmitResult(status=SubmitStatus.ALREADY_EXISTS, event=existing)


async def submit_event(
    store: EventStore,
    *,
    signature: str,
    event_type: EventType,
    user_pubkey: str,
    amount: int | None = None,
    block_time: int | None = None,
    now: Callable[[], dt.datetime] = utcnow,
) -> SubmitResult:
    """Record an event reported directly by a client, with the same idempotency as ingestion."""
    with ingest_context(source=IngestSource.MANUAL.value, signature=signature):
        existing = await store.get(signature)
        if existing is not None:
            result = await _merge_submitted_amount(store, existing, amount)
        else:
            outcome = await store.insert_if_absent(
                NewEvent(
                    signature=signature,
                    event_type=event_type,
                    user_pubkey=user_pubkey,
                    amount=amount,
                    block_time=block_time,
                    created_at=now(),
                )
            )
            if isinstance(outcome, EventInserted):
                result = SubmitResult(status=SubmitStatus.CREATED, event=outcome.event)
            else:
                result = await _merge_submitted_amount(store, outcome.existing, amount)
        logger.info("event_submitted", extra={"status": result.status.value, "event_type": event_type.value})
    metrics.ingest_total.labels(source=IngestSource.MANUAL.value, outcome=result.status.value).inc()
    return result


@dataclass
class RepairReport:
    scanned: int = 0
    backfilled: int = 0
    failures: int = 0


async def repair_missing_amounts(ingestor: EventIngestor, *, batch_size: int = 100) -> RepairReport:
    """Re-run amount extraction for every stored event that still lacks an amount."""
    report = RepairReport()
    after: str | None = None
    while True:
        batch = await ingestor.store.list_missing_amount(batch_size, after=after)
        if not batch:
            break
        for signature in batch:
            report.scanned += 1
            outcome = await ingestor.ingest_or_skip(signature, source=IngestSource.REPAIR)
            if outcome is None:
                report.failures += 1
            elif outcome is IngestOutcome.AMOUNT_BACKFILLED:
                report.backfilled += 1
        after = batch[-1]
    logger.info(
        "repair_finished",
        extra={"scanned": report.scanned, "backfilled": report.backfilled, "failures": report.failures},
    )
    return report
