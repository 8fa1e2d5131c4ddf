from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from stakewatch_api.api.schemas import (
    EventPublic,
    StatsResponse,
    SubmitEventRequest,
    SubmitEventResponse,
)
from stakewatch_api.domain.classification import EventType
from stakewatch_api.domain.errors import AppError
from stakewatch_api.domain.event_store import EventStoreDep
from stakewatch_api.domain.ingestion import SubmitStatus, submit_event
from stakewatch_api.observability.ops import observe_operation
from stakewatch_api.settings import Settings, get_settings

router = APIRouter(prefix="/api", tags=["events"])

_SUBMIT_MESSAGES = {
    SubmitStatus.CREATED: "Event saved successfully",
    SubmitStatus.UPDATED: "Event updated with amount",
    SubmitStatus.ALREADY_EXISTS: "Event already exists",
}


@router.get("/events", response_model=list[EventPublic])
async def list_events(
    store: EventStoreDep,
    settings: Annotated[Settings, Depends(get_settings)],
    limit: Annotated[int | None, Query(ge=1, le=500)] = None,
) -> list[EventPublic]:
    events = await store.list_recent(limit or settings.recent_events_limit)
    return [EventPublic.from_model(event) for event in events]


@router.get("/events/{signature}", response_model=EventPublic)
async def get_event(signature: str, store: EventStoreDep) -> EventPublic:
    event = await store.get(signature)
    if event is None:
        raise AppError(
            code="event_not_found",
            message="Event not found",
            status_code=404,
            details={"signature": signature},
        )
    return EventPublic.from_model(event)


@router.get("/stats", response_model=StatsResponse)
async def get_stats(store: EventStoreDep) -> StatsResponse:
    counts = await store.count_all_types()
    return StatsResponse(
        total_staked_events=counts[EventType.STAKE],
        total_unstaked_events=counts[EventType.UNSTAKE],
        total_withdraw_rewards_events=counts[EventType.WITHDRAW_REWARDS],
    )


@router.post("/events", response_model=SubmitEventResponse)
async def create_event(payload: SubmitEventRequest, store: EventStoreDep) -> SubmitEventResponse:
    """Record a transaction reported by the client right after it was sent."""
    async with observe_operation("submit_event", attributes={"event.type": payload.type.value}):
        result = await submit_event(
            store,
            signature=payload.signature,
            event_type=payload.type,
            user_pubkey=payload.user,
            amount=payload.amount,
            block_time=payload.block_time,
        )
    return SubmitEventResponse(
        status=result.status.value,
        message=_SUBMIT_MESSAGES[result.status],
        event=EventPublic.from_model(result.event),
    )
