from __future__ import annotations

import datetime as dt
from typing import Literal

from pydantic import BaseModel, Field

from stakewatch_api.db.models import U64_MAX, StakingEvent
from stakewatch_api.domain.classification import EventType


class HealthResponse(BaseModel):
    status: str = "ok"
    ingestion: Literal["disabled", "running", "stopped"] = "disabled"
    backfill_running: bool = False


class EventPublic(BaseModel):
    signature: str
    type: EventType
    user: str
    amount: int | None = None
    block_time: int | None = None
    timestamp: dt.datetime

    @classmethod
    def from_model(cls, event: StakingEvent) -> "EventPublic":
        return cls(
            signature=event.signature,
            type=EventType(event.event_type),
            user=event.user_pubkey,
            amount=event.amount,
            block_time=event.block_time,
            timestamp=event.created_at,
        )


class SubmitEventRequest(BaseModel):
    type: EventType
    user: str = Field(min_length=1, max_length=64)
    signature: str = Field(min_length=1, max_length=128)
    amount: int | None = Field(default=None, ge=0, le=U64_MAX)
    block_time: int | None = Field(default=None, ge=0)


class SubmitEventResponse(BaseModel):
    status: Literal["created", "updated", "already_exists"]
    message: str
    event: EventPublic


class StatsResponse(BaseModel):
    total_staked_events: int
    total_unstaked_events: int
    total_withdraw_rewards_events: int
