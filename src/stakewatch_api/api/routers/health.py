from __future__ import annotations

from fastapi import APIRouter, Request

from stakewatch_api.api.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        return HealthResponse()
    return HealthResponse(
        ingestion="running" if engine.running else "stopped",
        backfill_running=engine.backfill.running,
    )
