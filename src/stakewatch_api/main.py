from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from stakewatch_api.api.errors import install_error_handlers
from stakewatch_api.api.routers.events import router as events_router
from stakewatch_api.api.routers.health import router as health_router
from stakewatch_api.db.session import create_engine, create_sessionmaker, wait_for_database
from stakewatch_api.domain.engine import IngestionEngine
from stakewatch_api.domain.event_store import EventStore
from stakewatch_api.domain.ledger_solana import create_ledger_client
from stakewatch_api.observability.logging import access_log, configure_logging
from stakewatch_api.observability.metrics import render_metrics
from stakewatch_api.observability.middleware import RequestContextMiddleware
from stakewatch_api.observability.tracing import configure_tracing
from stakewatch_api.settings import get_settings

logger = logging.getLogger("stakewatch_api.main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    app.state.engine = None
    if not settings.ingest_enabled:
        logger.info("ingestion_disabled")
        yield
        return

    await wait_for_database(
        create_engine(settings.database_url),
        retry_seconds=settings.db_connect_retry_seconds,
    )
    ledger = create_ledger_client(settings)
    engine = IngestionEngine.from_settings(
        settings, ledger, EventStore(create_sessionmaker(settings.database_url))
    )
    engine.start()
    app.state.engine = engine
    logger.info("ingestion_started", extra={"program_id": settings.program_id})
    try:
        yield
    finally:
        await engine.stop()
        await ledger.aclose()


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging()
    app = FastAPI(title="Stakewatch API", version="0.1.0", lifespan=lifespan)

    # AnyHttpUrl adds a trailing slash; browser Origin headers never carry one.
    cors_origins = [str(o).rstrip("/") for o in settings.api_cors_origins]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware, access_log=access_log)
    install_error_handlers(app)

    app.include_router(health_router)
    app.include_router(events_router)
    app.add_api_route("/metrics", render_metrics, methods=["GET"], include_in_schema=False)

    configure_tracing()
    return app


app = create_app()
