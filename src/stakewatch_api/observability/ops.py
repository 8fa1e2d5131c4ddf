from __future__ import annotations

import time
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Span
from opentelemetry.trace.status import Status, StatusCode

from stakewatch_api.domain.errors import AppError, LedgerError
from stakewatch_api.observability import metrics

_tracer = trace.get_tracer("stakewatch_api")


def _span_attributes(attributes: dict[str, Any] | None) -> dict[str, Any]:
    return {key: value for key, value in (attributes or {}).items() if value is not None}


def _error_code(exc: Exception) -> str:
    if isinstance(exc, AppError):
        return exc.code
    if isinstance(exc, LedgerError):
        return "ledger_error"
    return "unhandled_exception"


@asynccontextmanager
async def observe_operation(
    operation: str,
    *,
    attributes: dict[str, Any] | None = None,
) -> AsyncIterator[None]:
    """Wrap a long-running or client-facing operation in a span plus ``sw_operation_*`` metrics."""
    started = time.perf_counter()
    outcome, error_code = "success", ""
    with _tracer.start_as_current_span(
        f"sw.{operation}",
        attributes=_span_attributes(attributes),
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield
        except Exception as exc:
            outcome, error_code = "error", _error_code(exc)
            span.set_attribute("sw.error_code", error_code)
            if isinstance(exc, LedgerError):
                span.set_attribute("ledger.method", exc.method)
            if not isinstance(exc, AppError):
                span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, description=error_code))
            raise
        finally:
            elapsed = time.perf_counter() - started
            metrics.operation_total.labels(
                operation=operation, outcome=outcome, error_code=error_code
            ).inc()
            metrics.operation_duration_seconds.labels(
                operation=operation, outcome=outcome
            ).observe(elapsed)


@contextmanager
def ingest_span(*, source: str, signature: str) -> Iterator[Span]:
    # Exceptions are recorded on the span by the tracer itself.
    with _tracer.start_as_current_span(
        "sw.ingest",
        attributes={"ingest.source": source, "tx.signature": signature},
    ) as span:
        yield span
