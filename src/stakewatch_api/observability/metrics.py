from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

operation_total = Counter(
    "sw_operation_total",
    "Count of critical operations.",
    labelnames=("operation", "outcome", "error_code"),
)
operation_duration_seconds = Histogram(
    "sw_operation_duration_seconds",
    "Duration of critical operations in seconds.",
    labelnames=("operation", "outcome"),
    buckets=(
        0.01,
        0.05,
        0.1,
        0.5,
        1.0,
        5.0,
        15.0,
        60.0,
        300.0,
        900.0,
    ),
)

ingest_total = Counter(
    "sw_ingest_total",
    "Count of per-signature ingestion attempts by path and outcome.",
    labelnames=("source", "outcome"),
)

ledger_request_total = Counter(
    "sw_ledger_request_total",
    "Count of ledger JSON-RPC requests.",
    labelnames=("method", "outcome"),
)

live_subscription_total = Counter(
    "sw_live_subscription_total",
    "Count of live log subscription lifecycle events.",
    labelnames=("outcome",),
)


def render_metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
