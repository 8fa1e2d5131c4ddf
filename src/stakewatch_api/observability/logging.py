from __future__ import annotations

import datetime as dt
import json
import logging
import os
import traceback
from typing import Any

from opentelemetry import trace

from stakewatch_api.observability.context import (
    get_request_id,
    ingest_source_var,
    signature_var,
)

ROOT_LOGGER = "stakewatch_api"

_CONTEXT_FIELDS = ("request_id", "ingest_source", "signature", "trace_id", "span_id")

# Attributes every LogRecord carries; anything else on a record came from ``extra``.
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName", *_CONTEXT_FIELDS}

_PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(ingest_source)s %(signature)s] %(message)s"

_configured = False


class ContextFilter(logging.Filter):
    """Copies request, ingestion and trace context from contextvars onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        record.ingest_source = ingest_source_var.get()
        record.signature = signature_var.get()
        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            record.trace_id = format(span_context.trace_id, "032x")
            record.span_id = format(span_context.span_id, "016x")
        else:
            record.trace_id = record.span_id = None
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": dt.datetime.fromtimestamp(record.created, dt.UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(
            (field, getattr(record, field))
            for field in _CONTEXT_FIELDS
            if getattr(record, field, None)
        )
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and value is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, tb = record.exc_info
            payload["exc_type"] = exc_type.__name__
            payload["exc"] = "".join(traceback.format_exception(exc_type, exc, tb)).rstrip()
        return json.dumps(payload, default=str)


def _build_handler(log_format: str) -> logging.Handler:
    handler = logging.StreamHandler()
    if log_format == "plain":
        handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))
    else:
        handler.setFormatter(JsonFormatter())
    handler.addFilter(ContextFilter())
    return handler


def configure_logging(*, default_level: str = "INFO") -> None:
    """Attach one handler to the package logger; ``LOG_LEVEL`` and ``LOG_FORMAT`` override."""
    global _configured
    if _configured:
        return

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(os.getenv("LOG_LEVEL", default_level).upper())
    logger.propagate = False
    if not logger.handlers:
        logger.addHandler(_build_handler(os.getenv("LOG_FORMAT", "json").strip().lower()))
    _configured = True


def access_log(event: dict[str, object]) -> None:
    logging.getLogger(f"{ROOT_LOGGER}.access").info("http_request", extra=event)
