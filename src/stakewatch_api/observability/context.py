from __future__ import annotations

import contextvars
from collections.abc import Iterator
from contextlib import contextmanager

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "request_id", default=None
)
ingest_source_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "ingest_source", default=None
)
signature_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "signature", default=None
)


def get_request_id() -> str | None:
    return request_id_var.get()


@contextmanager
def ingest_context(*, source: str, signature: str) -> Iterator[None]:
    source_token = ingest_source_var.set(source)
    signature_token = signature_var.set(signature)
    try:
        yield
    finally:
        signature_var.reset(signature_token)
        ingest_source_var.reset(source_token)
