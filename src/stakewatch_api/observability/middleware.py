from __future__ import annotations

import re
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager, nullcontext

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from stakewatch_api.observability.context import request_id_var
from stakewatch_api.observability.tracing import tracing_enabled

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")
_HEADER = b"x-request-id"

AccessLog = Callable[[dict[str, object]], None]


def _header_values(scope: Scope) -> dict[str, str]:
    return {
        name.decode("latin-1").lower(): value.decode("latin-1")
        for name, value in scope.get("headers") or []
    }


def _incoming_request_id(headers: dict[str, str]) -> str | None:
    candidate = headers.get(_HEADER.decode("ascii"), "").strip()
    return candidate if _REQUEST_ID_RE.fullmatch(candidate) else None


@contextmanager
def _server_span(scope: Scope, headers: dict[str, str], request_id: str) -> Iterator[object]:
    from opentelemetry import trace
    from opentelemetry.propagate import extract
    from opentelemetry.trace import SpanKind

    method = scope.get("method") or "UNKNOWN"
    path = scope.get("path") or ""
    tracer = trace.get_tracer("stakewatch_api")
    with tracer.start_as_current_span(
        f"{method} {path}",
        context=extract(headers),
        kind=SpanKind.SERVER,
        attributes={"http.method": method, "http.target": path, "request.id": request_id},
    ) as span:
        yield span


class RequestContextMiddleware:
    """Tags each HTTP request with an ``X-Request-ID`` and reports it to ``access_log``.

    Valid incoming ids are reused; anything else is replaced by a fresh UUID.
    A server span is opened when tracing is enabled.
    """

    def __init__(self, app: ASGIApp, *, access_log: AccessLog | None = None) -> None:
        self._app = app
        self._access_log = access_log

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self._app(scope, receive, send)
            return

        headers = _header_values(scope)
        request_id = _incoming_request_id(headers) or str(uuid.uuid4())
        token = request_id_var.set(request_id)
        started = time.perf_counter()
        response_status: list[int] = []

        async def tag_response(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_status.append(int(message["status"]))
                message["headers"] = [
                    *(message.get("headers") or []),
                    (_HEADER, request_id.encode("ascii")),
                ]
            await send(message)

        span_cm = _server_span(scope, headers, request_id) if tracing_enabled() else nullcontext()
        try:
            with span_cm as span:
                await self._app(scope, receive, tag_response)
                if span is not None and response_status:
                    span.set_attribute("http.status_code", response_status[0])
        finally:
            if self._access_log is not None:
                self._access_log(
                    {
                        "method": scope.get("method"),
                        "path": scope.get("path"),
                        "status_code": response_status[0] if response_status else None,
                        "duration_ms": round((time.perf_counter() - started) * 1000.0, 3),
                    }
                )
            request_id_var.reset(token)
