from __future__ import annotations

import itertools
import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import websockets

from stakewatch_api.domain.errors import LedgerError, LedgerSubscriptionError
from stakewatch_api.domain.ledger import (
    LogNotification,
    ParsedTransaction,
    SignatureInfo,
    parse_logs_notification,
    parse_signature_infos,
    parse_transaction_result,
)
from stakewatch_api.observability import metrics
from stakewatch_api.settings import Settings

logger = logging.getLogger(__name__)

_SUBSCRIBE_REQUEST_ID = 1


class SolanaLedgerClient:
    """JSON-RPC + websocket access to a Solana cluster, scoped to what ingestion needs."""

    def __init__(
        self,
        rpc_url: str,
        ws_url: str,
        *,
        commitment: str = "confirmed",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._rpc_url = rpc_url
        self._ws_url = ws_url
        self._commitment = commitment
        self._timeout = timeout
        self._http = http_client
        self._owns_http = http_client is None
        self._connect = connect
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "SolanaLedgerClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)
        return self._http

    async def _call(self, method: str, params: list[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            response = await self._client().post(self._rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            metrics.ledger_request_total.labels(method=method, outcome="transport_error").inc()
            raise LedgerError(method, str(exc)) from exc

        error = body.get("error") if isinstance(body, dict) else None
        if error is not None:
            metrics.ledger_request_total.labels(method=method, outcome="rpc_error").inc()
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise LedgerError(method, message or "Unknown RPC error")

        metrics.ledger_request_total.labels(method=method, outcome="success").inc()
        return body.get("result") if isinstance(body, dict) else None

    async def list_signatures(
        self, program_id: str, *, before: str | None = None, limit: int = 100
    ) -> list[SignatureInfo]:
        options: dict[str, Any] = {"limit": limit, "commitment": self._commitment}
        if before:
            options["before"] = before
        result = await self._call("getSignaturesForAddress", [program_id, options])
        return parse_signature_infos(result)

    async def fetch_transaction(self, signature: str) -> ParsedTransaction | None:
        result = await self._call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "maxSupportedTransactionVersion": 0,
                    "commitment": self._commitment,
                },
            ],
        )
        return parse_transaction_result(signature, result)

    async def subscribe_logs(self, program_id: str) -> AsyncIterator[LogNotification]:
        request = {
            "jsonrpc": "2.0",
            "id": _SUBSCRIBE_REQUEST_ID,
            "method": "logsSubscribe",
            "params": [{"mentions": [program_id]}, {"commitment": self._commitment}],
        }
        async with self._connect(
            self._ws_url,
            ping_interval=30,
            ping_timeout=60,
            close_timeout=10,
        ) as ws:
            await ws.send(json.dumps(request))
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("ws_message_undecodable", extra={"ws_url": self._ws_url})
                    continue
                if not isinstance(message, dict):
                    continue
                if message.get("id") == _SUBSCRIBE_REQUEST_ID:
                    if message.get("error") is not None:
                        raise LedgerSubscriptionError("logsSubscribe", str(message["error"]))
                    logger.info(
                        "logs_subscribed",
                        extra={"program_id": program_id, "subscription_id": message.get("result")},
                    )
                    continue
                notification = parse_logs_notification(message)
                if notification is not None:
                    yield notification
        raise LedgerSubscriptionError("logsSubscribe", "subscription closed by remote")


def create_ledger_client(settings: Settings) -> SolanaLedgerClient:
    return SolanaLedgerClient(
        str(settings.solana_rpc_url),
        settings.resolved_ws_url,
        commitment=settings.solana_commitment,
        timeout=settings.rpc_timeout_seconds,
    )
