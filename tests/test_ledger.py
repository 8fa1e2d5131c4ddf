from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from stakewatch_api.domain.errors import LedgerError, LedgerSubscriptionError
from stakewatch_api.domain.ledger import (
    LogNotification,
    parse_logs_notification,
    parse_signature_infos,
    parse_transaction_result,
)
from stakewatch_api.domain.ledger_solana import SolanaLedgerClient
from stakewatch_api.settings import Settings, derive_ws_url


def _transaction_result() -> dict[str, Any]:
    return {
        "slot": 250,
        "blockTime": 1_700_000_123,
        "meta": {
            "err": None,
            "logMessages": ["Program log: Instruction: Stake", "Program log: Staked 2500 tokens"],
        },
        "transaction": {
            "message": {
                "accountKeys": [
                    {"pubkey": "Payer111", "signer": True, "writable": True},
                    {"pubkey": "Program111", "signer": False, "writable": False},
                ],
                "instructions": [
                    {"programId": "Program111", "accounts": [], "data": "3Bxs4h24hBtQy9rw"},
                    {"programIdIndex": 1, "data": "abc"},
                    {
                        "program": "system",
                        "programId": "11111111111111111111111111111111",
                        "parsed": {"type": "transfer", "info": {"lamports": 5}},
                    },
                ],
            }
        },
    }


def test_parse_transaction_result() -> None:
    tx = parse_transaction_result("sig-1", _transaction_result())
    assert tx is not None
    assert tx.signature == "sig-1"
    assert tx.slot == 250
    assert tx.block_time == 1_700_000_123
    assert tx.failed is False
    assert tx.fee_payer == "Payer111"
    assert tx.log_messages[1] == "Program log: Staked 2500 tokens"
    assert [ix.program_id for ix in tx.instructions] == [
        "Program111",
        "Program111",
        "11111111111111111111111111111111",
    ]
    assert tx.instructions[2].program == "system"
    assert tx.instructions[2].parsed == {"type": "transfer", "info": {"lamports": 5}}


def test_parse_transaction_result_marks_failures() -> None:
    result = _transaction_result()
    result["meta"]["err"] = {"InstructionError": [0, "Custom"]}
    tx = parse_transaction_result("sig-1", result)
    assert tx is not None and tx.failed

    result.pop("meta")
    tx = parse_transaction_result("sig-1", result)
    assert tx is not None and tx.failed


def test_parse_transaction_result_missing_or_malformed() -> None:
    assert parse_transaction_result("sig-1", None) is None
    tx = parse_transaction_result("sig-1", {"meta": {"err": None}, "transaction": "garbage"})
    assert tx is not None
    assert tx.account_keys == ()
    assert tx.fee_payer is None
    assert tx.instructions == ()


def test_parse_transaction_result_plain_account_keys() -> None:
    result = _transaction_result()
    result["transaction"]["message"]["accountKeys"] = ["Payer222", "Program111"]
    tx = parse_transaction_result("sig-1", result)
    assert tx is not None
    assert tx.fee_payer == "Payer222"


def test_parse_signature_infos() -> None:
    infos = parse_signature_infos(
        [
            {"signature": "b", "blockTime": 20, "slot": 2, "err": None},
            {"signature": "a", "blockTime": None, "slot": 1, "err": {"x": 1}},
            {"blockTime": 5},
            "junk",
        ]
    )
    assert [info.signature for info in infos] == ["b", "a"]
    assert infos[0].block_time == 20
    assert infos[1].block_time is None
    assert infos[1].failed is True
    assert parse_signature_infos(None) == []


def test_parse_logs_notification() -> None:
    message = {
        "jsonrpc": "2.0",
        "method": "logsNotification",
        "params": {
            "subscription": 7,
            "result": {"context": {"slot": 1}, "value": {"signature": "s1", "err": None, "logs": []}},
        },
    }
    assert parse_logs_notification(message) == LogNotification(signature="s1", logs_ok=True)
    message["params"]["result"]["value"]["err"] = {"InstructionError": [0, "Custom"]}
    assert parse_logs_notification(message) == LogNotification(signature="s1", logs_ok=False)
    assert parse_logs_notification({"method": "slotNotification", "params": {}}) is None
    assert parse_logs_notification({"method": "logsNotification", "params": {"result": 1}}) is None


def test_derive_ws_url() -> None:
    assert derive_ws_url("https://api.devnet.solana.com/") == "wss://api.devnet.solana.com/"
    assert derive_ws_url("http://127.0.0.1:8899") == "ws://127.0.0.1:8899"


def test_settings_resolve_ws_url() -> None:
    settings = Settings(solana_rpc_url="https://rpc.example.com", solana_ws_url="")
    assert settings.resolved_ws_url.startswith("wss://rpc.example.com")
    explicit = Settings(solana_ws_url="ws://localhost:8900")
    assert explicit.resolved_ws_url == "ws://localhost:8900"


def test_settings_reject_bad_values() -> None:
    with pytest.raises(ValueError):
        Settings(solana_ws_url="http://localhost:8900")
    with pytest.raises(ValueError):
        Settings(backfill_page_size=0)
    with pytest.raises(ValueError):
        Settings(program_id="  ")


def _client(handler) -> SolanaLedgerClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SolanaLedgerClient(
        "https://rpc.test",
        "wss://rpc.test",
        commitment="finalized",
        http_client=http_client,
    )


@pytest.mark.asyncio
async def test_list_signatures_sends_cursor_and_commitment() -> None:
    requests: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append(body)
        return httpx.Response(
            200,
            json={
                "jsonrpc": "2.0",
                "id": body["id"],
                "result": [{"signature": "s2", "blockTime": 2, "slot": 9, "err": None}],
            },
        )

    client = _client(handler)
    infos = await client.list_signatures("Program111", before="s3", limit=25)
    first_page = await client.list_signatures("Program111")

    assert [info.signature for info in infos] == ["s2"]
    assert len(first_page) == 1
    assert requests[0]["method"] == "getSignaturesForAddress"
    assert requests[0]["params"] == [
        "Program111",
        {"limit": 25, "commitment": "finalized", "before": "s3"},
    ]
    assert "before" not in requests[1]["params"][1]
    assert requests[0]["id"] != requests[1]["id"]


@pytest.mark.asyncio
async def test_fetch_transaction_requests_json_parsed() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.update(body)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": _transaction_result()})

    client = _client(handler)
    tx = await client.fetch_transaction("sig-9")

    assert tx is not None and tx.signature == "sig-9"
    assert seen["method"] == "getTransaction"
    assert seen["params"][1] == {
        "encoding": "jsonParsed",
        "maxSupportedTransactionVersion": 0,
        "commitment": "finalized",
    }


@pytest.mark.asyncio
async def test_fetch_transaction_returns_none_when_unknown() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": None})

    assert await _client(handler).fetch_transaction("missing") is None


@pytest.mark.asyncio
async def test_rpc_error_raises_ledger_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "rate limited"}},
        )

    with pytest.raises(LedgerError) as excinfo:
        await _client(handler).list_signatures("Program111")
    assert excinfo.value.method == "getSignaturesForAddress"
    assert "rate limited" in str(excinfo.value)


@pytest.mark.asyncio
async def test_http_error_raises_ledger_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    with pytest.raises(LedgerError):
        await _client(handler).fetch_transaction("sig")


class _FakeWebSocket:
    def __init__(self, messages: list[Any]) -> None:
        self._messages = messages
        self.sent: list[dict[str, Any]] = []

    async def __aenter__(self) -> "_FakeWebSocket":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    async def send(self, raw: str) -> None:
        self.sent.append(json.loads(raw))

    async def __aiter__(self):
        for message in self._messages:
            yield message if isinstance(message, str) else json.dumps(message)


def _notification(signature: str, err: Any = None) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "method": "logsNotification",
        "params": {"subscription": 3, "result": {"value": {"signature": signature, "err": err}}},
    }


@pytest.mark.asyncio
async def test_subscribe_logs_yields_notifications_until_closed() -> None:
    socket = _FakeWebSocket(
        [
            {"jsonrpc": "2.0", "id": 1, "result": 3},
            "not json",
            _notification("s1"),
            _notification("s2", err={"InstructionError": [0, "Custom"]}),
        ]
    )
    connect_calls: list[tuple[str, dict[str, Any]]] = []

    def fake_connect(url: str, **kwargs: Any) -> _FakeWebSocket:
        connect_calls.append((url, kwargs))
        return socket

    client = SolanaLedgerClient("https://rpc.test", "wss://rpc.test", connect=fake_connect)
    received: list[LogNotification] = []
    with pytest.raises(LedgerSubscriptionError):
        async for notification in client.subscribe_logs("Program111"):
            received.append(notification)

    assert received == [
        LogNotification(signature="s1", logs_ok=True),
        LogNotification(signature="s2", logs_ok=False),
    ]
    assert connect_calls[0][0] == "wss://rpc.test"
    assert socket.sent[0]["method"] == "logsSubscribe"
    assert socket.sent[0]["params"][0] == {"mentions": ["Program111"]}
    await client.aclose()


@pytest.mark.asyncio
async def test_subscribe_logs_rejected() -> None:
    socket = _FakeWebSocket([{"jsonrpc": "2.0", "id": 1, "error": {"code": -32602}}])
    client = SolanaLedgerClient("https://rpc.test", "wss://rpc.test", connect=lambda url, **_: socket)

    with pytest.raises(LedgerSubscriptionError) as excinfo:
        async for _ in client.subscribe_logs("Program111"):
            pass
    assert excinfo.value.method == "logsSubscribe"
