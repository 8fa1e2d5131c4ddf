from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class SignatureInfo:
    signature: str
    block_time: int | None = None
    slot: int | None = None
    failed: bool = False


@dataclass(frozen=True)
class ParsedInstruction:
    program_id: str | None
    program: str | None = None
    parsed: dict[str, Any] | str | None = None
    data: str | list[Any] | None = None


@dataclass(frozen=True)
class ParsedTransaction:
    signature: str
    slot: int | None
    block_time: int | None
    failed: bool
    log_messages: tuple[str, ...]
    account_keys: tuple[str, ...]
    instructions: tuple[ParsedInstruction, ...]

    @property
    def fee_payer(self) -> str | None:
        return self.account_keys[0] if self.account_keys else None


@dataclass(frozen=True)
class LogNotification:
    signature: str
    logs_ok: bool


class LedgerClient(Protocol):
    async def list_signatures(
        self, program_id: str, *, before: str | None = None, limit: int = 100
    ) -> list[SignatureInfo]:
        ...

    async def fetch_transaction(self, signature: str) -> ParsedTransaction | None:
        ...

    def subscribe_logs(self, program_id: str) -> AsyncIterator[LogNotification]:
        ...


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def parse_signature_infos(result: Any) -> list[SignatureInfo]:
    if not isinstance(result, list):
        return []
    infos: list[SignatureInfo] = []
    for item in result:
        if not isinstance(item, dict):
            continue
        signature = item.get("signature")
        if not isinstance(signature, str) or not signature:
            continue
        infos.append(
            SignatureInfo(
                signature=signature,
                block_time=_optional_int(item.get("blockTime")),
                slot=_optional_int(item.get("slot")),
                failed=item.get("err") is not None,
            )
        )
    return infos


def _parse_account_keys(message: dict[str, Any]) -> tuple[str, ...]:
    raw_keys = message.get("accountKeys")
    if not isinstance(raw_keys, list):
        return ()
    keys: list[str] = []
    for entry in raw_keys:
        # jsonParsed returns {"pubkey": ...} objects, plain json returns strings.
        if isinstance(entry, dict):
            entry = entry.get("pubkey")
        if isinstance(entry, str):
            keys.append(entry)
    return tuple(keys)


def _parse_instruction(raw: dict[str, Any], account_keys: tuple[str, ...]) -> ParsedInstruction:
    program_id = raw.get("programId")
    if not isinstance(program_id, str):
        program_id = None
        index = raw.get("programIdIndex")
        if isinstance(index, int) and 0 <= index < len(account_keys):
            program_id = account_keys[index]
    program = raw.get("program")
    parsed = raw.get("parsed")
    data = raw.get("data")
    return ParsedInstruction(
        program_id=program_id,
        program=program if isinstance(program, str) else None,
        parsed=parsed if isinstance(parsed, (dict, str)) else None,
        data=data if isinstance(data, (str, list)) else None,
    )


def parse_transaction_result(signature: str, result: Any) -> ParsedTransaction | None:
    """Convert a ``getTransaction`` result into a ``ParsedTransaction``; ``None`` when absent."""
    if not isinstance(result, dict):
        return None

    meta = result.get("meta")
    failed = not isinstance(meta, dict) or meta.get("err") is not None
    log_messages: tuple[str, ...] = ()
    if isinstance(meta, dict) and isinstance(meta.get("logMessages"), list):
        log_messages = tuple(line for line in meta["logMessages"] if isinstance(line, str))

    account_keys: tuple[str, ...] = ()
    instructions: list[ParsedInstruction] = []
    transaction = result.get("transaction")
    message = transaction.get("message") if isinstance(transaction, dict) else None
    if isinstance(message, dict):
        account_keys = _parse_account_keys(message)
        raw_instructions = message.get("instructions")
        if isinstance(raw_instructions, list):
            for raw in raw_instructions:
                if isinstance(raw, dict):
                    instructions.append(_parse_instruction(raw, account_keys))

    return ParsedTransaction(
        signature=signature,
        slot=_optional_int(result.get("slot")),
        block_time=_optional_int(result.get("blockTime")),
        failed=failed,
        log_messages=log_messages,
        account_keys=account_keys,
        instructions=tuple(instructions),
    )


def parse_logs_notification(message: Any) -> LogNotification | None:
    """Extract a ``LogNotification`` from a ``logsNotification`` websocket message."""
    if not isinstance(message, dict) or message.get("method") != "logsNotification":
        return None
    params = message.get("params")
    if not isinstance(params, dict):
        return None
    result = params.get("result")
    if not isinstance(result, dict):
        return None
    value = result.get("value")
    if not isinstance(value, dict):
        return None
    signature = value.get("signature")
    if not isinstance(signature, str) or not signature:
        return None
    return LogNotification(signature=signature, logs_ok=value.get("err") is None)
