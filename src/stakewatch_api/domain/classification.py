"""Classify program transactions into staking events and recover their amounts.

Amount recovery tries a fixed sequence of strategies and keeps the first
result: the program's own log lines, then an RPC-decoded instruction payload,
then the raw instruction bytes (8-byte discriminator followed by a
little-endian u64).
"""

from __future__ import annotations

import base64
import re
from collections.abc import Callable, Iterable, Sequence
from enum import StrEnum
from typing import Any

import base58

from stakewatch_api.db.models import U64_MAX
from stakewatch_api.domain.ledger import ParsedInstruction, ParsedTransaction


class EventType(StrEnum):
    STAKE = "stake"
    UNSTAKE = "unstake"
    WITHDRAW_REWARDS = "withdrawRewards"


# Checked in order; the first marker present in any log line decides the type.
INSTRUCTION_MARKERS: tuple[tuple[str, EventType], ...] = (
    ("Instruction: Stake", EventType.STAKE),
    ("Instruction: Unstake", EventType.UNSTAKE),
    ("Instruction: WithdrawRewards", EventType.WITHDRAW_REWARDS),
)

_AMOUNT_LOG_PATTERNS: dict[EventType, re.Pattern[str]] = {
    EventType.STAKE: re.compile(r"\bStaked\s+([0-9]+)\s+tokens?\b", re.IGNORECASE),
    EventType.UNSTAKE: re.compile(r"\bUnstaked\s+([0-9]+)\s+tokens?\b", re.IGNORECASE),
}

_DISCRIMINATOR_LEN = 8
_AMOUNT_LEN = 8

AmountStrategy = Callable[[ParsedTransaction, EventType, str], int | None]


def classify_transaction(log_messages: Iterable[str]) -> EventType | None:
    lines = list(log_messages)
    for marker, event_type in INSTRUCTION_MARKERS:
        if any(marker in line for line in lines):
            return event_type
    return None


def _as_u64(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not (value.isascii() and value.isdigit()):
            return None
        value = int(value)
    if not isinstance(value, int):
        return None
    if 0 <= value <= U64_MAX:
        return value
    return None


def _program_instructions(tx: ParsedTransaction, program_id: str) -> list[ParsedInstruction]:
    return [ix for ix in tx.instructions if ix.program_id == program_id]


def amount_from_logs(tx: ParsedTransaction, event_type: EventType, program_id: str) -> int | None:
    pattern = _AMOUNT_LOG_PATTERNS.get(event_type)
    if pattern is None:
        return None
    for line in tx.log_messages:
        match = pattern.search(line)
        if match:
            amount = _as_u64(match.group(1))
            if amount is not None:
                return amount
    return None


def amount_from_parsed_instruction(
    tx: ParsedTransaction, event_type: EventType, program_id: str
) -> int | None:
    for instruction in _program_instructions(tx, program_id):
        parsed = instruction.parsed
        if not isinstance(parsed, dict):
            continue
        info = parsed.get("info")
        candidates = []
        if isinstance(info, dict):
            candidates.append(info.get("amount"))
        candidates.append(parsed.get("amount"))
        for candidate in candidates:
            amount = _as_u64(candidate)
            if amount is not None:
                return amount
    return None


def decode_instruction_data(data: str | Sequence[Any] | None) -> bytes | None:
    """Decode an instruction payload; base58 strings or ``[payload, "base64"]`` pairs."""
    if isinstance(data, str):
        try:
            return base58.b58decode(data)
        except ValueError:
            return None
    if isinstance(data, (list, tuple)) and len(data) == 2 and data[1] == "base64":
        try:
            return base64.b64decode(data[0], validate=True)
        except (TypeError, ValueError):
            return None
    return None


def amount_from_instruction_data(
    tx: ParsedTransaction, event_type: EventType, program_id: str
) -> int | None:
    for instruction in _program_instructions(tx, program_id):
        payload = decode_instruction_data(instruction.data)
        if payload is None or len(payload) < _DISCRIMINATOR_LEN + _AMOUNT_LEN:
            continue
        raw_amount = payload[_DISCRIMINATOR_LEN : _DISCRIMINATOR_LEN + _AMOUNT_LEN]
        return int.from_bytes(raw_amount, "little", signed=False)
    return None


AMOUNT_STRATEGIES: tuple[AmountStrategy, ...] = (
    amount_from_logs,
    amount_from_parsed_instruction,
    amount_from_instruction_data,
)


def extract_amount(
    tx: ParsedTransaction,
    event_type: EventType,
    program_id: str,
    *,
    strategies: Sequence[AmountStrategy] = AMOUNT_STRATEGIES,
) -> int | None:
    for strategy in strategies:
        amount = strategy(tx, event_type, program_id)
        if amount is not None:
            return amount
    return None
