from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class AppError(Exception):
    code: str
    message: str
    status_code: int = 400
    details: dict[str, Any] | None = None


class LedgerError(Exception):
    """A ledger RPC call failed (transport error, HTTP status or JSON-RPC error)."""

    def __init__(self, method: str, message: str) -> None:
        super().__init__(f"{method}: {message}")
        self.method = method


class LedgerSubscriptionError(LedgerError):
    """The live log subscription was rejected or closed by the remote end."""
