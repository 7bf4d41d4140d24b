"""Connection state value."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class StateKind(str, Enum):
    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    DISCOVERING = "discovering"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass(frozen=True)
class ConnectionState:
    """Current position in the connection state machine.

    ``attempt`` is only meaningful while reconnecting and ``reason`` only
    once failed.
    """

    kind: StateKind = StateKind.DISCONNECTED
    attempt: int = 0
    reason: str | None = None

    @classmethod
    def reconnecting(cls, attempt: int) -> ConnectionState:
        return cls(StateKind.RECONNECTING, attempt=attempt)

    @classmethod
    def failed(cls, reason: str) -> ConnectionState:
        return cls(StateKind.FAILED, reason=reason)

    @property
    def is_subscribed(self) -> bool:
        return self.kind is StateKind.SUBSCRIBED

    @property
    def is_terminal(self) -> bool:
        return self.kind is StateKind.FAILED

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"state": self.kind.value}
        if self.kind is StateKind.RECONNECTING:
            result["attempt"] = self.attempt
        if self.kind is StateKind.FAILED:
            result["reason"] = self.reason
        return result

    def __str__(self) -> str:
        if self.kind is StateKind.RECONNECTING:
            return f"reconnecting({self.attempt})"
        if self.kind is StateKind.FAILED:
            return f"failed({self.reason})"
        return self.kind.value


DISCONNECTED = ConnectionState(StateKind.DISCONNECTED)
SCANNING = ConnectionState(StateKind.SCANNING)
CONNECTING = ConnectionState(StateKind.CONNECTING)
DISCOVERING = ConnectionState(StateKind.DISCOVERING)
SUBSCRIBED = ConnectionState(StateKind.SUBSCRIBED)
