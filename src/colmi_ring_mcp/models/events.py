"""Events delivered to session subscribers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Union

from ..errors import RingError
from .metrics import Metric
from .state import ConnectionState


@dataclass(frozen=True)
class MetricUpdate:
    metric: Metric
    value: Any
    observed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        value = self.value.to_dict() if hasattr(self.value, "to_dict") else self.value
        return {
            "type": "metric",
            "metric": self.metric.value,
            "value": value,
            "observed_at": self.observed_at.isoformat(),
        }


@dataclass(frozen=True)
class ConnectionChanged:
    state: ConnectionState

    def to_dict(self) -> dict[str, Any]:
        return {"type": "connection", **self.state.to_dict()}


@dataclass(frozen=True)
class ProtocolErrorEvent:
    """A command failed after the session gave up on it."""

    kind: str
    message: str
    command_id: int | None = None

    @classmethod
    def from_exception(cls, exc: RingError) -> ProtocolErrorEvent:
        return cls(
            kind=type(exc).__name__,
            message=str(exc),
            command_id=getattr(exc, "command_id", None),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"type": "error", "kind": self.kind, "message": self.message}
        if self.command_id is not None:
            result["command_id"] = f"0x{self.command_id:02X}"
        return result


DecodedEvent = Union[MetricUpdate, ConnectionChanged, ProtocolErrorEvent]
