"""Data models for connection state, metrics, and session events."""

from .state import ConnectionState, StateKind
from .metrics import Metric, MetricValue, MetricsSnapshot
from .events import (
    ConnectionChanged,
    DecodedEvent,
    MetricUpdate,
    ProtocolErrorEvent,
)
