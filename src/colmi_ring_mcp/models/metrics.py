"""Metrics snapshot model."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any


class Metric(str, Enum):
    """Health metrics tracked in the snapshot."""

    HEART_RATE_BPM = "heart_rate_bpm"
    SPO2_PERCENT = "spo2_percent"
    STEPS = "steps"
    BATTERY_PERCENT = "battery_percent"
    ACCELEROMETER_SAMPLE = "accelerometer_sample"


@dataclass(frozen=True)
class MetricValue:
    value: Any
    observed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        value = self.value.to_dict() if hasattr(self.value, "to_dict") else self.value
        return {"value": value, "observed_at": self.observed_at.isoformat()}


@dataclass(frozen=True)
class MetricsSnapshot:
    """Latest known value of every metric.

    Instances are immutable; an update produces a new snapshot. ``stale`` is
    set when the connection is gone and cleared by the next fresh value.
    """

    heart_rate_bpm: MetricValue | None = None
    spo2_percent: MetricValue | None = None
    steps: MetricValue | None = None
    battery_percent: MetricValue | None = None
    accelerometer_sample: MetricValue | None = None
    stale: bool = False

    def get(self, metric: Metric) -> MetricValue | None:
        return getattr(self, metric.value)

    def with_value(self, metric: Metric, value: Any, observed_at: datetime) -> MetricsSnapshot:
        return replace(
            self, **{metric.value: MetricValue(value, observed_at)}, stale=False
        )

    def mark_stale(self) -> MetricsSnapshot:
        return self if self.stale else replace(self, stale=True)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for metric in Metric:
            entry = self.get(metric)
            result[metric.value] = entry.to_dict() if entry else None
        result["stale"] = self.stale
        return result
