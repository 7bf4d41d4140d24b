"""Response parsing for ring frames.

Every parser takes a checksum-verified :class:`Frame` and either returns a
typed reading or raises :class:`MalformedPayload`. Payload offsets below are
relative to the payload (frame byte 1 is payload byte 0).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable

from ..errors import MalformedPayload, UnknownCommand
from .commands import RAW_SUBTYPE_ACCELEROMETER, Command, RealTimeKind
from .framing import Frame

# Heart rate / SpO2 bytes that mean "sensor has no reading yet"
NO_READING = (0x00, 0xFF)

STEPS_NO_DATA = 0xFF
STEPS_HEADER = 0xF0

ACCEL_RANGE_G = 4.0
ACCEL_FULL_SCALE = 2048


@dataclass(frozen=True)
class BatteryReading:
    """Parsed Battery (0x03) response."""

    level: int
    charging: bool


@dataclass(frozen=True)
class RealTimeReading:
    """One real-time measurement notification.

    ``value`` is None while the sensor is still searching or when the ring
    reported an error code.
    """

    kind: RealTimeKind
    value: int | None
    error_code: int = 0


@dataclass(frozen=True)
class RealTimeStopped:
    """Acknowledgement of a REAL_TIME_STOP command."""

    kind: int


@dataclass(frozen=True)
class StepsNoData:
    """The ring has no sport detail for the requested day."""


@dataclass(frozen=True)
class StepsHeader:
    """First frame of a sport-detail sequence."""

    new_calorie_protocol: bool


@dataclass(frozen=True)
class StepsInterval:
    """One 15-minute sport-detail bucket."""

    day: date
    time_index: int  # 0-95, quarter hours since midnight
    index: int
    total: int
    calories: int
    steps: int
    distance: int  # metres

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "time_index": self.time_index,
            "steps": self.steps,
            "calories": self.calories,
            "distance": self.distance,
        }


@dataclass(frozen=True)
class StepsSummary:
    """All intervals of one day, as assembled from a steps response."""

    intervals: tuple[StepsInterval, ...] = ()

    @property
    def total_steps(self) -> int:
        # A bucket can be repeated by the ring; the last one wins
        by_slot = {i.time_index: i.steps for i in self.intervals}
        return sum(by_slot.values())

    @property
    def total_calories(self) -> int:
        return sum({i.time_index: i.calories for i in self.intervals}.values())

    @property
    def total_distance(self) -> int:
        return sum({i.time_index: i.distance for i in self.intervals}.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "steps": self.total_steps,
            "calories": self.total_calories,
            "distance": self.total_distance,
            "intervals": [i.to_dict() for i in self.intervals],
        }


@dataclass(frozen=True)
class AccelerometerSample:
    """One tri-axis sample in raw signed 12-bit counts (+/-4 g full scale)."""

    x: int
    y: int
    z: int

    @property
    def g(self) -> tuple[float, float, float]:
        scale = ACCEL_RANGE_G / ACCEL_FULL_SCALE
        return (self.x * scale, self.y * scale, self.z * scale)

    @property
    def tilt(self) -> tuple[float, float, float]:
        """Angle of each axis against the horizontal plane, in radians."""
        gx, gy, gz = self.g
        return (
            math.atan2(gx, math.hypot(gy, gz)),
            math.atan2(gy, math.hypot(gx, gz)),
            math.atan2(gz, math.hypot(gx, gy)),
        )

    def to_dict(self) -> dict[str, Any]:
        gx, gy, gz = self.g
        return {
            "x": self.x,
            "y": self.y,
            "z": self.z,
            "g": [round(gx, 3), round(gy, 3), round(gz, 3)],
            "tilt_deg": [round(math.degrees(a), 1) for a in self.tilt],
        }


def _bcd(value: int) -> int:
    hi, lo = value >> 4, value & 0x0F
    if hi > 9 or lo > 9:
        raise MalformedPayload(f"Invalid BCD byte 0x{value:02X}")
    return hi * 10 + lo


def _int12(hi: int, lo: int) -> int:
    """Decode a signed 12-bit axis packed as 8 high bits + 4 low bits."""
    raw = ((hi << 4) | (lo & 0x0F)) & 0xFFF
    return raw - 0x1000 if raw > 0x7FF else raw


def _u16(payload: bytes, offset: int) -> int:
    return int.from_bytes(payload[offset : offset + 2], "little")


def parse_battery(frame: Frame) -> BatteryReading:
    """Parse a Battery response: ``[level, charging, ...]``."""
    level = frame.payload[0]
    if level > 100:
        raise MalformedPayload(f"Battery level out of range: {level}")
    return BatteryReading(level=level, charging=bool(frame.payload[1]))


def parse_heart_rate_report(frame: Frame) -> RealTimeReading:
    """Parse a compact heart-rate report: ``[bpm, ...]``."""
    bpm = frame.payload[0]
    return RealTimeReading(
        kind=RealTimeKind.HEART_RATE,
        value=None if bpm in NO_READING else bpm,
    )


def parse_real_time(frame: Frame) -> RealTimeReading:
    """Parse a real-time reading: ``[kind, error_code, value, ...]``."""
    kind_byte, error_code, value = frame.payload[0], frame.payload[1], frame.payload[2]
    try:
        kind = RealTimeKind(kind_byte)
    except ValueError:
        raise MalformedPayload(f"Unknown real-time reading kind {kind_byte}") from None

    if error_code != 0 or value in NO_READING:
        return RealTimeReading(kind=kind, value=None, error_code=error_code)
    if kind == RealTimeKind.SPO2 and value > 100:
        raise MalformedPayload(f"SpO2 out of range: {value}")
    return RealTimeReading(kind=kind, value=value)


def parse_real_time_stop(frame: Frame) -> RealTimeStopped:
    return RealTimeStopped(kind=frame.payload[0])


def parse_steps(frame: Frame) -> StepsNoData | StepsHeader | StepsInterval:
    """Parse one frame of a sport-detail sequence.

    Interval layout::

        [year_bcd, month_bcd, day_bcd, time_index, index, total,
         calories_lo, calories_hi, steps_lo, steps_hi, distance_lo, distance_hi]
    """
    payload = frame.payload
    if payload[0] == STEPS_NO_DATA:
        return StepsNoData()
    if payload[0] == STEPS_HEADER:
        return StepsHeader(new_calorie_protocol=payload[2] == 1)

    try:
        day = date(_bcd(payload[0]) + 2000, _bcd(payload[1]), _bcd(payload[2]))
    except ValueError as e:
        raise MalformedPayload(f"Invalid step record date: {e}") from e

    time_index = payload[3]
    if time_index > 95:
        raise MalformedPayload(f"Step time index out of range: {time_index}")
    index, total = payload[4], payload[5]
    if total == 0 or index >= total:
        raise MalformedPayload(f"Step record {index} of {total} is out of sequence")

    return StepsInterval(
        day=day,
        time_index=time_index,
        index=index,
        total=total,
        calories=_u16(payload, 6),
        steps=_u16(payload, 8),
        distance=_u16(payload, 10),
    )


def parse_raw_data(frame: Frame) -> AccelerometerSample:
    """Parse a raw-mode accelerometer notification.

    Layout: ``[subtype=3, y_hi, y_lo, z_hi, z_lo, x_hi, x_lo, ...]`` where each
    axis is a signed 12-bit value split over two bytes (low byte uses only
    its lower nibble). Other subtypes are not accelerometer data.
    """
    payload = frame.payload
    if payload[0] != RAW_SUBTYPE_ACCELEROMETER:
        raise MalformedPayload(f"Unsupported raw data subtype {payload[0]}")
    return AccelerometerSample(
        y=_int12(payload[1], payload[2]),
        z=_int12(payload[3], payload[4]),
        x=_int12(payload[5], payload[6]),
    )


PARSERS: dict[Command, Callable[[Frame], Any]] = {
    Command.HEART_RATE_REPORT: parse_heart_rate_report,
    Command.BATTERY: parse_battery,
    Command.STEPS: parse_steps,
    Command.REAL_TIME_START: parse_real_time,
    Command.REAL_TIME_STOP: parse_real_time_stop,
    Command.RAW_DATA: parse_raw_data,
}


def parse_response(frame: Frame) -> Any:
    """Dispatch a frame to the parser registered for its command.

    Raises:
        UnknownCommand: No parser handles this command id.
        MalformedPayload: The parser rejected the payload.
    """
    try:
        parser = PARSERS[Command(frame.command)]
    except (ValueError, KeyError):
        raise UnknownCommand(frame.command) from None
    return parser(frame)
