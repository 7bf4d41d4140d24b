"""Command constants and frame builders.

Each command is identified by a single-byte ID used for both host-to-ring
requests and ring-to-host responses. Real-time measurements share one
start/stop pair of IDs and are told apart by a reading-kind byte.
"""

from __future__ import annotations

from enum import IntEnum

from .framing import build_frame


class Command(IntEnum):
    """Command identifiers."""

    HEART_RATE_REPORT = 0x01
    BATTERY = 0x03
    REBOOT = 0x08
    STEPS = 0x43
    REAL_TIME_START = 0x69
    REAL_TIME_STOP = 0x6A
    RAW_DATA = 0xA1


class RealTimeKind(IntEnum):
    """Reading kinds carried by REAL_TIME_START / REAL_TIME_STOP."""

    HEART_RATE = 1
    BLOOD_PRESSURE = 2
    SPO2 = 3
    FATIGUE = 4
    HEALTH_CHECK = 5
    ECG = 7
    PRESSURE = 8
    BLOOD_SUGAR = 9
    HRV = 10


class RealTimeAction(IntEnum):
    START = 1
    PAUSE = 2
    CONTINUE = 3
    STOP = 4


class RawDataMode(IntEnum):
    """Sub-commands of RAW_DATA."""

    DISABLE = 0x02
    ENABLE = 0x04


# Subtype byte of RAW_DATA notifications carrying accelerometer samples
RAW_SUBTYPE_ACCELEROMETER = 3

# Steps request tail taken from the vendor app: fixed interval/window flags
STEPS_REQUEST_TAIL = bytes([0x0F, 0x00, 0x5F, 0x01])

# Oldest day the ring keeps sport detail for
MAX_STEPS_DAY_OFFSET = 29


def build_command(command: Command, payload: bytes = b"") -> bytes:
    """Build a single 16-byte frame for a command."""
    return build_frame(command.value, payload)


def build_battery_request() -> bytes:
    """Build a Battery (0x03) query."""
    return build_command(Command.BATTERY)


def build_real_time_start(kind: RealTimeKind) -> bytes:
    """Start a real-time measurement; the ring then streams REAL_TIME_START frames."""
    return build_command(
        Command.REAL_TIME_START, bytes([kind, RealTimeAction.START])
    )


def build_real_time_stop(kind: RealTimeKind) -> bytes:
    """Stop a real-time measurement."""
    return build_command(Command.REAL_TIME_STOP, bytes([kind, 0, 0]))


def build_steps_request(day_offset: int = 0) -> bytes:
    """Build a sport-detail request for one day.

    Args:
        day_offset: Days back from today (0 = today, up to 29).
    """
    if not 0 <= day_offset <= MAX_STEPS_DAY_OFFSET:
        raise ValueError(f"Day offset must be 0-{MAX_STEPS_DAY_OFFSET}, got {day_offset}")
    return build_command(Command.STEPS, bytes([day_offset]) + STEPS_REQUEST_TAIL)


def build_raw_data_enable() -> bytes:
    """Switch the ring into raw sensor mode (accelerometer stream)."""
    return build_command(
        Command.RAW_DATA, bytes([RawDataMode.ENABLE, RawDataMode.ENABLE])
    )


def build_raw_data_disable() -> bytes:
    return build_command(Command.RAW_DATA, bytes([RawDataMode.DISABLE]))


def build_reboot() -> bytes:
    """Build a Reboot command. The ring drops the link shortly after."""
    return build_command(Command.REBOOT, b"\x01")
