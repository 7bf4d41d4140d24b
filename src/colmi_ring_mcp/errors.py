"""Exception hierarchy for the ring client.

Three families mirror the three ways a ring conversation goes wrong:

- :class:`TransportError`: the radio link or the host adapter.
- :class:`ProtocolError`: a frame or a command that does not make sense.
- :class:`TimingError`: something that should have arrived did not.
"""

from __future__ import annotations


class RingError(Exception):
    """Base class for every error raised by this package."""


# ─── TRANSPORT ───────────────────────────────────────────────────────


class TransportError(RingError, ConnectionError):
    """The BLE link or adapter failed."""


class AdapterUnavailable(TransportError):
    """No usable Bluetooth adapter (missing, powered off, or busy)."""


class PermissionDenied(TransportError):
    """The OS refused access to Bluetooth."""


class DeviceNotFound(TransportError):
    """No ring matching the filter answered the scan."""


class ServiceUnavailable(TransportError):
    """The device does not expose the ring's UART service."""


class ConnectionTimeout(TransportError):
    """Connecting or discovering services took too long."""


class LinkLost(TransportError):
    """The established link dropped."""


class NotConnected(TransportError):
    """A write was attempted while not subscribed."""


class ConnectionLost(TransportError):
    """A pending command was abandoned because the connection went away."""


# ─── PROTOCOL ────────────────────────────────────────────────────────


class ProtocolError(RingError):
    """A frame or command violated the wire protocol."""


class ChecksumMismatch(ProtocolError):
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Checksum mismatch: expected 0x{expected:02X}, got 0x{actual:02X}"
        )
        self.expected = expected
        self.actual = actual


class UnexpectedLength(ProtocolError):
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Expected a {expected}-byte frame, got {actual} bytes")
        self.expected = expected
        self.actual = actual


class MalformedPayload(ProtocolError):
    """The frame was intact but its payload cannot be interpreted."""


class InvalidRequest(ProtocolError, ValueError):
    """A request argument is outside what the ring accepts."""


class UnknownCommand(ProtocolError):
    def __init__(self, command_id: int) -> None:
        super().__init__(f"Unknown command id 0x{command_id:02X}")
        self.command_id = command_id


class PayloadTooLarge(ProtocolError, ValueError):
    def __init__(self, size: int, capacity: int) -> None:
        super().__init__(f"Payload of {size} bytes exceeds frame capacity of {capacity}")
        self.size = size
        self.capacity = capacity


class RequestAlreadyInFlight(ProtocolError):
    def __init__(self, command_id: int) -> None:
        super().__init__(f"A request for command 0x{command_id:02X} is already in flight")
        self.command_id = command_id


class CommandRejected(ProtocolError):
    """The ring answered with its error bit set."""

    def __init__(self, command_id: int, payload: bytes = b"") -> None:
        super().__init__(f"Ring rejected command 0x{command_id:02X}")
        self.command_id = command_id
        self.payload = payload


# ─── TIMING ──────────────────────────────────────────────────────────


class TimingError(RingError):
    """An expected frame did not arrive in time."""


class CommandTimedOut(TimingError):
    def __init__(self, command_id: int, timeout: float) -> None:
        super().__init__(f"No response to command 0x{command_id:02X} within {timeout:g}s")
        self.command_id = command_id
        self.timeout = timeout


class NotificationSilence(TimingError):
    def __init__(self, silent_for: float) -> None:
        super().__init__(f"No notifications for {silent_for:.1f}s while streaming")
        self.silent_for = silent_for
