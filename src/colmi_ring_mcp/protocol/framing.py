"""Frame builder and parser for the ring's fixed 16-byte packets.

Frame layout::

    +---------+----------------------------+----------+
    | Command |          Payload           | Checksum |
    | 1 byte  | 14 bytes, zero-padded      | 1 byte   |
    +---------+----------------------------+----------+

- Command: command or notification identifier
- Payload: command-specific bytes, little-endian for multi-byte fields
- Checksum: sum of the 15 preceding bytes, mod 256

The same layout is used in both directions. Frames travel one per BLE write
or notification, so there is no preamble or length field.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import ChecksumMismatch, PayloadTooLarge, UnexpectedLength
from ..utils.checksum import checksum

FRAME_SIZE = 16
MAX_PAYLOAD = FRAME_SIZE - 2  # 16 - 1(cmd) - 1(checksum)
ERROR_FLAG = 0x80


@dataclass(frozen=True)
class Frame:
    """A parsed protocol frame."""

    command: int
    payload: bytes
    checksum: int = 0

    @property
    def is_error(self) -> bool:
        """True when the ring flagged this frame as an error response."""
        return bool(self.command & ERROR_FLAG)

    def __repr__(self) -> str:
        return (
            f"Frame(command=0x{self.command:02X}, "
            f"payload={self.payload.hex(' ') if self.payload else '(empty)'})"
        )


def build_frame(command: int, payload: bytes = b"") -> bytes:
    """Build a 16-byte frame.

    Args:
        command: Single-byte command ID.
        payload: Up to 14 payload bytes; shorter payloads are zero-padded.

    Returns:
        A 16-byte ``bytes`` object ready to write to the command characteristic.

    Raises:
        PayloadTooLarge: If the payload does not fit in one frame.
    """
    if not 0 <= command <= 0xFF:
        raise ValueError(f"Command must be 0-255, got {command}")
    if len(payload) > MAX_PAYLOAD:
        raise PayloadTooLarge(len(payload), MAX_PAYLOAD)

    body = bytes([command]) + bytes(payload) + b"\x00" * (MAX_PAYLOAD - len(payload))
    return body + bytes([checksum(body)])


def parse_frame(data: bytes) -> Frame:
    """Parse a 16-byte notification into a Frame.

    Raises:
        UnexpectedLength: If ``data`` is not exactly one frame long.
        ChecksumMismatch: If the trailing byte does not match the content.
    """
    if len(data) != FRAME_SIZE:
        raise UnexpectedLength(FRAME_SIZE, len(data))

    data = bytes(data)
    expected = checksum(data[:-1])
    if data[-1] != expected:
        raise ChecksumMismatch(expected, data[-1])

    return Frame(command=data[0], payload=data[1:-1], checksum=data[-1])
