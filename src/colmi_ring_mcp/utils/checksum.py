"""Frame checksum: unsigned modular sum of the covered bytes."""

from __future__ import annotations


def checksum(data: bytes) -> int:
    """Return ``sum(data) mod 256``.

    The ring appends this byte to every frame, covering all bytes that
    precede it.
    """
    return sum(data) & 0xFF
