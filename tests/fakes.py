"""In-memory ring transport and helpers shared by the async tests."""

from __future__ import annotations

import asyncio
from typing import Callable, Iterable

from colmi_ring_mcp.protocol.framing import build_frame
from colmi_ring_mcp.transport.base import DeviceInfo, Transport


def frame(command: int, *payload: int) -> bytes:
    """A valid 16-byte frame as the ring would send it."""
    return build_frame(command, bytes(payload))


class FakeTransport(Transport):
    """Pretends to be a ring.

    ``responder`` sees every written frame and returns the notifications the
    ring would answer with; they are delivered on the next loop iteration.
    """

    def __init__(self, responder: Callable[[bytes], Iterable[bytes] | None] | None = None):
        self.device: object | None = "ring"
        self.responder = responder
        self.scan_error: Exception | None = None
        self.open_error: Exception | None = None
        self.written: list[bytes] = []
        self.scans = 0
        self.opens = 0
        self.closes = 0
        self.is_open = False
        self._on_disconnect: Callable[[str], None] | None = None
        self._on_notification: Callable[[bytes], None] | None = None

    async def scan(self, device_filter, timeout):
        self.scans += 1
        if self.scan_error is not None:
            raise self.scan_error
        return self.device

    async def open(self, device, on_disconnect, timeout):
        self.opens += 1
        if self.open_error is not None:
            raise self.open_error
        self._on_disconnect = on_disconnect
        self.is_open = True

    async def discover(self):
        pass

    async def subscribe(self, on_notification):
        self._on_notification = on_notification

    async def write(self, data):
        self.written.append(bytes(data))
        if self.responder is None:
            return
        loop = asyncio.get_running_loop()
        for reply in self.responder(bytes(data)) or ():
            loop.call_soon(self.notify, reply)

    async def close(self):
        self.closes += 1
        self.is_open = False

    async def read_device_info(self):
        return DeviceInfo(
            address="AA:BB:CC:DD:EE:FF",
            name="R02_A1B2",
            hardware_revision="R02_V3.0",
            firmware_revision="RY02_3.00.33_250117",
        )

    # Test controls

    def notify(self, data: bytes) -> None:
        assert self._on_notification is not None, "not subscribed"
        self._on_notification(data)

    def drop_link(self, reason: str = "out of range") -> None:
        self.is_open = False
        assert self._on_disconnect is not None, "not open"
        self._on_disconnect(reason)

    def writes_for(self, command: int) -> list[bytes]:
        return [w for w in self.written if w[0] == command]


async def settle(rounds: int = 10) -> None:
    """Let callbacks and the notification pump run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.002)
