"""BLE transport to the ring, built on bleak.

The ring exposes a Nordic-UART-like service: frames are written to one
characteristic (RX on the ring) and arrive as notifications on another
(TX on the ring). The standard Device Information service provides hardware
and firmware revision strings.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.exc import BleakDeviceNotFoundError, BleakError

from ..errors import (
    AdapterUnavailable,
    ConnectionTimeout,
    DeviceNotFound,
    LinkLost,
    NotConnected,
    PermissionDenied,
    ServiceUnavailable,
    TransportError,
)
from .base import (
    DEVICE_INFO_SERVICE_UUID,
    FIRMWARE_REVISION_UUID,
    HARDWARE_REVISION_UUID,
    NOTIFY_CHAR_UUID,
    SERVICE_UUID,
    WRITE_CHAR_UUID,
    DeviceFilter,
    DeviceInfo,
    Transport,
)

logger = logging.getLogger(__name__)

_ADAPTER_HINTS = ("adapter", "powered", "not available", "bluetooth is turned off", "no bluetooth")
_PERMISSION_HINTS = ("permission", "not authorized", "notpermitted", "access denied")


def classify_error(exc: BaseException, context: str) -> TransportError:
    """Map a bleak / OS exception onto the package's transport errors."""
    if isinstance(exc, TransportError):
        return exc
    if isinstance(exc, BleakDeviceNotFoundError):
        return DeviceNotFound(f"{context}: {exc}")
    if isinstance(exc, PermissionError):
        return PermissionDenied(f"{context}: {exc}")
    if isinstance(exc, asyncio.TimeoutError):
        return ConnectionTimeout(f"{context}: timed out")

    text = str(exc).lower()
    if any(hint in text for hint in _PERMISSION_HINTS):
        return PermissionDenied(f"{context}: {exc}")
    if any(hint in text for hint in _ADAPTER_HINTS):
        return AdapterUnavailable(f"{context}: {exc}")
    return LinkLost(f"{context}: {exc}")


class BleakTransport(Transport):
    """Talks to one ring through a :class:`bleak.BleakClient`.

    Usage::

        transport = BleakTransport(adapter="hci0")
        device = await transport.scan(DeviceFilter(), timeout=15)
        await transport.open(device, on_disconnect=print, timeout=20)
        await transport.discover()
        await transport.subscribe(handle_bytes)
        await transport.write(frame)
        await transport.close()
    """

    def __init__(self, adapter: str | None = None, write_with_response: bool = False) -> None:
        self._adapter = adapter
        self._write_with_response = write_with_response
        self._client: BleakClient | None = None
        self._write_char: BleakGATTCharacteristic | None = None
        self._notify_char: BleakGATTCharacteristic | None = None
        self._closing = False

    def _kwargs(self) -> dict[str, Any]:
        return {"adapter": self._adapter} if self._adapter else {}

    async def scan(self, device_filter: DeviceFilter, timeout: float) -> BLEDevice | None:
        logger.info("Scanning for ring (timeout %.0fs)...", timeout)

        def _match(device: BLEDevice, adv) -> bool:
            name = adv.local_name or device.name
            return device_filter.matches(device.address, name, adv.service_uuids)

        try:
            device = await BleakScanner.find_device_by_filter(
                _match, timeout=timeout, **self._kwargs()
            )
        except (BleakError, OSError) as e:
            raise classify_error(e, "Scan failed") from e

        if device is not None:
            logger.info("Found ring: %s (%s)", device.name, device.address)
        return device

    async def open(
        self, device: Any, on_disconnect: Callable[[str], None], timeout: float
    ) -> None:
        def _disconnected(client: BleakClient) -> None:
            if self._closing:
                return
            logger.warning("Link to %s dropped", client.address)
            on_disconnect("link dropped by device")

        self._closing = False
        client = BleakClient(
            device,
            disconnected_callback=_disconnected,
            timeout=timeout,
            **self._kwargs(),
        )
        try:
            await client.connect()
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            raise classify_error(e, "Connect failed") from e
        self._client = client
        logger.info("Connected to %s", client.address)

    async def discover(self) -> None:
        client = self._require_client()
        service = client.services.get_service(SERVICE_UUID)
        if service is None:
            raise ServiceUnavailable(f"Ring UART service {SERVICE_UUID} not found")

        write_char = service.get_characteristic(WRITE_CHAR_UUID)
        notify_char = service.get_characteristic(NOTIFY_CHAR_UUID)
        if write_char is None or notify_char is None:
            raise ServiceUnavailable("Ring UART characteristics not found")

        self._write_char = write_char
        self._notify_char = notify_char

    async def subscribe(self, on_notification: Callable[[bytes], None]) -> None:
        client = self._require_client()
        if self._notify_char is None:
            raise ServiceUnavailable("discover() must run before subscribe()")

        def _handler(_: BleakGATTCharacteristic, data: bytearray) -> None:
            on_notification(bytes(data))

        try:
            await client.start_notify(self._notify_char, _handler)
        except (BleakError, OSError) as e:
            raise classify_error(e, "Enabling notifications failed") from e

    async def write(self, data: bytes) -> None:
        client = self._require_client()
        if self._write_char is None:
            raise NotConnected("Command characteristic not resolved")
        try:
            await client.write_gatt_char(
                self._write_char, data, response=self._write_with_response
            )
        except (BleakError, OSError) as e:
            raise classify_error(e, "Write failed") from e

    async def read_device_info(self) -> DeviceInfo:
        client = self._require_client()
        info = DeviceInfo(address=client.address, name=getattr(client, "name", "") or "")

        service = client.services.get_service(DEVICE_INFO_SERVICE_UUID)
        if service is None:
            return info

        for uuid, attr in (
            (HARDWARE_REVISION_UUID, "hardware_revision"),
            (FIRMWARE_REVISION_UUID, "firmware_revision"),
        ):
            char = service.get_characteristic(uuid)
            if char is None:
                continue
            try:
                raw = await client.read_gatt_char(char)
            except (BleakError, OSError) as e:
                logger.debug("Reading %s failed: %s", uuid, e)
                continue
            setattr(info, attr, bytes(raw).split(b"\x00")[0].decode("ascii", errors="replace"))
        return info

    async def close(self) -> None:
        client = self._client
        self._client = None
        self._write_char = None
        self._notify_char = None
        if client is None:
            return

        self._closing = True
        try:
            if client.is_connected:
                await client.disconnect()
        except (BleakError, OSError) as e:
            logger.warning("Error closing BLE link: %s", e)

    def _require_client(self) -> BleakClient:
        if self._client is None:
            raise NotConnected("Not connected to ring")
        return self._client
