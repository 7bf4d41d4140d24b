"""Transport boundary: the BLE central capabilities the ring client needs."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Callable

# Nordic-UART-style service used by Colmi rings
SERVICE_UUID = "6e40fff0-b5a3-f393-e0a9-e50e24dcca9e"
WRITE_CHAR_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"
NOTIFY_CHAR_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"

# Standard Device Information service
DEVICE_INFO_SERVICE_UUID = "0000180a-0000-1000-8000-00805f9b34fb"
HARDWARE_REVISION_UUID = "00002a27-0000-1000-8000-00805f9b34fb"
FIRMWARE_REVISION_UUID = "00002a26-0000-1000-8000-00805f9b34fb"

DEFAULT_NAME_PREFIXES = ("R02_", "R06_", "R09_", "R10_")
DEFAULT_NAMES = ("Colmi R02", "Colmi R09", "R02", "R09")


@dataclass(frozen=True)
class DeviceFilter:
    """Selects which advertising device is the ring.

    An explicit ``address`` wins; otherwise a device matches on an exact
    name, a name prefix, or an advertised service UUID.
    """

    address: str | None = None
    names: tuple[str, ...] = DEFAULT_NAMES
    name_prefixes: tuple[str, ...] = DEFAULT_NAME_PREFIXES
    service_uuid: str | None = SERVICE_UUID

    def matches(
        self,
        address: str,
        name: str | None,
        service_uuids: list[str] | None = None,
    ) -> bool:
        if self.address is not None:
            return address.upper() == self.address.upper()
        if name and (name in self.names or name.startswith(self.name_prefixes)):
            return True
        if self.service_uuid and service_uuids:
            return self.service_uuid.lower() in (s.lower() for s in service_uuids)
        return False


@dataclass
class DeviceInfo:
    """Identification of a connected ring."""

    address: str = ""
    name: str = ""
    hardware_revision: str = ""
    firmware_revision: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "name": self.name,
            "hardware_revision": self.hardware_revision,
            "firmware_revision": self.firmware_revision,
        }


class Transport(abc.ABC):
    """BLE central-role operations used by :class:`ConnectionManager`.

    Implementations raise :class:`~colmi_ring_mcp.errors.TransportError`
    subclasses. ``on_disconnect`` passed to :meth:`open` must be called when
    the link drops for any reason other than :meth:`close`.
    """

    @abc.abstractmethod
    async def scan(self, device_filter: DeviceFilter, timeout: float) -> Any:
        """Return the first matching device handle, or None."""

    @abc.abstractmethod
    async def open(
        self, device: Any, on_disconnect: Callable[[str], None], timeout: float
    ) -> None:
        """Establish the link to ``device``."""

    @abc.abstractmethod
    async def discover(self) -> None:
        """Resolve the ring's service and characteristics."""

    @abc.abstractmethod
    async def subscribe(self, on_notification: Callable[[bytes], None]) -> None:
        """Enable notifications on the telemetry characteristic."""

    @abc.abstractmethod
    async def write(self, data: bytes) -> None:
        """Write one frame to the command characteristic."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Tear the link down. Must be safe to call when not open."""

    async def read_device_info(self) -> DeviceInfo:
        return DeviceInfo()
