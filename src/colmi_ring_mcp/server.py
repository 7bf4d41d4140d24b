"""MCP server entry point for Colmi smart rings.

Exposes tools, resources, and prompts via the Model Context Protocol
using the official Python MCP SDK with stdio transport. The ring session
lives in the server's lifespan context: it is created by ``connect`` and
destroyed by ``disconnect``.
"""

import json
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

from mcp.server.fastmcp import Context, FastMCP

from .config import RingConfig
from .errors import NotConnected, RingError
from .models.events import DecodedEvent
from .models.metrics import MetricsSnapshot
from .models.state import DISCONNECTED
from .protocol.client import COMMAND_TABLE
from .protocol.commands import MAX_STEPS_DAY_OFFSET
from .session import RingSession
from .transport.base import DeviceFilter, Transport

logger = logging.getLogger(__name__)

EVENT_HISTORY = 200


class RingContext:
    """Server-lifetime holder for the (at most one) active ring session."""

    def __init__(
        self,
        config: RingConfig | None = None,
        transport_factory: Callable[[], Transport] | None = None,
        history: int = EVENT_HISTORY,
    ) -> None:
        self.config = config or RingConfig()
        self.session: RingSession | None = None
        self.last_snapshot = MetricsSnapshot()
        self.events: deque[dict[str, Any]] = deque(maxlen=history)
        self._transport_factory = transport_factory

    async def open_session(self, device_filter: DeviceFilter | None = None) -> RingSession:
        if self.session is not None:
            if self.session.current_state().is_subscribed:
                return self.session
            await self.close_session()

        transport = self._transport_factory() if self._transport_factory else None
        session = RingSession.create(self.config, transport)
        session.subscribe(self._record)
        try:
            await session.start(device_filter)
        except BaseException:
            await session.close()
            raise
        self.session = session
        return session

    async def close_session(self) -> None:
        session, self.session = self.session, None
        if session is None:
            return
        await session.close()
        self.last_snapshot = session.current_metrics()

    def require_session(self) -> RingSession:
        if self.session is None:
            raise NotConnected("Not connected to a ring. Use the 'connect' tool first.")
        return self.session

    def snapshot(self) -> MetricsSnapshot:
        if self.session is not None:
            return self.session.current_metrics()
        return self.last_snapshot

    def status(self) -> dict[str, Any]:
        if self.session is None:
            return {"connected": False, **DISCONNECTED.to_dict()}
        return {
            "connected": self.session.current_state().is_subscribed,
            **self.session.status(),
        }

    def _record(self, event: DecodedEvent) -> None:
        self.events.append(event.to_dict())


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[RingContext]:
    context = RingContext(RingConfig.from_env())
    try:
        yield context
    finally:
        await context.close_session()


mcp = FastMCP(
    "colmi-ring",
    instructions="MCP server for Colmi R02-family smart rings over Bluetooth LE",
    lifespan=lifespan,
)


def _ring(ctx: Context) -> RingContext:
    return ctx.request_context.lifespan_context


def _error(exc: RingError) -> dict[str, Any]:
    return {"error": str(exc), "kind": type(exc).__name__}


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
async def connect(
    ctx: Context, address: str | None = None, name: str | None = None
) -> dict[str, Any]:
    """Scan for a Colmi ring over Bluetooth LE and connect to it.

    Args:
        address: Exact Bluetooth address (or CoreBluetooth UUID on macOS).
        name: Advertised name or name prefix, e.g. "R02_".

    Without arguments, the first ring advertising an R02/R06/R09/R10 name
    or the ring service is used. A sleeping ring wakes when placed on
    its charger.
    """
    ring = _ring(ctx)
    device_filter = None
    if address or name:
        device_filter = DeviceFilter(
            address=address,
            names=(name,) if name else (),
            name_prefixes=(name,) if name else (),
            service_uuid=None,
        )
    try:
        session = await ring.open_session(device_filter)
    except RingError as e:
        return _error(e)

    result = ring.status()
    try:
        result["device"] = (await session.read_device_info()).to_dict()
    except RingError as e:
        logger.debug("Device information unavailable: %s", e)
    return result


@mcp.tool()
async def disconnect(ctx: Context) -> dict[str, Any]:
    """Disconnect from the ring. Last known metrics stay readable, marked stale."""
    ring = _ring(ctx)
    await ring.close_session()
    return {"connected": False, "metrics": ring.snapshot().to_dict()}


@mcp.tool()
async def reset(ctx: Context) -> dict[str, Any]:
    """Clear a failed connection so 'connect' can be used again."""
    ring = _ring(ctx)
    if ring.session is not None and ring.session.current_state().is_terminal:
        await ring.close_session()
    return ring.status()


@mcp.tool()
async def get_status(ctx: Context) -> dict[str, Any]:
    """Connection state, active streams and pending commands."""
    return _ring(ctx).status()


@mcp.tool()
async def get_device_info(ctx: Context) -> dict[str, Any]:
    """Read hardware and firmware revision from the Device Information service."""
    try:
        info = await _ring(ctx).require_session().read_device_info()
    except RingError as e:
        return _error(e)
    return info.to_dict()


# ─── METRIC TOOLS ─────────────────────────────────────────────────────

@mcp.tool()
async def get_metrics(ctx: Context) -> dict[str, Any]:
    """Latest known value of every metric with its observation time."""
    return _ring(ctx).snapshot().to_dict()


@mcp.tool()
async def read_battery(ctx: Context) -> dict[str, Any]:
    """Read the battery level (percent) and charging flag."""
    try:
        reading = await _ring(ctx).require_session().read_battery()
    except RingError as e:
        return _error(e)
    return {"battery_percent": reading.level, "charging": reading.charging}


@mcp.tool()
async def read_steps(ctx: Context, day_offset: int = 0) -> dict[str, Any]:
    """Read step, calorie and distance totals for one day in 15-minute buckets.

    Args:
        day_offset: Days back from today (0 = today, up to 29).
    """
    if not 0 <= day_offset <= MAX_STEPS_DAY_OFFSET:
        return {"error": f"Day offset must be 0-{MAX_STEPS_DAY_OFFSET}"}
    try:
        summary = await _ring(ctx).require_session().read_steps(day_offset)
    except RingError as e:
        return _error(e)
    return {"day_offset": day_offset, **summary.to_dict()}


@mcp.tool()
async def start_heart_rate(ctx: Context) -> dict[str, Any]:
    """Start real-time heart-rate measurement. Readings land in get_metrics.

    The first readings take a few seconds while the sensor settles.
    """
    try:
        await _ring(ctx).require_session().start_heart_rate_stream()
    except RingError as e:
        return _error(e)
    return {"streaming": "heart_rate"}


@mcp.tool()
async def stop_heart_rate(ctx: Context) -> dict[str, Any]:
    """Stop real-time heart-rate measurement."""
    try:
        await _ring(ctx).require_session().stop_heart_rate_stream()
    except RingError as e:
        return _error(e)
    return {"stopped": "heart_rate"}


@mcp.tool()
async def start_spo2(ctx: Context) -> dict[str, Any]:
    """Start real-time blood-oxygen measurement. Readings land in get_metrics."""
    try:
        await _ring(ctx).require_session().start_spo2_stream()
    except RingError as e:
        return _error(e)
    return {"streaming": "spo2"}


@mcp.tool()
async def stop_spo2(ctx: Context) -> dict[str, Any]:
    """Stop real-time blood-oxygen measurement."""
    try:
        await _ring(ctx).require_session().stop_spo2_stream()
    except RingError as e:
        return _error(e)
    return {"stopped": "spo2"}


@mcp.tool()
async def accelerometer_burst(ctx: Context, samples: int = 8) -> dict[str, Any]:
    """Capture a burst of raw accelerometer samples.

    Args:
        samples: Number of samples to collect (1-64).
    """
    if not 1 <= samples <= 64:
        return {"error": "Samples must be 1-64"}
    try:
        burst = await _ring(ctx).require_session().request_accelerometer_burst(samples)
    except RingError as e:
        return _error(e)
    return {"count": len(burst), "samples": [s.to_dict() for s in burst]}


@mcp.tool()
async def reboot(ctx: Context) -> dict[str, Any]:
    """Reboot the ring. The link drops and the session reconnects on its own."""
    try:
        await _ring(ctx).require_session().reboot()
    except RingError as e:
        return _error(e)
    return {"rebooting": True}


@mcp.tool()
async def recent_events(ctx: Context, limit: int = 20) -> dict[str, Any]:
    """Most recent session events (metric updates, connection changes, errors).

    Args:
        limit: Maximum number of events, newest last.
    """
    events = list(_ring(ctx).events)
    if limit > 0:
        events = events[-limit:]
    return {"events": events, "count": len(events)}


# ─── MCP RESOURCES ────────────────────────────────────────────────────

@mcp.resource("colmi://session/status")
def resource_session_status() -> str:
    """Connection state of the ring session."""
    return json.dumps(_ring(mcp.get_context()).status())


@mcp.resource("colmi://metrics/snapshot")
def resource_metrics_snapshot() -> str:
    """Latest metrics snapshot."""
    return json.dumps(_ring(mcp.get_context()).snapshot().to_dict())


@mcp.resource("colmi://protocol/commands")
def resource_protocol_commands() -> str:
    """Operations the ring understands and the command ids they use."""
    commands = {
        op.value: {
            "command_id": f"0x{spec.command.value:02X}",
            "command": spec.command.name,
            "expects_response": spec.expects_response,
        }
        for op, spec in COMMAND_TABLE.items()
    }
    return json.dumps({"commands": commands})


# ─── MCP PROMPTS ─────────────────────────────────────────────────────

@mcp.prompt()
def health_check() -> str:
    """Walk through a quick spot check of the wearer's vitals."""
    return """Run a quick health spot check with the ring.

1. Use connect (wake the ring on its charger if it is not found).
2. Use read_battery and warn if the level is below 20%.
3. Use start_heart_rate, wait about 15 seconds, read get_metrics, then stop_heart_rate.
4. Do the same with start_spo2 / stop_spo2.
5. Use read_steps for today's activity.
6. Summarize heart rate, blood oxygen, steps and battery.

Readings marked stale come from a previous connection; say so.
Use recent_events if something fails."""


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    config = RingConfig.from_env()
    logging.basicConfig(level=getattr(logging, config.log_level, logging.INFO))
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
