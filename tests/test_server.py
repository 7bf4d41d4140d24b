"""Tests for the MCP tools, resources and prompt."""

from __future__ import annotations

import asyncio
import json
import sys
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from colmi_ring_mcp.config import RingConfig
from colmi_ring_mcp.protocol.client import Operation
from colmi_ring_mcp.protocol.commands import Command

from fakes import FakeTransport, frame, settle


def _get_server_module():
    """Import server module with FastMCP mocked to avoid init issues."""
    mock_fastmcp_cls = MagicMock()
    mock_fastmcp_instance = MagicMock()
    # Make the @mcp.tool() decorator a no-op that returns the function unchanged
    mock_fastmcp_instance.tool.return_value = lambda fn: fn
    mock_fastmcp_instance.resource.return_value = lambda fn: fn
    mock_fastmcp_instance.prompt.return_value = lambda fn: fn
    mock_fastmcp_cls.return_value = mock_fastmcp_instance

    with patch.dict(sys.modules, {}):
        with patch("mcp.server.fastmcp.FastMCP", mock_fastmcp_cls):
            # Remove cached server module so it re-imports with our mock
            sys.modules.pop("colmi_ring_mcp.server", None)
            import colmi_ring_mcp.server as server_mod

    return server_mod


def ring_responder(data):
    if data[0] == Command.BATTERY:
        return [frame(Command.BATTERY, 85, 1)]
    if data[0] == Command.STEPS:
        return [frame(Command.STEPS, 0x24, 0x10, 0x19, 40, 0, 1, 12, 0, 0x10, 0x27, 0x88, 0x13)]
    return None


def make_context(server, transports=None):
    transports = transports if transports is not None else []

    def factory():
        transport = FakeTransport(ring_responder)
        transports.append(transport)
        return transport

    ring = server.RingContext(RingConfig(), transport_factory=factory)
    return SimpleNamespace(request_context=SimpleNamespace(lifespan_context=ring))


def test_tools_require_connection():
    server = _get_server_module()

    async def scenario():
        ctx = make_context(server)
        result = await server.read_battery(ctx)
        assert result["kind"] == "NotConnected"
        assert "connect" in result["error"]
        status = await server.get_status(ctx)
        assert status == {"connected": False, "state": "disconnected"}

    asyncio.run(scenario())


def test_connect_read_and_disconnect():
    server = _get_server_module()

    async def scenario():
        transports = []
        ctx = make_context(server, transports)

        result = await server.connect(ctx)
        assert result["connected"] is True
        assert result["state"] == "subscribed"
        assert result["device"]["name"] == "R02_A1B2"

        battery = await server.read_battery(ctx)
        assert battery == {"battery_percent": 85, "charging": True}

        steps = await server.read_steps(ctx)
        assert steps["steps"] == 10000
        assert steps["distance"] == 5000

        metrics = await server.get_metrics(ctx)
        assert metrics["battery_percent"]["value"] == 85
        assert metrics["steps"]["value"] == 10000

        result = await server.disconnect(ctx)
        assert result["connected"] is False
        assert result["metrics"]["stale"] is True
        assert result["metrics"]["battery_percent"]["value"] == 85
        assert transports[0].closes == 1

        # The snapshot survives the session
        metrics = await server.get_metrics(ctx)
        assert metrics["battery_percent"]["value"] == 85

        events = await server.recent_events(ctx, limit=1)
        assert events["count"] == 1
        assert events["events"][0] == {"type": "connection", "state": "disconnected"}

    asyncio.run(scenario())


def test_connect_by_name_not_found():
    server = _get_server_module()

    async def scenario():
        ctx = make_context(server)
        ring = ctx.request_context.lifespan_context

        def missing():
            transport = FakeTransport()
            transport.device = None
            return transport

        ring._transport_factory = missing
        result = await server.connect(ctx, name="R09_")
        assert result["kind"] == "DeviceNotFound"
        assert ring.session is None

    asyncio.run(scenario())


def test_argument_validation():
    server = _get_server_module()

    async def scenario():
        ctx = make_context(server)
        assert "error" in await server.read_steps(ctx, day_offset=30)
        assert "error" in await server.accelerometer_burst(ctx, samples=0)

    asyncio.run(scenario())


def test_stream_tools():
    server = _get_server_module()

    async def scenario():
        transports = []
        ctx = make_context(server, transports)
        await server.connect(ctx)

        assert await server.start_heart_rate(ctx) == {"streaming": "heart_rate"}
        transports[0].notify(frame(Command.REAL_TIME_START, 1, 0, 64))
        await settle()
        status = await server.get_status(ctx)
        assert status["streams"] == ["heart_rate"]
        assert await server.stop_heart_rate(ctx) == {"stopped": "heart_rate"}
        assert await server.start_spo2(ctx) == {"streaming": "spo2"}
        assert await server.stop_spo2(ctx) == {"stopped": "spo2"}
        assert await server.reboot(ctx) == {"rebooting": True}

        metrics = await server.get_metrics(ctx)
        assert metrics["heart_rate_bpm"]["value"] == 64
        await server.disconnect(ctx)

    asyncio.run(scenario())


def test_reset_closes_failed_session():
    server = _get_server_module()

    async def scenario():
        ctx = make_context(server)
        ring = ctx.request_context.lifespan_context
        assert (await server.reset(ctx))["connected"] is False

        await server.connect(ctx)
        session = ring.session
        session.connection._set_state(session.connection.state.failed("gone"))
        status = await server.reset(ctx)
        assert status["connected"] is False
        assert ring.session is None

    asyncio.run(scenario())


def test_resources():
    server = _get_server_module()
    ctx = make_context(server)
    server.mcp.get_context.return_value = ctx

    status = json.loads(server.resource_session_status())
    assert status["state"] == "disconnected"

    snapshot = json.loads(server.resource_metrics_snapshot())
    assert snapshot["heart_rate_bpm"] is None
    assert snapshot["stale"] is False

    commands = json.loads(server.resource_protocol_commands())["commands"]
    assert set(commands) == {op.value for op in Operation}
    assert commands["read_battery"]["command_id"] == "0x03"
    assert commands["reboot"]["expects_response"] is False


def test_health_check_prompt_names_tools():
    server = _get_server_module()
    text = server.health_check()
    for tool in ("connect", "read_battery", "start_heart_rate", "get_metrics", "read_steps"):
        assert tool in text


def test_lifespan_closes_session():
    server = _get_server_module()

    async def scenario():
        async with server.lifespan(MagicMock()) as ring:
            transport = FakeTransport(ring_responder)
            ring._transport_factory = lambda: transport
            await ring.open_session()
            assert ring.session is not None
        assert ring.session is None
        assert transport.closes == 1

    asyncio.run(scenario())
