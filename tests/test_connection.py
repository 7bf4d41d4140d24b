"""Tests for the connection state machine."""

import asyncio

import pytest

from colmi_ring_mcp.config import ConnectionConfig
from colmi_ring_mcp.errors import (
    ConnectionTimeout,
    DeviceNotFound,
    LinkLost,
    NotConnected,
    PermissionDenied,
    TransportError,
)
from colmi_ring_mcp.models.state import ConnectionState, StateKind
from colmi_ring_mcp.transport.connection import ConnectionManager

from fakes import FakeTransport, frame, settle, wait_until


def fast_config(**overrides):
    values = dict(
        scan_timeout=0.5,
        connect_timeout=0.5,
        max_reconnect_attempts=3,
        backoff_base=0.001,
        backoff_max=0.004,
        silence_timeout=0.04,
    )
    values.update(overrides)
    return ConnectionConfig(**values)


def record_states(manager):
    states = []
    manager.add_state_listener(states.append)
    return states


def test_backoff_doubles_then_caps():
    config = ConnectionConfig(backoff_base=1.0, backoff_max=30.0)
    delays = [config.backoff_delay(n) for n in range(1, 8)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
    with pytest.raises(ValueError):
        config.backoff_delay(0)


def test_connect_walks_through_states():
    async def scenario():
        transport = FakeTransport()
        manager = ConnectionManager(transport, fast_config())
        states = record_states(manager)

        state = await manager.connect()
        assert state.is_subscribed
        assert [s.kind for s in states] == [
            StateKind.SCANNING,
            StateKind.CONNECTING,
            StateKind.DISCOVERING,
            StateKind.SUBSCRIBED,
        ]
        # Already connected: nothing happens
        await manager.connect()
        assert transport.scans == 1
        await manager.disconnect()

    asyncio.run(scenario())


def test_connect_device_not_found_returns_to_disconnected():
    async def scenario():
        transport = FakeTransport()
        transport.device = None
        manager = ConnectionManager(transport, fast_config())
        with pytest.raises(DeviceNotFound):
            await manager.connect()
        assert manager.state.kind is StateKind.DISCONNECTED

    asyncio.run(scenario())


def test_connect_permission_denied():
    async def scenario():
        transport = FakeTransport()
        transport.scan_error = PermissionDenied("Bluetooth access not authorized")
        manager = ConnectionManager(transport, fast_config())
        with pytest.raises(PermissionDenied):
            await manager.connect()
        assert manager.state.kind is StateKind.DISCONNECTED

    asyncio.run(scenario())


def test_connect_timeout():
    async def scenario():
        transport = FakeTransport()

        async def hang(device, on_disconnect, timeout):
            await asyncio.sleep(10)

        transport.open = hang
        manager = ConnectionManager(transport, fast_config(connect_timeout=0.02))
        with pytest.raises(ConnectionTimeout):
            await manager.connect()
        assert manager.state.kind is StateKind.DISCONNECTED
        assert transport.closes == 1

    asyncio.run(scenario())


def test_link_lost_during_first_connect_does_not_reconnect():
    """A failed connect() stays failed; nothing comes back up behind the caller."""

    async def scenario():
        transport = FakeTransport()

        async def drop_while_discovering():
            transport.drop_link("disconnected during discovery")
            raise LinkLost("disconnected during discovery")

        transport.discover = drop_while_discovering
        manager = ConnectionManager(transport, fast_config())
        states = record_states(manager)

        with pytest.raises(LinkLost):
            await manager.connect()
        await asyncio.sleep(0.05)

        assert manager.state.kind is StateKind.DISCONNECTED
        assert transport.opens == 1
        assert StateKind.RECONNECTING not in [s.kind for s in states]

    asyncio.run(scenario())


def test_send_requires_subscribed():
    async def scenario():
        transport = FakeTransport()
        manager = ConnectionManager(transport, fast_config())
        with pytest.raises(NotConnected):
            await manager.send(frame(0x03))
        await manager.connect()
        await manager.send(frame(0x03))
        assert transport.written == [frame(0x03)]
        await manager.disconnect()
        with pytest.raises(NotConnected):
            await manager.send(frame(0x03))

    asyncio.run(scenario())


def test_notifications_in_order_and_end_on_disconnect():
    async def scenario():
        transport = FakeTransport()
        manager = ConnectionManager(transport, fast_config())
        await manager.connect()
        for value in (1, 2, 3):
            transport.notify(frame(0x01, value))
        await manager.disconnect()

        received = [data async for data in manager.notifications()]
        assert [data[1] for data in received] == [1, 2, 3]

    asyncio.run(scenario())


def test_full_queue_drops_oldest():
    async def scenario():
        transport = FakeTransport()
        manager = ConnectionManager(transport, fast_config(notification_queue_size=2))
        await manager.connect()
        for value in (1, 2, 3):
            transport.notify(frame(0x01, value))
        assert manager.dropped_notifications == 1

        stream = manager.notifications()
        assert (await stream.__anext__())[1] == 2
        assert (await stream.__anext__())[1] == 3
        await manager.disconnect()

    asyncio.run(scenario())


def test_disconnect_is_idempotent():
    async def scenario():
        transport = FakeTransport()
        manager = ConnectionManager(transport, fast_config())
        await manager.disconnect()
        await manager.connect()
        await manager.disconnect()
        await manager.disconnect()
        assert manager.state.kind is StateKind.DISCONNECTED
        assert transport.closes == 1

    asyncio.run(scenario())


def test_link_loss_reconnects():
    async def scenario():
        transport = FakeTransport()
        manager = ConnectionManager(transport, fast_config())
        states = record_states(manager)
        await manager.connect()
        states.clear()

        transport.drop_link()
        await wait_until(lambda: transport.opens == 2 and manager.state.is_subscribed)
        assert states[0] == ConnectionState.reconnecting(1)
        assert states[-1].is_subscribed
        assert transport.opens == 2

        # The stream survives the reconnect
        transport.notify(frame(0x01, 60))
        stream = manager.notifications()
        assert (await stream.__anext__())[1] == 60
        await manager.disconnect()

    asyncio.run(scenario())


def test_reconnect_attempts_exhausted_reach_failed():
    async def scenario():
        config = fast_config(max_reconnect_attempts=4)
        delays = []

        def backoff(attempt):
            delays.append(ConnectionConfig.backoff_delay(config, attempt))
            return 0.0

        config.backoff_delay = backoff
        transport = FakeTransport()
        manager = ConnectionManager(transport, config)
        states = record_states(manager)
        await manager.connect()
        states.clear()

        transport.open_error = LinkLost("ring out of range")
        transport.drop_link()
        await wait_until(lambda: manager.state.is_terminal)

        attempts = [s.attempt for s in states if s.kind is StateKind.RECONNECTING]
        assert attempts == [1, 2, 3, 4]
        assert states[-1].kind is StateKind.FAILED
        assert "out of range" in states[-1].reason
        assert [s.kind for s in states].count(StateKind.FAILED) == 1
        assert delays == [0.001, 0.002, 0.004, 0.004]

        # The stream ends with the connection
        assert [data async for data in manager.notifications()] == []

        with pytest.raises(TransportError):
            await manager.connect()
        manager.reset()
        assert manager.state.kind is StateKind.DISCONNECTED
        transport.open_error = None
        await manager.connect()
        assert manager.state.is_subscribed
        await manager.disconnect()

    asyncio.run(scenario())


def test_disconnect_during_reconnect_cancels_backoff():
    async def scenario():
        transport = FakeTransport()
        manager = ConnectionManager(transport, fast_config(backoff_base=10.0, backoff_max=10.0))
        await manager.connect()
        transport.drop_link()
        await settle()
        assert manager.state.kind is StateKind.RECONNECTING

        await manager.disconnect()
        assert manager.state.kind is StateKind.DISCONNECTED
        await asyncio.sleep(0.01)
        assert transport.opens == 1
        assert manager.state.kind is StateKind.DISCONNECTED

    asyncio.run(scenario())


def test_silence_watchdog_triggers_reconnect():
    async def scenario():
        transport = FakeTransport()
        manager = ConnectionManager(transport, fast_config())
        states = record_states(manager)
        await manager.connect()
        manager.set_streaming(True)

        await wait_until(lambda: StateKind.RECONNECTING in [s.kind for s in states])
        await manager.disconnect()

    asyncio.run(scenario())


def test_watchdog_idle_when_not_streaming():
    async def scenario():
        transport = FakeTransport()
        manager = ConnectionManager(transport, fast_config())
        await manager.connect()
        await asyncio.sleep(0.12)
        assert manager.state.is_subscribed
        await manager.disconnect()

    asyncio.run(scenario())


def test_read_device_info_requires_connection():
    async def scenario():
        transport = FakeTransport()
        manager = ConnectionManager(transport, fast_config())
        with pytest.raises(NotConnected):
            await manager.read_device_info()
        await manager.connect()
        info = await manager.read_device_info()
        assert info.hardware_revision == "R02_V3.0"
        await manager.disconnect()

    asyncio.run(scenario())


def test_listener_removal_and_failure_isolation():
    async def scenario():
        manager = ConnectionManager(FakeTransport(), fast_config())
        seen = []

        def broken(state):
            raise RuntimeError("listener bug")

        manager.add_state_listener(broken)
        remove = manager.add_state_listener(seen.append)
        await manager.connect()
        assert seen[-1].is_subscribed
        remove()
        await manager.disconnect()
        assert not any(s.kind is StateKind.DISCONNECTED for s in seen)

    asyncio.run(scenario())
