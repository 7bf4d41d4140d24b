"""Connection lifecycle for one ring.

State machine::

    DISCONNECTED --connect()--> SCANNING --found--> CONNECTING --link-->
    DISCOVERING --services--> SUBSCRIBED

    (any connected state) --link lost--> RECONNECTING(1)
    RECONNECTING(n) --backoff--> CONNECTING --ok--> ... SUBSCRIBED
                                          --fail--> RECONNECTING(n+1)
    RECONNECTING(max) --fail--> FAILED --reset()--> DISCONNECTED

``disconnect()`` is reachable from every state and always lands in
DISCONNECTED.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable

from ..config import ConnectionConfig
from ..errors import (
    ConnectionTimeout,
    DeviceNotFound,
    NotConnected,
    NotificationSilence,
    TransportError,
)
from ..models.state import (
    CONNECTING,
    DISCONNECTED,
    DISCOVERING,
    SCANNING,
    SUBSCRIBED,
    ConnectionState,
    StateKind,
)
from .base import DeviceFilter, DeviceInfo, Transport

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectionState], None]

_CLOSED = object()


class ConnectionManager:
    """Owns the transport and the single :class:`ConnectionState`.

    Usage::

        manager = ConnectionManager(BleakTransport())
        await manager.connect(DeviceFilter())
        await manager.send(frame)
        async for data in manager.notifications():
            ...
        await manager.disconnect()
    """

    def __init__(self, transport: Transport, config: ConnectionConfig | None = None) -> None:
        self._transport = transport
        self._config = config or ConnectionConfig()
        self._state = DISCONNECTED
        self._listeners: list[StateListener] = []
        self._device: Any = None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self._config.notification_queue_size)
        self._reconnect_task: asyncio.Task | None = None
        self._watchdog_task: asyncio.Task | None = None
        self._streaming = False
        self._connecting = False
        self._last_rx = 0.0
        self._dropped = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def config(self) -> ConnectionConfig:
        return self._config

    @property
    def dropped_notifications(self) -> int:
        """Buffers discarded because the consumer fell behind."""
        return self._dropped

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener`` on every state transition. Returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def set_streaming(self, streaming: bool) -> None:
        """Arm or disarm the notification-silence watchdog."""
        self._streaming = streaming
        if streaming:
            self._last_rx = self._now()

    # ─── public operations ───────────────────────────────────────────

    async def connect(self, device_filter: DeviceFilter | None = None) -> ConnectionState:
        """Scan for a ring, connect, discover and subscribe.

        Raises:
            DeviceNotFound: Nothing matched within the scan timeout.
            PermissionDenied, AdapterUnavailable: The host refused.
            ConnectionTimeout: The ring was found but did not finish connecting.
            TransportError: Calling from FAILED (``reset()`` first) or any
                other link failure.
        """
        if self._state.is_subscribed:
            return self._state
        if self._state.is_terminal:
            raise TransportError(
                f"Connection failed ({self._state.reason}); reset() before reconnecting"
            )
        if self._state.kind is not StateKind.DISCONNECTED:
            raise TransportError(f"Connection already in progress ({self._state})")

        device_filter = device_filter or DeviceFilter()
        self._drain()
        self._connecting = True
        self._set_state(SCANNING)
        try:
            try:
                device = await asyncio.wait_for(
                    self._transport.scan(device_filter, self._config.scan_timeout),
                    self._config.scan_timeout + 1.0,
                )
            except asyncio.TimeoutError:
                device = None
            if device is None:
                raise DeviceNotFound("No ring found; wake it by placing it on the charger")

            self._device = device
            await self._establish()
        except BaseException:
            if self._state.kind is not StateKind.DISCONNECTED:
                await self._transport.close()
                self._set_state(DISCONNECTED)
            raise
        finally:
            self._connecting = False
        return self._state

    async def send(self, data: bytes) -> None:
        """Write one frame. Raises :class:`NotConnected` unless subscribed."""
        if not self._state.is_subscribed:
            raise NotConnected(f"Cannot send while {self._state}")
        await self._transport.write(data)

    async def notifications(self) -> AsyncIterator[bytes]:
        """Yield raw notification buffers in arrival order.

        The stream survives reconnects and ends after ``disconnect()`` or
        when the connection fails for good.
        """
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    async def disconnect(self) -> None:
        """Tear down from any state. Idempotent."""
        await self._cancel_tasks()

        if self._state.kind is StateKind.DISCONNECTED:
            return

        self._streaming = False
        await self._transport.close()
        self._set_state(DISCONNECTED)
        self._close_stream()
        logger.info("Disconnected")

    def reset(self) -> None:
        """Leave the terminal FAILED state."""
        if self._state.is_terminal:
            self._set_state(DISCONNECTED)

    async def read_device_info(self) -> DeviceInfo:
        if not self._state.is_subscribed:
            raise NotConnected(f"Cannot read device info while {self._state}")
        return await self._transport.read_device_info()

    # ─── transport callbacks ─────────────────────────────────────────

    def _on_notification(self, data: bytes) -> None:
        self._last_rx = self._now()
        if self._queue.full():
            self._queue.get_nowait()
            self._dropped += 1
            logger.warning("Notification queue full, dropped oldest buffer")
        self._queue.put_nowait(data)

    def _on_link_lost(self, reason: str) -> None:
        # connect() reports its own failures to the caller
        if self._connecting:
            logger.debug("Link lost during connect (%s)", reason)
            return
        if self._state.kind in (
            StateKind.DISCONNECTED,
            StateKind.RECONNECTING,
            StateKind.FAILED,
            StateKind.SCANNING,
        ):
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        logger.warning("Link lost (%s), reconnecting", reason)
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect(reason)
        )

    # ─── internals ───────────────────────────────────────────────────

    async def _establish(self) -> None:
        self._set_state(CONNECTING)
        try:
            await asyncio.wait_for(
                self._transport.open(
                    self._device, self._on_link_lost, self._config.connect_timeout
                ),
                self._config.connect_timeout,
            )
            self._set_state(DISCOVERING)
            await asyncio.wait_for(self._transport.discover(), self._config.connect_timeout)
        except asyncio.TimeoutError as e:
            raise ConnectionTimeout(f"Ring did not connect within {self._config.connect_timeout:g}s") from e
        await self._transport.subscribe(self._on_notification)

        self._last_rx = self._now()
        self._set_state(SUBSCRIBED)
        if self._watchdog_task is None or self._watchdog_task.done():
            self._watchdog_task = asyncio.get_running_loop().create_task(self._watchdog())

    async def _reconnect(self, reason: str) -> None:
        last_error = reason
        for attempt in range(1, self._config.max_reconnect_attempts + 1):
            self._set_state(ConnectionState.reconnecting(attempt))
            await self._transport.close()
            delay = self._config.backoff_delay(attempt)
            logger.info("Reconnect attempt %d in %.1fs", attempt, delay)
            await asyncio.sleep(delay)
            try:
                await self._establish()
            except TransportError as e:
                last_error = str(e)
                logger.warning("Reconnect attempt %d failed: %s", attempt, e)
                continue
            logger.info("Reconnected after %d attempt(s)", attempt)
            self._reconnect_task = None
            return

        await self._transport.close()
        self._streaming = False
        self._reconnect_task = None
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            self._watchdog_task = None
        self._set_state(ConnectionState.failed(last_error))
        self._close_stream()
        logger.error(
            "Giving up after %d reconnect attempts: %s",
            self._config.max_reconnect_attempts,
            last_error,
        )

    async def _watchdog(self) -> None:
        timeout = self._config.silence_timeout
        while True:
            await asyncio.sleep(timeout / 4)
            if not (self._streaming and self._state.is_subscribed):
                continue
            silent_for = self._now() - self._last_rx
            if silent_for > timeout:
                logger.warning("%s", NotificationSilence(silent_for))
                self._watchdog_task = None
                self._on_link_lost("notification silence")
                return

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        # A reconnect cancelled mid-way may already have started a new watchdog
        while True:
            tasks = [
                t
                for t in (self._reconnect_task, self._watchdog_task)
                if t is not None and t is not current and not t.done()
            ]
            self._reconnect_task = None
            self._watchdog_task = None
            if not tasks:
                return
            for task in tasks:
                task.cancel()
            for task in tasks:
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        logger.debug("State %s -> %s", self._state, state)
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")

    def _close_stream(self) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def _drain(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()

    @staticmethod
    def _now() -> float:
        return asyncio.get_running_loop().time()
