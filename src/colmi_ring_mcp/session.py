"""Ring session: the one object a consumer holds for a connected ring.

Combines the :class:`ConnectionManager`, the :class:`CommandProtocol` and
the frame codec. Owns the metrics snapshot and fans decoded events out to
subscribers in emission order.

Usage::

    async with RingSession.create(RingConfig.from_env()) as session:
        battery = await session.read_battery()
        await session.start_heart_rate_stream()
        async for event in session.events():
            print(event)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable

from .config import RingConfig, SessionConfig
from .errors import CommandTimedOut, ConnectionLost, InvalidRequest, ProtocolError, RingError
from .models.events import ConnectionChanged, DecodedEvent, MetricUpdate, ProtocolErrorEvent
from .models.metrics import Metric, MetricsSnapshot
from .models.state import ConnectionState, StateKind
from .protocol.client import CommandProtocol, Operation
from .protocol.commands import MAX_STEPS_DAY_OFFSET, RealTimeKind
from .protocol.framing import parse_frame
from .protocol.parser import (
    AccelerometerSample,
    BatteryReading,
    RealTimeReading,
    StepsSummary,
)
from .transport.base import DeviceFilter, DeviceInfo, Transport
from .transport.ble_transport import BleakTransport
from .transport.connection import ConnectionManager

logger = logging.getLogger(__name__)

Listener = Callable[[DecodedEvent], None]

_REAL_TIME_METRICS = {
    RealTimeKind.HEART_RATE: Metric.HEART_RATE_BPM,
    RealTimeKind.SPO2: Metric.SPO2_PERCENT,
}

_STREAM_OPERATIONS = {
    RealTimeKind.HEART_RATE: (Operation.START_HEART_RATE, Operation.STOP_HEART_RATE),
    RealTimeKind.SPO2: (Operation.START_SPO2, Operation.STOP_SPO2),
}

_END = object()


class RingSession:
    def __init__(
        self,
        connection: ConnectionManager,
        config: SessionConfig | None = None,
        device_filter: DeviceFilter | None = None,
    ) -> None:
        self._connection = connection
        self._config = config or SessionConfig()
        self._device_filter = device_filter or DeviceFilter()
        self._protocol = CommandProtocol(connection.send, self._config.command_timeout)
        self._snapshot = MetricsSnapshot()
        self._listeners: list[Listener] = []
        self._streams: set[RealTimeKind] = set()
        self._resume_streams = False
        self._pump_task: asyncio.Task | None = None
        self._resume_task: asyncio.Task | None = None
        self._dropped_frames = 0
        self._remove_state_listener = connection.add_state_listener(self._on_state)

    @classmethod
    def create(cls, config: RingConfig | None = None, transport: Transport | None = None) -> RingSession:
        """Build a session over a :class:`BleakTransport` unless one is given."""
        config = config or RingConfig()
        if transport is None:
            transport = BleakTransport(
                adapter=config.connection.adapter,
                write_with_response=config.connection.write_with_response,
            )
        return cls(
            ConnectionManager(transport, config.connection),
            config.session,
            config.device_filter,
        )

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def protocol(self) -> CommandProtocol:
        return self._protocol

    # ─── lifecycle ───────────────────────────────────────────────────

    async def start(self, device_filter: DeviceFilter | None = None) -> ConnectionState:
        """Connect to the ring and start processing notifications."""
        state = await self._connection.connect(device_filter or self._device_filter)
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.get_running_loop().create_task(self._pump())
        return state

    async def close(self) -> None:
        """Disconnect and stop every background task. The session is done after this."""
        await self._connection.disconnect()
        for task in (self._resume_task, self._pump_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._resume_task = None
        self._pump_task = None
        self._remove_state_listener()
        for listener in list(self._listeners):
            if isinstance(listener, _QueueListener):
                listener.close()

    def reset(self) -> None:
        """Clear a FAILED connection so :meth:`start` can be called again."""
        self._connection.reset()

    async def __aenter__(self) -> RingSession:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ─── observation ─────────────────────────────────────────────────

    def current_state(self) -> ConnectionState:
        return self._connection.state

    def current_metrics(self) -> MetricsSnapshot:
        return self._snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Deliver every :data:`DecodedEvent` to ``listener`` in emission order.

        Listeners run synchronously on the event loop; an exception raised by
        one is logged and does not affect the others.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def events(self) -> AsyncIterator[DecodedEvent]:
        """Async iterator over events emitted from now on, until :meth:`close`."""
        listener = _QueueListener()
        unsubscribe = self.subscribe(listener)
        try:
            while True:
                event = await listener.queue.get()
                if event is _END:
                    return
                yield event
        finally:
            unsubscribe()

    def invalidate_metrics(self) -> None:
        """Forget every last-known value."""
        self._snapshot = MetricsSnapshot()

    def status(self) -> dict[str, Any]:
        return {
            **self._connection.state.to_dict(),
            "streams": sorted(kind.name.lower() for kind in self._streams),
            "pending_commands": [f"0x{c:02X}" for c in self._protocol.pending()],
            "dropped_frames": self._dropped_frames,
            "dropped_notifications": self._connection.dropped_notifications,
            "stale": self._snapshot.stale,
        }

    # ─── operations ──────────────────────────────────────────────────

    async def read_battery(self) -> BatteryReading:
        reading = await self._run(Operation.READ_BATTERY)
        self._update(Metric.BATTERY_PERCENT, reading.level)
        return reading

    async def read_steps(self, day_offset: int = 0) -> StepsSummary:
        """Read the sport detail for ``day_offset`` days ago (0 = today)."""
        if not 0 <= day_offset <= MAX_STEPS_DAY_OFFSET:
            e = InvalidRequest(f"Day offset must be 0-{MAX_STEPS_DAY_OFFSET}, got {day_offset}")
            self._report(e)
            raise e
        summary = await self._run(Operation.READ_STEPS, day_offset)
        if day_offset == 0:
            self._update(Metric.STEPS, summary.total_steps)
        return summary

    async def start_heart_rate_stream(self) -> None:
        await self._start_stream(RealTimeKind.HEART_RATE)

    async def stop_heart_rate_stream(self) -> None:
        await self._stop_stream(RealTimeKind.HEART_RATE)

    async def start_spo2_stream(self) -> None:
        await self._start_stream(RealTimeKind.SPO2)

    async def stop_spo2_stream(self) -> None:
        await self._stop_stream(RealTimeKind.SPO2)

    async def request_accelerometer_burst(
        self, samples: int | None = None
    ) -> tuple[AccelerometerSample, ...]:
        """Switch raw mode on, collect ``samples`` readings, switch it off.

        The snapshot only changes once the whole burst has arrived.
        """
        samples = samples or self._config.burst_samples
        try:
            burst = await self._run(Operation.ACCELEROMETER_BURST, samples)
        finally:
            await self._stop_raw_data()
        for sample in burst:
            self._update(Metric.ACCELEROMETER_SAMPLE, sample)
        return burst

    async def reboot(self) -> None:
        await self._run(Operation.REBOOT)

    async def read_device_info(self) -> DeviceInfo:
        try:
            return await self._connection.read_device_info()
        except RingError as e:
            self._report(e)
            raise

    # ─── internals ───────────────────────────────────────────────────

    async def _run(self, operation: Operation, *args: Any) -> Any:
        """Issue ``operation``, retrying timeouts with linear backoff."""
        attempt = 0
        while True:
            try:
                return await self._protocol.request(operation, *args)
            except CommandTimedOut as e:
                if attempt >= self._config.max_retries:
                    logger.warning("%s failed after %d retries", operation.value, attempt)
                    self._report(e)
                    raise
                attempt += 1
                logger.warning(
                    "%s timed out, retry %d/%d", operation.value, attempt, self._config.max_retries
                )
                await asyncio.sleep(self._config.retry_delay * attempt)
            except RingError as e:
                self._report(e)
                raise

    async def _start_stream(self, kind: RealTimeKind) -> None:
        start, _ = _STREAM_OPERATIONS[kind]
        await self._run(start)
        self._streams.add(kind)
        self._connection.set_streaming(True)

    async def _stop_stream(self, kind: RealTimeKind) -> None:
        _, stop = _STREAM_OPERATIONS[kind]
        self._streams.discard(kind)
        self._connection.set_streaming(bool(self._streams))
        await self._run(stop)

    async def _stop_raw_data(self) -> None:
        if not self._connection.state.is_subscribed:
            return
        try:
            await self._protocol.send_command(Operation.STOP_RAW_DATA)
        except RingError as e:
            logger.warning("Could not leave raw data mode: %s", e)

    async def _resume(self) -> None:
        for kind in sorted(self._streams):
            start, _ = _STREAM_OPERATIONS[kind]
            try:
                await self._run(start)
            except RingError as e:
                logger.warning("Could not resume %s stream: %s", kind.name.lower(), e)
        self._connection.set_streaming(bool(self._streams))

    async def _pump(self) -> None:
        async for data in self._connection.notifications():
            self._handle_notification(data)
        logger.debug("Notification stream ended")

    def _handle_notification(self, data: bytes) -> None:
        logger.debug("RX %s", data.hex(" "))
        try:
            reading = self._protocol.handle_frame(parse_frame(data))
        except ProtocolError as e:
            self._dropped_frames += 1
            logger.debug("Dropped frame: %s", e)
            return
        if reading is not None:
            self._apply(reading)

    def _apply(self, reading: Any) -> None:
        """Turn an unsolicited reading into a metric update.

        Accelerometer samples only count inside a completed burst, so stray
        ones are ignored here.
        """
        if isinstance(reading, RealTimeReading):
            metric = _REAL_TIME_METRICS.get(reading.kind)
            if metric is None or reading.value is None:
                return
            self._update(metric, reading.value)
        elif isinstance(reading, BatteryReading):
            self._update(Metric.BATTERY_PERCENT, reading.level)
        else:
            logger.debug("Ignoring unsolicited %s", type(reading).__name__)

    def _update(self, metric: Metric, value: Any) -> None:
        now = datetime.now(timezone.utc)
        self._snapshot = self._snapshot.with_value(metric, value, now)
        self._emit(MetricUpdate(metric, value, now))

    def _report(self, exc: RingError) -> None:
        self._emit(ProtocolErrorEvent.from_exception(exc))

    def _emit(self, event: DecodedEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed")

    def _on_state(self, state: ConnectionState) -> None:
        kind = state.kind
        if kind in (StateKind.DISCONNECTED, StateKind.FAILED, StateKind.RECONNECTING):
            self._protocol.cancel_all(ConnectionLost(f"Connection {state}"))
        if kind in (StateKind.DISCONNECTED, StateKind.FAILED):
            self._snapshot = self._snapshot.mark_stale()
            self._streams.clear()
            self._resume_streams = False
        elif kind is StateKind.RECONNECTING:
            self._resume_streams = bool(self._streams)
        elif kind is StateKind.SUBSCRIBED and self._resume_streams:
            self._resume_streams = False
            self._resume_task = asyncio.get_running_loop().create_task(self._resume())

        self._emit(ConnectionChanged(state))


class _QueueListener:
    """Buffers events for one :meth:`RingSession.events` consumer."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()

    def __call__(self, event: DecodedEvent) -> None:
        self.queue.put_nowait(event)

    def close(self) -> None:
        self.queue.put_nowait(_END)
