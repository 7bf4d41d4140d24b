"""Command protocol: operation table, request correlation and timeouts.

The ring answers on the same characteristic it uses for unsolicited
telemetry, and a response carries nothing but the command id it answers.
Correlation therefore relies on two rules:

- at most one request per command id is outstanding;
- only one command is written at a time (a single slot).

A frame whose id matches the outstanding request is fed to that request's
collector; any other frame is returned to the caller as telemetry.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable

from ..errors import (
    CommandRejected,
    CommandTimedOut,
    RequestAlreadyInFlight,
    RingError,
)
from .commands import (
    Command,
    RealTimeKind,
    build_battery_request,
    build_raw_data_disable,
    build_raw_data_enable,
    build_real_time_start,
    build_real_time_stop,
    build_reboot,
    build_steps_request,
)
from .framing import ERROR_FLAG, Frame
from .parser import (
    AccelerometerSample,
    StepsHeader,
    StepsInterval,
    StepsNoData,
    StepsSummary,
    parse_response,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 3.0
DEFAULT_BURST_SAMPLES = 8


# ─── RESPONSE COLLECTORS ─────────────────────────────────────────────


class SingleResponse:
    """Completes on the first parsed frame."""

    def __init__(self) -> None:
        self._reading: Any = None

    def feed(self, reading: Any) -> bool:
        self._reading = reading
        return True

    def result(self) -> Any:
        return self._reading


class StepsResponse:
    """Assembles a sport-detail sequence into a :class:`StepsSummary`.

    Firmware that flags the new calorie protocol in the header reports
    calories in tens.
    """

    def __init__(self) -> None:
        self._intervals: list[StepsInterval] = []
        self._calorie_scale = 1

    def feed(self, reading: Any) -> bool:
        if isinstance(reading, StepsNoData):
            return True
        if isinstance(reading, StepsHeader):
            self._calorie_scale = 10 if reading.new_calorie_protocol else 1
            return False
        if isinstance(reading, StepsInterval):
            if self._calorie_scale != 1:
                reading = replace(reading, calories=reading.calories * self._calorie_scale)
            self._intervals.append(reading)
            return reading.index >= reading.total - 1
        return False

    def result(self) -> StepsSummary:
        return StepsSummary(intervals=tuple(self._intervals))


class SampleBurst:
    """Collects exactly ``count`` accelerometer samples.

    Nothing is handed out until the set is complete, so a burst cut short
    by a timeout yields no samples at all.
    """

    def __init__(self, count: int = DEFAULT_BURST_SAMPLES) -> None:
        if count < 1:
            raise ValueError(f"Burst size must be at least 1, got {count}")
        self._count = count
        self._samples: list[AccelerometerSample] = []

    def feed(self, reading: Any) -> bool:
        if isinstance(reading, AccelerometerSample):
            self._samples.append(reading)
        return len(self._samples) >= self._count

    def result(self) -> tuple[AccelerometerSample, ...]:
        return tuple(self._samples)


# ─── OPERATION TABLE ─────────────────────────────────────────────────


class Operation(Enum):
    READ_BATTERY = "read_battery"
    START_HEART_RATE = "start_heart_rate"
    STOP_HEART_RATE = "stop_heart_rate"
    START_SPO2 = "start_spo2"
    STOP_SPO2 = "stop_spo2"
    READ_STEPS = "read_steps"
    ACCELEROMETER_BURST = "accelerometer_burst"
    STOP_RAW_DATA = "stop_raw_data"
    REBOOT = "reboot"


@dataclass(frozen=True)
class CommandSpec:
    """How one operation is written and how its answer is collected.

    ``build`` and ``collector`` receive the operation's arguments.
    ``collector`` is None for fire-and-forget commands.
    """

    command: Command
    build: Callable[..., bytes]
    collector: Callable[..., Any] | None = None

    @property
    def expects_response(self) -> bool:
        return self.collector is not None


COMMAND_TABLE: dict[Operation, CommandSpec] = {
    Operation.READ_BATTERY: CommandSpec(
        Command.BATTERY, build_battery_request, SingleResponse
    ),
    Operation.START_HEART_RATE: CommandSpec(
        Command.REAL_TIME_START, lambda: build_real_time_start(RealTimeKind.HEART_RATE)
    ),
    Operation.STOP_HEART_RATE: CommandSpec(
        Command.REAL_TIME_STOP, lambda: build_real_time_stop(RealTimeKind.HEART_RATE)
    ),
    Operation.START_SPO2: CommandSpec(
        Command.REAL_TIME_START, lambda: build_real_time_start(RealTimeKind.SPO2)
    ),
    Operation.STOP_SPO2: CommandSpec(
        Command.REAL_TIME_STOP, lambda: build_real_time_stop(RealTimeKind.SPO2)
    ),
    Operation.READ_STEPS: CommandSpec(
        Command.STEPS,
        build_steps_request,
        lambda day_offset=0: StepsResponse(),
    ),
    Operation.ACCELEROMETER_BURST: CommandSpec(
        Command.RAW_DATA,
        lambda samples=DEFAULT_BURST_SAMPLES: build_raw_data_enable(),
        SampleBurst,
    ),
    Operation.STOP_RAW_DATA: CommandSpec(Command.RAW_DATA, build_raw_data_disable),
    Operation.REBOOT: CommandSpec(Command.REBOOT, build_reboot),
}


# ─── REQUESTS ────────────────────────────────────────────────────────


@dataclass
class CommandRequest:
    command_id: int
    payload: bytes
    expects_response: bool
    issued_at: float
    timeout: float


@dataclass
class PendingCommand:
    """Handle for an issued command; await :meth:`result` for its answer."""

    request: CommandRequest
    future: asyncio.Future
    collector: Any = None
    sent: bool = False
    _timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def command_id(self) -> int:
        return self.request.command_id

    def done(self) -> bool:
        return self.future.done()

    async def result(self) -> Any:
        return await self.future


class CommandProtocol:
    """Issues commands over a send coroutine and matches frames to them.

    Usage::

        protocol = CommandProtocol(connection.send)
        handle = await protocol.send_command(Operation.READ_BATTERY)
        battery = await handle.result()

    Incoming frames must be passed to :meth:`handle_frame` in arrival order.
    """

    def __init__(
        self,
        send: Callable[[bytes], Awaitable[Any]],
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._send = send
        self._timeout = timeout
        self._pending: dict[int, PendingCommand] = {}
        self._slot = asyncio.Semaphore(1)

    @property
    def timeout(self) -> float:
        return self._timeout

    def pending(self) -> list[int]:
        """Command ids with an outstanding request."""
        return list(self._pending)

    def is_pending(self, command_id: int) -> bool:
        return command_id in self._pending

    async def send_command(self, operation: Operation, *args: Any) -> PendingCommand:
        """Write the command for ``operation`` and return its pending handle.

        Raises:
            RequestAlreadyInFlight: A request with the same command id is
                still outstanding.
            TransportError: The write itself failed.
        """
        spec = COMMAND_TABLE[operation]
        frame = spec.build(*args)
        command_id = spec.command.value

        if command_id in self._pending:
            raise RequestAlreadyInFlight(command_id)

        loop = asyncio.get_running_loop()
        handle = PendingCommand(
            request=CommandRequest(
                command_id=command_id,
                payload=frame[1:-1],
                expects_response=spec.expects_response,
                issued_at=time.monotonic(),
                timeout=self._timeout,
            ),
            future=loop.create_future(),
            collector=spec.collector(*args) if spec.collector else None,
        )
        if spec.expects_response:
            self._pending[command_id] = handle

        try:
            await self._slot.acquire()
        except BaseException:
            self._forget(handle)
            raise

        if handle.done():
            # Cancelled while queued for the slot
            self._slot.release()
            return handle

        if not spec.expects_response:
            try:
                logger.debug("TX %s: %s", operation.value, frame.hex(" "))
                await self._send(frame)
            finally:
                self._slot.release()
            handle.sent = True
            handle.future.set_result(None)
            return handle

        handle.future.add_done_callback(lambda _: self._release(handle))
        handle.sent = True
        handle.request.issued_at = time.monotonic()
        try:
            logger.debug("TX %s: %s", operation.value, frame.hex(" "))
            await self._send(frame)
        except asyncio.CancelledError:
            handle.future.cancel()
            raise
        except Exception as e:
            if not handle.done():
                handle.future.set_exception(e)
                # Retrieved so a failed write is not reported as unhandled
                handle.future.exception()
            raise

        if not handle.done():
            handle._timer = loop.call_later(self._timeout, self._expire, handle)
        return handle

    async def request(self, operation: Operation, *args: Any) -> Any:
        """Send a command and wait for its collected response."""
        handle = await self.send_command(operation, *args)
        return await handle.result()

    def handle_frame(self, frame: Frame) -> Any:
        """Route one verified frame.

        Returns the parsed reading when the frame is unsolicited telemetry,
        or None when it was consumed by an outstanding request.

        Raises:
            ProtocolError: The frame cannot be interpreted; callers drop it.
        """
        if frame.is_error and frame.command != Command.RAW_DATA:
            command_id = frame.command & ~ERROR_FLAG
            rejection = CommandRejected(command_id, frame.payload)
            handle = self._pending.get(command_id)
            if handle is None or not handle.sent:
                raise rejection
            logger.warning("Ring rejected command 0x%02X", command_id)
            self._fail(handle, rejection)
            return None

        reading = parse_response(frame)

        handle = self._pending.get(frame.command)
        if handle is None or not handle.sent or handle.done():
            return reading

        if handle.collector.feed(reading):
            self._resolve(handle, handle.collector.result())
        return None

    def cancel_all(self, exc: RingError) -> int:
        """Fail every outstanding request with ``exc``. Returns how many."""
        handles = list(self._pending.values())
        for handle in handles:
            self._fail(handle, exc)
        if handles:
            logger.info("Abandoned %d pending command(s): %s", len(handles), exc)
        return len(handles)

    # ─── internals ───────────────────────────────────────────────────

    def _resolve(self, handle: PendingCommand, value: Any) -> None:
        if not handle.done():
            handle.future.set_result(value)

    def _fail(self, handle: PendingCommand, exc: BaseException) -> None:
        if not handle.done():
            handle.future.set_exception(exc)
        self._forget(handle)

    def _expire(self, handle: PendingCommand) -> None:
        handle._timer = None
        logger.debug("Command 0x%02X timed out", handle.command_id)
        self._fail(handle, CommandTimedOut(handle.command_id, handle.request.timeout))

    def _release(self, handle: PendingCommand) -> None:
        if handle._timer is not None:
            handle._timer.cancel()
            handle._timer = None
        self._forget(handle)
        self._slot.release()

    def _forget(self, handle: PendingCommand) -> None:
        if self._pending.get(handle.command_id) is handle:
            del self._pending[handle.command_id]
