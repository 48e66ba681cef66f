"""One connection lifecycle against a colorimeter.

A session walks ``connecting -> connected -> services_discovered ->
subscribed -> ready`` and ends in ``disconnected``, ``exited`` or
``errored``. While ready it multiplexes three sources in one loop: device
notifications, bus events, and the keepalive timer.

The device accepts a single unacknowledged command at a time. Outbound frames
go through ``OutboundQueue``: a frame is written immediately only when nothing
is queued and no reply is pending; otherwise it waits until a notification
has been processed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from colorctl.core.bus import EventBus
from colorctl.core.codec import BATTERY_FRAME, FrameKind, classify, decode, encode_command, parse_scan_result
from colorctl.core.config import Settings
from colorctl.core.errors import BusLagged, ColorctlError, FrameError, TransportTimeoutError
from colorctl.core.model import (
    Command,
    CommandEvent,
    CommandKind,
    CommandQueueEvent,
    ConnectedEvent,
    ConnectingEvent,
    DisconnectedEvent,
    ErrorEvent,
    Event,
    ExitEvent,
    ScanEvent,
)
from colorctl.transports.base import DeviceLink, LinkProvider

LOGGER = logging.getLogger(__name__)


class SessionState(Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SERVICES_DISCOVERED = "services_discovered"
    SUBSCRIBED = "subscribed"
    READY = "ready"
    DISCONNECTED = "disconnected"
    EXITED = "exited"
    ERRORED = "errored"


@dataclass(frozen=True)
class SessionResult:
    state: SessionState
    # True when the user asked for the disconnect.
    requested: bool = False
    error: str | None = None
    unhandled: tuple[CommandEvent, ...] = ()
    # Events pushed to the session subscription before it closed.
    events_seen: int = 0


class OutboundQueue:
    """FIFO of encoded frames plus the awaiting-reply flag.

    The lock covers the deque and the flag only; writes happen after it is
    released.
    """

    def __init__(self, write: Callable[[bytes], Awaitable[None]]) -> None:
        self._write = write
        self._frames: deque[bytes] = deque()
        self._awaiting_reply = False
        self._lock = asyncio.Lock()

    @property
    def awaiting_reply(self) -> bool:
        return self._awaiting_reply

    @property
    def pending(self) -> tuple[bytes, ...]:
        return tuple(self._frames)

    async def enqueue(self, frame: bytes) -> None:
        async with self._lock:
            send_now = not self._frames and not self._awaiting_reply
            if send_now:
                self._awaiting_reply = True
            else:
                self._frames.append(frame)
        if send_now:
            LOGGER.debug("write immediate command: %s", frame.hex())
            await self._write(frame)

    async def advance(self) -> None:
        """Send the next queued frame after a notification, or clear the flag."""
        async with self._lock:
            frame = self._frames.popleft() if self._frames else None
            self._awaiting_reply = frame is not None
        if frame is not None:
            LOGGER.debug("write queued command: %s", frame.hex())
            await self._write(frame)

    def discard(self) -> int:
        dropped = len(self._frames)
        self._frames.clear()
        return dropped


class _ExitRequested(Exception):
    pass


class DeviceSession:
    def __init__(
        self,
        bus: EventBus,
        provider: LinkProvider,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bus = bus
        # Subscribe now so events published before run() starts are kept.
        self._subscription = bus.subscribe()
        self._provider = provider
        self._settings = settings
        self._clock = clock
        self.state = SessionState.CONNECTING
        self.link: DeviceLink | None = None
        self.queue: OutboundQueue | None = None
        self._connected = False
        self._subscribed = False
        self._backlog: list[Event] = []
        self._recv_task: asyncio.Future[Event] | None = None
        self._notify_task: asyncio.Future[bytes | None] | None = None
        self._last_activity = 0.0
        self.result_count = 0
        self._last_scan: bytes | None = None
        self._last_scan_at = 0.0

    def _set_state(self, state: SessionState) -> None:
        LOGGER.debug("session state %s -> %s", self.state.value, state.value)
        self.state = state

    async def run(self) -> SessionResult:
        try:
            result = await self._run()
        finally:
            unhandled = self._unhandled_commands()
            self._cancel_waits()
            self._subscription.close()
        return replace(result, unhandled=unhandled, events_seen=self._subscription.received)

    async def _run(self) -> SessionResult:
        try:
            await self._establish()
            return await self._serve()
        except _ExitRequested:
            LOGGER.debug("exiting session")
            await self._cleanup()
            return self._finish(SessionState.EXITED)
        except ColorctlError as exc:
            LOGGER.error("%s", exc)
            return await self._fail(str(exc))
        except Exception as exc:
            LOGGER.exception("session failed unexpectedly")
            return await self._fail(f"{type(exc).__name__}: {exc}")

    def _unhandled_commands(self) -> tuple[CommandEvent, ...]:
        """Commands delivered to this session after it stopped acting on them."""
        events: list[Event] = []
        task = self._recv_task
        if task is not None and task.done() and not task.cancelled():
            event = self._take_event()
            if event is not None:
                events.append(event)
        while True:
            try:
                event = self._subscription.try_recv()
            except BusLagged as exc:
                LOGGER.warning("session %s", exc)
                continue
            if event is None:
                break
            events.append(event)
        return tuple(e for e in events if isinstance(e, CommandEvent))

    async def _fail(self, message: str) -> SessionResult:
        self._bus.publish(ErrorEvent(message))
        await self._cleanup()
        return self._finish(SessionState.ERRORED, error=message)

    def _finish(self, state: SessionState, *, requested: bool = False, error: str | None = None) -> SessionResult:
        self._set_state(state)
        return SessionResult(state=state, requested=requested, error=error)

    async def _establish(self) -> None:
        wanted = self._settings.device
        self._bus.publish(ConnectingEvent(wanted, None))
        link = await self._race(self._provider.find(wanted, self._settings.find_timeout))
        self.link = link
        self.queue = OutboundQueue(link.write)

        self._bus.publish(ConnectingEvent(link.address, link.name))
        LOGGER.info("Connecting to %s", link.address)
        try:
            await self._race(asyncio.wait_for(link.connect(), self._settings.connect_timeout))
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(
                f"Connecting to {link.address} timed out after {self._settings.connect_timeout:g}s"
            ) from exc
        self._connected = True
        self._set_state(SessionState.CONNECTED)
        self._bus.publish(ConnectedEvent(link.address, link.name))
        LOGGER.info("Connected")

        await self._race(link.discover())
        self._set_state(SessionState.SERVICES_DISCOVERED)
        await self._race(link.subscribe())
        self._subscribed = True
        self._set_state(SessionState.SUBSCRIBED)
        self._set_state(SessionState.READY)

    async def _race(self, awaitable: Awaitable[Any]) -> Any:
        """Await a setup step while watching the bus.

        ``Exit`` aborts the step; any other event is kept for when the
        session is ready.
        """
        step = asyncio.ensure_future(awaitable)
        try:
            while True:
                recv = self._recv()
                done, _ = await asyncio.wait({step, recv}, return_when=asyncio.FIRST_COMPLETED)
                if recv in done:
                    event = self._take_event()
                    if isinstance(event, ExitEvent):
                        raise _ExitRequested
                    if event is not None:
                        self._backlog.append(event)
                if step in done:
                    return step.result()
        finally:
            if not step.done():
                step.cancel()
                await asyncio.gather(step, return_exceptions=True)

    def _recv(self) -> asyncio.Future[Event]:
        if self._recv_task is None:
            self._recv_task = asyncio.ensure_future(self._subscription.recv())
        return self._recv_task

    def _take_event(self) -> Event | None:
        task, self._recv_task = self._recv_task, None
        assert task is not None
        try:
            return task.result()
        except BusLagged as exc:
            LOGGER.warning("session %s", exc)
            return None

    def _notify(self) -> asyncio.Future[bytes | None]:
        if self._notify_task is None:
            assert self.link is not None
            self._notify_task = asyncio.ensure_future(self.link.receive())
        return self._notify_task

    def _cancel_waits(self) -> None:
        for task in (self._recv_task, self._notify_task):
            if task is not None and not task.done():
                task.cancel()
        self._recv_task = None
        self._notify_task = None

    async def _serve(self) -> SessionResult:
        loop = asyncio.get_running_loop()
        keepalive = self._settings.keepalive_interval
        self._last_activity = loop.time()

        backlog, self._backlog = self._backlog, []
        for event in backlog:
            result = await self._handle_event(event)
            if result is not None:
                return result

        while True:
            notify = self._notify()
            recv = self._recv()
            timeout = max(0.0, self._last_activity + keepalive - loop.time())
            done, _ = await asyncio.wait(
                {notify, recv},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if not done:
                LOGGER.debug("no notification for %gs, requesting battery level", keepalive)
                self._last_activity = loop.time()
                assert self.queue is not None
                await self.queue.enqueue(BATTERY_FRAME)
                continue

            if notify in done:
                self._notify_task = None
                frame = notify.result()
                if frame is None:
                    LOGGER.info("Notification stream ended")
                    await self._cleanup()
                    return self._finish(SessionState.DISCONNECTED)
                self._last_activity = loop.time()
                await self._process(frame)

            if recv in done:
                event = self._take_event()
                if event is not None:
                    result = await self._handle_event(event)
                    if result is not None:
                        return result

    async def _handle_event(self, event: Event) -> SessionResult | None:
        if isinstance(event, ExitEvent):
            raise _ExitRequested
        if isinstance(event, CommandEvent):
            if event.command.kind is CommandKind.DISCONNECT:
                LOGGER.debug("disconnect requested")
                await self._cleanup()
                return self._finish(SessionState.DISCONNECTED, requested=True)
            await self._submit(event.command)
        elif isinstance(event, CommandQueueEvent):
            for command in event.commands:
                await self._submit(command)
        return None

    async def _submit(self, command: Command) -> None:
        frames = encode_command(command)
        if not frames:
            LOGGER.debug("ignoring %s while connected", command)
            return
        assert self.queue is not None
        for frame in frames:
            await self.queue.enqueue(frame)

    async def _process(self, frame: bytes) -> None:
        LOGGER.debug("Received: %s", frame.hex())
        try:
            event = self._decode(frame)
        except FrameError as exc:
            LOGGER.warning("%s", exc)
            event = None
        if event is not None:
            self._bus.publish(event)
        assert self.queue is not None
        await self.queue.advance()

    def _decode(self, frame: bytes) -> Event | None:
        if classify(frame) is not FrameKind.SCAN_RESULT:
            return decode(frame)

        now = self._clock()
        if frame == self._last_scan and now - self._last_scan_at < self._settings.duplicate_window:
            LOGGER.warning("Duplicated result, dropping: %s", frame.hex())
            return None
        result = parse_scan_result(self.result_count + 1, frame)
        self.result_count = result.index
        self._last_scan = frame
        self._last_scan_at = now
        LOGGER.debug("result = %s", result)
        return ScanEvent(result)

    async def _cleanup(self) -> None:
        """Best-effort teardown shared by every terminal path."""
        link = self.link
        if link is not None:
            if self._subscribed:
                self._subscribed = False
                try:
                    await link.unsubscribe()
                except Exception as exc:
                    LOGGER.warning("unsubscribe failed: %s", exc)
            try:
                await link.disconnect()
            except Exception as exc:
                LOGGER.warning("disconnect failed: %s", exc)
        if self.queue is not None:
            dropped = self.queue.discard()
            if dropped:
                LOGGER.debug("discarded %d unsent command frame(s)", dropped)
        if self._connected:
            self._connected = False
            self._bus.publish(DisconnectedEvent())
