"""Reconnection supervisor: starts sessions and owns the retry policy."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Protocol

from colorctl.core.bus import EventBus
from colorctl.core.config import Settings
from colorctl.core.errors import BusLagged
from colorctl.core.model import (
    DEVICE_COMMANDS,
    Command,
    CommandEvent,
    CommandKind,
    CommandQueueEvent,
    DeviceState,
    ErrorEvent,
    Event,
    ExitEvent,
)
from colorctl.core.session import SessionResult, SessionState

LOGGER = logging.getLogger(__name__)

DISCONNECTED_MESSAGE = "Device is disconnected"


class Session(Protocol):
    async def run(self) -> SessionResult: ...


SessionFactory = Callable[[EventBus], Session]


class Supervisor:
    """Keep a device session running according to the retry settings.

    ``attempts`` counts connection attempts since the last clean disconnect;
    ``pending_commands`` holds device commands issued while no session was
    active and is replayed to the next session as one ``CommandQueue`` event.
    """

    def __init__(
        self,
        bus: EventBus,
        settings: Settings,
        session_factory: SessionFactory,
        *,
        exit_when_idle: bool = False,
    ) -> None:
        self._bus = bus
        self._settings = settings
        self._session_factory = session_factory
        self._exit_when_idle = exit_when_idle
        self._subscription = bus.subscribe()
        self.attempts = 0
        self.want_retry = True
        self.pending_commands: list[Command] = list(settings.initial_commands)
        self.state = DeviceState()
        self.sessions_started = 0

    async def run(self) -> None:
        try:
            while True:
                if not self.want_retry:
                    if self._exit_when_idle:
                        LOGGER.info("Nothing left to do, exiting")
                        self._bus.publish(ExitEvent())
                        return
                    if not await self._idle(None):
                        return
                    continue

                if self.attempts > 0:
                    LOGGER.info("Retrying in %gs", self._settings.reconnect_interval)
                    if not await self._idle(self._settings.reconnect_interval):
                        return

                result, late = await self._run_session()
                if not self._apply_result(result):
                    return
                # Commands the session never acted on count as fresh input.
                for event in late:
                    if not self._observe(event):
                        return
        finally:
            self._subscription.close()

    async def _run_session(self) -> tuple[SessionResult, list[Event]]:
        """Run one session; also return input that arrived too late for it."""
        self.attempts += 1
        self.sessions_started += 1
        LOGGER.debug("starting session, attempt %d", self.attempts)
        session = self._session_factory(self._bus)
        start = self._subscription.received
        if self.pending_commands:
            self._bus.publish(CommandQueueEvent(tuple(self.pending_commands)))

        task = asyncio.ensure_future(session.run())
        recv: asyncio.Future[Event] | None = None
        exiting = False
        last: list[tuple[int, Event]] = []
        try:
            while True:
                if recv is None:
                    recv = asyncio.ensure_future(self._subscription.recv())
                done, _ = await asyncio.wait({task, recv}, return_when=asyncio.FIRST_COMPLETED)
                if recv in done:
                    event = self._take(recv)
                    recv = None
                    if event is not None:
                        if task in done:
                            last.append((self._consumed() - 1, event))
                        else:
                            # The session consumes commands itself; only keep state current.
                            self.state.apply(event)
                            exiting = exiting or isinstance(event, ExitEvent)
                if task in done:
                    break
        finally:
            if recv is not None and not recv.done():
                recv.cancel()

        try:
            result = task.result()
            cutoff = start + result.events_seen
        except Exception as exc:
            LOGGER.exception("session terminated abnormally")
            result = SessionResult(SessionState.ERRORED, error=str(exc))
            cutoff = self._subscription.received

        late: list[Event] = list(result.unhandled)
        for position, event in last + self._drain():
            if position >= cutoff:
                late.append(event)
            else:
                self.state.apply(event)
                exiting = exiting or isinstance(event, ExitEvent)
        # An Exit racing the end of the session still stops the supervisor.
        if exiting:
            return SessionResult(SessionState.EXITED), []
        return result, late

    def _consumed(self) -> int:
        # Events popped or dropped so far; later pushes leave it unchanged.
        return self._subscription.received - self._subscription.pending

    def _drain(self) -> list[tuple[int, Event]]:
        """Take every buffered event along with its position in the stream."""
        events: list[tuple[int, Event]] = []
        while True:
            try:
                event = self._subscription.try_recv()
            except BusLagged as exc:
                LOGGER.warning("supervisor %s", exc)
                continue
            if event is None:
                return events
            events.append((self._consumed() - 1, event))

    def _apply_result(self, result: SessionResult) -> bool:
        if result.state is SessionState.EXITED:
            return False

        self.pending_commands.clear()
        remain = self._settings.remain
        if result.state is SessionState.DISCONNECTED:
            self.attempts = 0
            self.want_retry = remain and not result.requested
        else:
            self.want_retry = remain and self.attempts < self._settings.reconnect_attempts
            if remain and not self.want_retry:
                LOGGER.warning(
                    "Giving up after %d attempt(s); send reconnect to try again",
                    self.attempts,
                )
        return True

    def _take(self, recv: asyncio.Future[Event]) -> Event | None:
        try:
            return recv.result()
        except BusLagged as exc:
            LOGGER.warning("supervisor %s", exc)
            return None

    async def _idle(self, timeout: float | None) -> bool:
        """Observe the bus while no session runs.

        Without a timeout this returns once retrying is re-armed; with one it
        returns when the backoff elapses or a reconnect cuts it short. Returns
        False when the process should stop.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            if deadline is None:
                if self.want_retry:
                    return True
                remaining = None
            else:
                remaining = deadline - loop.time()
                if remaining <= 0 or self.attempts == 0:
                    return True
            try:
                event = await asyncio.wait_for(self._subscription.recv(), remaining)
            except asyncio.TimeoutError:
                return True
            except BusLagged as exc:
                LOGGER.warning("supervisor %s", exc)
                continue
            if not self._observe(event):
                return False

    def _observe(self, event: Event) -> bool:
        self.state.apply(event)
        if isinstance(event, ExitEvent):
            return False
        if not isinstance(event, CommandEvent):
            return True

        command = event.command
        if command.kind is CommandKind.RECONNECT:
            self.attempts = 0
            self.want_retry = True
        elif command.kind in DEVICE_COMMANDS:
            self.want_retry = True
            self.pending_commands.append(command)
        else:
            self._bus.publish(ErrorEvent(DISCONNECTED_MESSAGE))
        return True
