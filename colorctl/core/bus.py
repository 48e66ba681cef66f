"""Process-wide publish/subscribe channel for domain events.

Every subscriber owns a bounded buffer. Publishing appends to each buffer and
never waits; a subscriber whose buffer is full loses its oldest event and is
told so through ``BusLagged`` on its next read.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque

from colorctl.core.errors import BusLagged
from colorctl.core.model import Event, ExitEvent

DEFAULT_CAPACITY = 32
LOGGER = logging.getLogger(__name__)


class Subscription:
    def __init__(self, bus: EventBus, capacity: int) -> None:
        self._bus = bus
        self._buffer: deque[Event] = deque()
        self._capacity = capacity
        self._missed = 0
        self._ready = asyncio.Event()
        self.closed = False
        # Total events ever pushed, including those later dropped.
        self.received = 0

    def _push(self, event: Event) -> None:
        self.received += 1
        if len(self._buffer) >= self._capacity:
            self._buffer.popleft()
            self._missed += 1
        self._buffer.append(event)
        self._ready.set()

    def _pop(self) -> Event | None:
        if self._missed:
            missed, self._missed = self._missed, 0
            raise BusLagged(missed)
        if not self._buffer:
            self._ready.clear()
            return None
        event = self._buffer.popleft()
        if not self._buffer:
            self._ready.clear()
        return event

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def try_recv(self) -> Event | None:
        return self._pop()

    async def recv(self) -> Event:
        # Nothing is taken from the buffer until the wait is over, so a
        # cancelled recv() loses no events.
        while True:
            event = self._pop()
            if event is not None:
                return event
            await self._ready.wait()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus._unsubscribe(self)

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        while True:
            try:
                event = await self.recv()
            except BusLagged as exc:
                LOGGER.warning("%s", exc)
                continue
            yield event
            if isinstance(event, ExitEvent):
                return

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class EventBus:
    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("bus capacity must be at least 1")
        self.capacity = capacity
        self._subscribers: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self.capacity)
        self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        try:
            self._subscribers.remove(subscription)
        except ValueError:
            pass

    def publish(self, event: Event) -> None:
        LOGGER.debug("publish %s", event)
        for subscription in tuple(self._subscribers):
            subscription._push(event)
