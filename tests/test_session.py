from __future__ import annotations

import asyncio
import logging
import struct

import pytest

from colorctl.core.bus import EventBus, Subscription
from colorctl.core.codec import BATTERY_FRAME, CALIBRATE_FRAME, INFO_FRAME, SCAN_FRAME
from colorctl.core.config import Settings
from colorctl.core.errors import CharacteristicMissingError, TransportSendError
from colorctl.core.model import (
    CALIBRATE,
    DISCONNECT,
    SCAN,
    STATUS,
    CalibratedEvent,
    CommandEvent,
    CommandQueueEvent,
    ConnectedEvent,
    ConnectingEvent,
    DeviceInfoEvent,
    DisconnectedEvent,
    ErrorEvent,
    ExitEvent,
    PowerLevelEvent,
    ScanEvent,
)
from colorctl.core.session import DeviceSession, OutboundQueue, SessionState

pytestmark = pytest.mark.asyncio

ADDRESS = "00:11:22:33:44:55"
CALIBRATED = bytes.fromhex("AB202E00020000002DF4")
POWER = bytes.fromhex("AB200B0002005F00")


def scan_frame(first: int = 5231) -> bytes:
    header = bytes([0xAB, 0x44, 0x00, 0x00, 0x00, 0x00, 0x36, 0x00])
    return header + struct.pack("<12h", first, *range(11)) + bytes(4) + bytes([1, 2, 3])


def info_frame() -> bytes:
    return bytes([0xAB, 0x40, 0x00]) + bytes(7) + struct.pack("<15h", *range(15))


class FakeLink:
    def __init__(
        self,
        *,
        missing_characteristic: bool = False,
        hold_connect: bool = False,
        fail_write_at: int | None = None,
    ) -> None:
        self.address = ADDRESS
        self.name = "Colorimeter"
        self.calls: list[str] = []
        self.writes: list[bytes] = []
        self.notifications: asyncio.Queue[bytes | None] = asyncio.Queue()
        self.connect_gate = asyncio.Event()
        if not hold_connect:
            self.connect_gate.set()
        self._missing_characteristic = missing_characteristic
        # 1-based number of the write attempt that raises.
        self._fail_write_at = fail_write_at
        self._write_attempts = 0
        self.disconnect_gate = asyncio.Event()
        self.disconnect_gate.set()

    def notify(self, frame: bytes | None) -> None:
        self.notifications.put_nowait(frame)

    async def connect(self) -> None:
        self.calls.append("connect")
        await self.connect_gate.wait()

    async def discover(self) -> None:
        self.calls.append("discover")
        if self._missing_characteristic:
            raise CharacteristicMissingError("No notify characteristic found")

    async def subscribe(self) -> None:
        self.calls.append("subscribe")

    async def receive(self) -> bytes | None:
        return await self.notifications.get()

    async def write(self, frame: bytes) -> None:
        self._write_attempts += 1
        if self._write_attempts == self._fail_write_at:
            raise TransportSendError("link lost")
        self.writes.append(frame)

    async def unsubscribe(self) -> None:
        self.calls.append("unsubscribe")

    async def disconnect(self) -> None:
        self.calls.append("disconnect")
        await self.disconnect_gate.wait()


class FakeProvider:
    def __init__(self, link: FakeLink) -> None:
        self.link = link
        self.finds: list[str | None] = []

    async def find(self, address: str | None, timeout: float) -> FakeLink:
        self.finds.append(address)
        return self.link

    async def discover(self, timeout: float) -> list:
        return []


async def wait_until(predicate, timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


def drain(subscription: Subscription) -> list:
    events = []
    while True:
        event = subscription.try_recv()
        if event is None:
            return events
        events.append(event)


def start(settings: Settings | None = None, link: FakeLink | None = None, **kwargs):
    bus = EventBus(capacity=64)
    recorder = bus.subscribe()
    link = link or FakeLink()
    session = DeviceSession(bus, FakeProvider(link), settings or Settings(), **kwargs)
    task = asyncio.ensure_future(session.run())
    return bus, recorder, link, session, task


async def test_outbound_queue_keeps_one_frame_in_flight() -> None:
    written: list[bytes] = []

    async def write(frame: bytes) -> None:
        written.append(frame)

    queue = OutboundQueue(write)
    await queue.enqueue(SCAN_FRAME)
    await queue.enqueue(CALIBRATE_FRAME)

    assert written == [SCAN_FRAME]
    assert queue.awaiting_reply
    assert queue.pending == (CALIBRATE_FRAME,)

    await queue.advance()
    assert written == [SCAN_FRAME, CALIBRATE_FRAME]
    assert queue.awaiting_reply

    await queue.advance()
    assert not queue.awaiting_reply
    assert queue.pending == ()

    await queue.enqueue(BATTERY_FRAME)
    assert written[-1] == BATTERY_FRAME


async def test_session_reaches_ready_and_exits_cleanly() -> None:
    bus, recorder, link, session, task = start()
    await wait_until(lambda: session.state is SessionState.READY)

    assert link.calls == ["connect", "discover", "subscribe"]
    assert drain(recorder) == [
        ConnectingEvent(None, None),
        ConnectingEvent(ADDRESS, "Colorimeter"),
        ConnectedEvent(ADDRESS, "Colorimeter"),
    ]

    bus.publish(ExitEvent())
    result = await asyncio.wait_for(task, 1)

    assert result.state is SessionState.EXITED
    assert link.calls[-2:] == ["unsubscribe", "disconnect"]
    assert drain(recorder) == [ExitEvent(), DisconnectedEvent()]


async def test_device_filter_is_passed_to_provider() -> None:
    bus, recorder, link, session, task = start(Settings(device=ADDRESS))
    await wait_until(lambda: session.state is SessionState.READY)
    assert drain(recorder)[0] == ConnectingEvent(ADDRESS, None)
    bus.publish(ExitEvent())
    await asyncio.wait_for(task, 1)


async def test_second_command_waits_for_a_notification() -> None:
    bus, recorder, link, session, task = start()
    await wait_until(lambda: session.state is SessionState.READY)

    bus.publish(CommandEvent(SCAN))
    bus.publish(CommandEvent(CALIBRATE))
    await wait_until(lambda: session.queue is not None and session.queue.pending == (CALIBRATE_FRAME,))
    await asyncio.sleep(0.01)
    assert link.writes == [SCAN_FRAME]

    link.notify(scan_frame())
    await wait_until(lambda: len(link.writes) == 2)
    assert link.writes == [SCAN_FRAME, CALIBRATE_FRAME]

    link.notify(CALIBRATED)
    await wait_until(lambda: not session.queue.awaiting_reply)
    events = drain(recorder)
    assert [e for e in events if isinstance(e, ScanEvent)][0].result.index == 1
    assert CalibratedEvent() in events

    bus.publish(ExitEvent())
    await asyncio.wait_for(task, 1)


async def test_status_requests_info_then_battery() -> None:
    bus, recorder, link, session, task = start()
    await wait_until(lambda: session.state is SessionState.READY)

    bus.publish(CommandEvent(STATUS))
    await wait_until(lambda: link.writes == [INFO_FRAME])
    link.notify(info_frame())
    await wait_until(lambda: link.writes == [INFO_FRAME, BATTERY_FRAME])
    link.notify(POWER)
    await wait_until(lambda: not session.queue.awaiting_reply)

    events = drain(recorder)
    assert DeviceInfoEvent(tuple(range(15))) in events
    assert PowerLevelEvent(95) in events

    bus.publish(ExitEvent())
    await asyncio.wait_for(task, 1)


async def test_duplicate_scan_within_window_is_dropped(caplog: pytest.LogCaptureFixture) -> None:
    now = [0.0]
    bus, recorder, link, session, task = start(clock=lambda: now[0])
    await wait_until(lambda: session.state is SessionState.READY)
    seen: list = []

    def saw(event_type) -> bool:
        seen.extend(drain(recorder))
        return any(isinstance(e, event_type) for e in seen)

    link.notify(scan_frame())
    await wait_until(lambda: session.result_count == 1)

    now[0] = 0.1
    with caplog.at_level(logging.WARNING, logger="colorctl.core.session"):
        link.notify(scan_frame())
        link.notify(POWER)
        await wait_until(lambda: saw(PowerLevelEvent))
    assert "Duplicated result" in caplog.text
    assert session.result_count == 1

    # Different bytes inside the window count.
    link.notify(scan_frame(first=1000))
    await wait_until(lambda: session.result_count == 2)

    # Same bytes as the last result once the window has passed.
    now[0] = 0.5
    link.notify(scan_frame(first=1000))
    await wait_until(lambda: session.result_count == 3)

    saw(ScanEvent)
    assert [e.result.index for e in seen if isinstance(e, ScanEvent)] == [1, 2, 3]

    bus.publish(ExitEvent())
    await asyncio.wait_for(task, 1)


async def test_duplicate_scan_exactly_at_window_end_counts() -> None:
    now = [0.0]
    bus, recorder, link, session, task = start(clock=lambda: now[0])
    await wait_until(lambda: session.state is SessionState.READY)

    link.notify(scan_frame())
    await wait_until(lambda: session.result_count == 1)

    now[0] = Settings().duplicate_window
    link.notify(scan_frame())
    await wait_until(lambda: session.result_count == 2)

    scans = [e for e in drain(recorder) if isinstance(e, ScanEvent)]
    assert [e.result.index for e in scans] == [1, 2]

    bus.publish(ExitEvent())
    await asyncio.wait_for(task, 1)


async def test_idle_link_gets_battery_keepalive() -> None:
    bus, recorder, link, session, task = start(Settings(keepalive_interval=0.05))
    await wait_until(lambda: session.state is SessionState.READY)

    await wait_until(lambda: BATTERY_FRAME in link.writes)
    assert link.writes[0] == BATTERY_FRAME

    bus.publish(ExitEvent())
    await asyncio.wait_for(task, 1)


async def test_exit_stops_writes_and_discards_queue() -> None:
    bus, recorder, link, session, task = start()
    await wait_until(lambda: session.state is SessionState.READY)

    bus.publish(CommandEvent(SCAN))
    bus.publish(CommandEvent(CALIBRATE))
    await wait_until(lambda: session.queue.pending == (CALIBRATE_FRAME,))
    bus.publish(ExitEvent())
    result = await asyncio.wait_for(task, 1)

    assert result.state is SessionState.EXITED
    assert link.writes == [SCAN_FRAME]
    assert session.queue.pending == ()
    assert sum(isinstance(e, DisconnectedEvent) for e in drain(recorder)) == 1


async def test_exit_while_connecting_aborts_without_disconnected_event() -> None:
    link = FakeLink(hold_connect=True)
    bus, recorder, link, session, task = start(link=link)
    await wait_until(lambda: "connect" in link.calls)

    bus.publish(ExitEvent())
    result = await asyncio.wait_for(task, 1)

    assert result.state is SessionState.EXITED
    assert link.writes == []
    assert not any(isinstance(e, DisconnectedEvent) for e in drain(recorder))


async def test_commands_sent_while_connecting_run_once_ready() -> None:
    link = FakeLink(hold_connect=True)
    bus, recorder, link, session, task = start(link=link)
    await wait_until(lambda: "connect" in link.calls)

    bus.publish(CommandQueueEvent((STATUS, SCAN)))
    await asyncio.sleep(0.01)
    assert link.writes == []

    link.connect_gate.set()
    await wait_until(lambda: link.writes == [INFO_FRAME])
    assert session.queue.pending == (BATTERY_FRAME, SCAN_FRAME)

    bus.publish(ExitEvent())
    await asyncio.wait_for(task, 1)


async def test_connect_timeout_fails_session() -> None:
    link = FakeLink(hold_connect=True)
    bus, recorder, link, session, task = start(Settings(connect_timeout=0.01), link=link)
    result = await asyncio.wait_for(task, 1)

    assert result.state is SessionState.ERRORED
    assert "timed out" in result.error
    errors = [e for e in drain(recorder) if isinstance(e, ErrorEvent)]
    assert len(errors) == 1


async def test_user_disconnect_is_flagged_as_requested() -> None:
    bus, recorder, link, session, task = start()
    await wait_until(lambda: session.state is SessionState.READY)

    bus.publish(CommandEvent(DISCONNECT))
    result = await asyncio.wait_for(task, 1)

    assert result.state is SessionState.DISCONNECTED
    assert result.requested
    assert "disconnect" in link.calls
    assert sum(isinstance(e, DisconnectedEvent) for e in drain(recorder)) == 1


async def test_notification_stream_end_disconnects() -> None:
    bus, recorder, link, session, task = start()
    await wait_until(lambda: session.state is SessionState.READY)

    link.notify(None)
    result = await asyncio.wait_for(task, 1)

    assert result.state is SessionState.DISCONNECTED
    assert not result.requested
    assert drain(recorder)[-1] == DisconnectedEvent()


async def test_missing_characteristic_reports_error() -> None:
    bus, recorder, link, session, task = start(link=FakeLink(missing_characteristic=True))
    result = await asyncio.wait_for(task, 1)

    assert result.state is SessionState.ERRORED
    assert result.error == "No notify characteristic found"
    events = drain(recorder)
    assert events[-2:] == [ErrorEvent("No notify characteristic found"), DisconnectedEvent()]
    assert "subscribe" not in link.calls


async def test_malformed_frame_is_skipped_and_queue_advances(caplog: pytest.LogCaptureFixture) -> None:
    bus, recorder, link, session, task = start()
    await wait_until(lambda: session.state is SessionState.READY)

    bus.publish(CommandEvent(SCAN))
    await wait_until(lambda: link.writes == [SCAN_FRAME])
    with caplog.at_level(logging.WARNING, logger="colorctl.core.session"):
        link.notify(bytes.fromhex("010203"))
        await wait_until(lambda: not session.queue.awaiting_reply)
    assert "Unknown message" in caplog.text

    bus.publish(CommandEvent(CALIBRATE))
    await wait_until(lambda: link.writes == [SCAN_FRAME, CALIBRATE_FRAME])

    bus.publish(ExitEvent())
    await asyncio.wait_for(task, 1)


async def test_failed_queued_write_errors_the_session() -> None:
    bus, recorder, link, session, task = start(link=FakeLink(fail_write_at=2))
    await wait_until(lambda: session.state is SessionState.READY)

    bus.publish(CommandEvent(SCAN))
    bus.publish(CommandEvent(CALIBRATE))
    await wait_until(lambda: session.queue.pending == (CALIBRATE_FRAME,))
    link.notify(scan_frame())
    result = await asyncio.wait_for(task, 1)

    assert result.state is SessionState.ERRORED
    assert result.error == "link lost"
    assert session.state is SessionState.ERRORED
    assert link.writes == [SCAN_FRAME]
    assert link.calls[-2:] == ["unsubscribe", "disconnect"]
    assert drain(recorder)[-2:] == [ErrorEvent("link lost"), DisconnectedEvent()]


async def test_failed_immediate_write_errors_the_session() -> None:
    bus, recorder, link, session, task = start(link=FakeLink(fail_write_at=1))
    await wait_until(lambda: session.state is SessionState.READY)

    bus.publish(CommandEvent(SCAN))
    result = await asyncio.wait_for(task, 1)

    assert result.state is SessionState.ERRORED
    assert session.state is SessionState.ERRORED
    assert link.writes == []
    assert link.calls[-2:] == ["unsubscribe", "disconnect"]
    assert drain(recorder)[-2:] == [ErrorEvent("link lost"), DisconnectedEvent()]


async def test_command_sent_during_teardown_is_returned_unhandled() -> None:
    bus, recorder, link, session, task = start()
    await wait_until(lambda: session.state is SessionState.READY)
    link.disconnect_gate.clear()

    bus.publish(CommandEvent(DISCONNECT))
    await wait_until(lambda: "disconnect" in link.calls)
    bus.publish(CommandEvent(SCAN))
    link.disconnect_gate.set()
    result = await asyncio.wait_for(task, 1)

    assert result.state is SessionState.DISCONNECTED
    assert result.unhandled == (CommandEvent(SCAN),)
    assert link.writes == []
