"""Interactive line console: typed commands in, formatted events out."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Callable
from typing import Any

import typer

from colorctl.core.bus import EventBus
from colorctl.core.errors import BusLagged
from colorctl.core.model import (
    CALIBRATE,
    DISCONNECT,
    RECONNECT,
    SCAN,
    STATUS,
    CommandEvent,
    ErrorEvent,
    Event,
    ExitEvent,
)
from colorctl.output import Formatter

LOGGER = logging.getLogger(__name__)

COMMANDS: dict[str, Event] = {
    "exit": ExitEvent(),
    "calibrate": CommandEvent(CALIBRATE),
    "scan": CommandEvent(SCAN),
    "status": CommandEvent(STATUS),
    "disconnect": CommandEvent(DISCONNECT),
    "reconnect": CommandEvent(RECONNECT),
}


def parse_console_command(line: str) -> Event | None:
    words = line.split()
    if not words:
        return None
    name = words[0].lower()
    return COMMANDS.get(name, ErrorEvent(f"Unknown command: {words[0]}"))


async def open_stdin_reader() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def console_loop(
    bus: EventBus,
    formatter: Formatter,
    reader: asyncio.StreamReader,
    echo: Callable[[str], Any] = typer.echo,
) -> None:
    subscription = bus.subscribe()
    read: asyncio.Future[bytes] | None = None
    recv: asyncio.Future[Event] | None = None
    eof = False
    try:
        while True:
            if read is None and not eof:
                read = asyncio.ensure_future(reader.readline())
            if recv is None:
                recv = asyncio.ensure_future(subscription.recv())
            waits = {recv} if read is None else {read, recv}
            done, _ = await asyncio.wait(waits, return_when=asyncio.FIRST_COMPLETED)

            if read in done:
                raw = read.result()
                read = None
                if not raw:
                    LOGGER.debug("console input closed")
                    eof = True
                    bus.publish(ExitEvent())
                else:
                    event = parse_console_command(raw.decode("utf-8", errors="replace"))
                    if event is not None:
                        LOGGER.debug("console command: %s", event)
                        bus.publish(event)

            if recv in done:
                try:
                    event = recv.result()
                except BusLagged as exc:
                    LOGGER.warning("console %s", exc)
                    recv = None
                    continue
                recv = None
                if isinstance(event, ExitEvent):
                    break
                line = formatter.format_event(event)
                if line is not None:
                    echo(line)
    finally:
        for task in (read, recv):
            if task is not None and not task.done():
                task.cancel()
        subscription.close()
