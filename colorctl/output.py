"""Event formatting for humans (text) and machines (JSON arrays)."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any, Protocol

import typer

from colorctl.core.bus import Subscription
from colorctl.core.model import (
    CalibratedEvent,
    ConnectedEvent,
    ConnectingEvent,
    DeviceInfoEvent,
    DisconnectedEvent,
    ErrorEvent,
    Event,
    ExitEvent,
    PowerLevelEvent,
    ScanEvent,
    ScanResult,
    Triple,
)

LOGGER = logging.getLogger(__name__)


class Formatter(Protocol):
    def format_event(self, event: Event) -> str | None: ...


def _json_triple(triple: Triple) -> list[Any]:
    return [round(v, 2) if isinstance(v, float) else v for v in triple]


def scan_payload(result: ScanResult) -> dict[str, list[Any]]:
    return {
        "lab": _json_triple(result.lab),
        "luv": _json_triple(result.luv),
        "lch": _json_triple(result.lch),
        "yxy": _json_triple(result.yxy),
        "rgb": list(result.rgb),
    }


def event_message(event: Event) -> list[Any] | None:
    """Return the ``[tag, ...fields]`` wire form, or None for internal events."""
    if isinstance(event, ScanEvent):
        return [event.tag, event.result.index, scan_payload(event.result)]
    if isinstance(event, (ConnectingEvent, ConnectedEvent)):
        return [event.tag, event.address, event.name]
    if isinstance(event, PowerLevelEvent):
        return [event.tag, event.value]
    if isinstance(event, DeviceInfoEvent):
        return [event.tag, list(event.values)]
    if isinstance(event, ErrorEvent):
        return [event.tag, event.message]
    if isinstance(event, (ExitEvent, DisconnectedEvent, CalibratedEvent)):
        return [event.tag]
    return None


class TextFormatter:
    def format_event(self, event: Event) -> str | None:
        if isinstance(event, ScanEvent):
            res = event.result
            return "\n".join(
                [
                    f"Scan result #: {res.index}",
                    f"\tLab: {res.lab}",
                    f"\tLuv: {res.luv}",
                    f"\tLch: {res.lch}",
                    f"\tyxY: {res.yxy}",
                    f"\tRGB: {res.rgb}",
                ]
            )
        if isinstance(event, PowerLevelEvent):
            return f"Power level: {event.value}"
        if isinstance(event, DeviceInfoEvent):
            return "Device info: " + " ".join(str(v) for v in event.values)
        if isinstance(event, ErrorEvent):
            return f"Error: {event.message}"
        if isinstance(event, CalibratedEvent):
            return "Calibrated"
        if isinstance(event, DisconnectedEvent):
            return "Disconnected"
        if isinstance(event, ConnectedEvent):
            return f"Connected to {event.address} ({event.name or 'unnamed'})"
        return None


class JsonFormatter:
    def format_event(self, event: Event) -> str | None:
        message = event_message(event)
        if message is None or isinstance(event, ExitEvent):
            return None
        return json.dumps(message)


def make_formatter(output_format: str) -> Formatter:
    if output_format == "json":
        return JsonFormatter()
    return TextFormatter()


async def log_loop(
    subscription: Subscription,
    formatter: Formatter | None = None,
    echo: Callable[[str], Any] = typer.echo,
) -> None:
    """Log every bus event and, with a formatter, print it until ``Exit``."""
    try:
        async for event in subscription:
            LOGGER.debug("event: %s", event)
            if isinstance(event, ExitEvent):
                break
            line = formatter.format_event(event) if formatter is not None else None
            if line is not None:
                echo(line)
    finally:
        subscription.close()
