"""Stable public API for building tooling on top of colorctl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

import asyncio

from colorctl.core.bus import EventBus, Subscription
from colorctl.core.config import Settings, load_settings
from colorctl.core.errors import (
    BusLagged,
    CharacteristicMissingError,
    ColorctlError,
    ConfigError,
    DeviceDiscoveryError,
    FrameError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    TransportTimeoutError,
)
from colorctl.core.model import (
    CALIBRATE,
    DISCONNECT,
    RECONNECT,
    SCAN,
    STATUS,
    CalibratedEvent,
    Command,
    CommandEvent,
    CommandKind,
    ConnectedEvent,
    ConnectingEvent,
    DetectedDevice,
    DeviceInfoEvent,
    DeviceState,
    DisconnectedEvent,
    ErrorEvent,
    Event,
    ExitEvent,
    PowerLevelEvent,
    ScanEvent,
    ScanResult,
    Triple,
)
from colorctl.core.service import ColorimeterService
from colorctl.transports.base import DeviceLink, LinkProvider

__all__ = [
    "ColorctlError",
    "BusLagged",
    "CharacteristicMissingError",
    "ConfigError",
    "DeviceDiscoveryError",
    "FrameError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "TransportTimeoutError",
    "Command",
    "CommandKind",
    "SCAN",
    "CALIBRATE",
    "STATUS",
    "RECONNECT",
    "DISCONNECT",
    "Event",
    "ExitEvent",
    "ErrorEvent",
    "ScanEvent",
    "ConnectingEvent",
    "ConnectedEvent",
    "DisconnectedEvent",
    "PowerLevelEvent",
    "DeviceInfoEvent",
    "CalibratedEvent",
    "CommandEvent",
    "ScanResult",
    "Triple",
    "DeviceState",
    "DetectedDevice",
    "EventBus",
    "Subscription",
    "Settings",
    "load_settings",
    "DeviceLink",
    "LinkProvider",
    "Client",
]


class Client:
    """Public client for driving a colorimeter from other programs.

    A `Client` wraps the event bus, the reconnection supervisor and the
    device link. Subscribe with `subscribe()` before `run()` to receive every
    event; issue commands with `send()`.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        provider: LinkProvider | None = None,
    ) -> None:
        self._service = ColorimeterService(settings or Settings(non_interactive=True), provider=provider)

    @property
    def settings(self) -> Settings:
        return self._service.settings

    @property
    def bus(self) -> EventBus:
        return self._service.bus

    def subscribe(self) -> Subscription:
        return self._service.bus.subscribe()

    def send(self, command: Command) -> None:
        self._service.bus.publish(CommandEvent(command))

    def stop(self) -> None:
        self._service.bus.publish(ExitEvent())

    async def run(self) -> None:
        await self._service.run()

    def list_devices(self) -> list[DetectedDevice]:
        return asyncio.run(self._service.list_devices())
