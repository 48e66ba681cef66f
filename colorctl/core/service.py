"""Service layer used by the CLI and the public client."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Awaitable

from colorctl.core.bus import EventBus
from colorctl.core.config import Settings
from colorctl.core.model import DetectedDevice, ExitEvent
from colorctl.core.session import DeviceSession
from colorctl.core.supervisor import Supervisor
from colorctl.output import log_loop, make_formatter
from colorctl.transports.base import LinkProvider

LOGGER = logging.getLogger(__name__)


def _default_provider(settings: Settings) -> LinkProvider:
    from colorctl.transports.ble_gatt import BleakLinkProvider

    return BleakLinkProvider(connect_timeout=settings.connect_timeout)


class ColorimeterService:
    def __init__(self, settings: Settings, *, provider: LinkProvider | None = None) -> None:
        self.settings = settings
        self.provider = provider or _default_provider(settings)
        self.bus = EventBus(capacity=settings.bus_capacity)

    def new_session(self, bus: EventBus) -> DeviceSession:
        return DeviceSession(bus, self.provider, self.settings)

    async def list_devices(self) -> list[DetectedDevice]:
        return await self.provider.discover(self.settings.find_timeout)

    async def run(self) -> None:
        """Run supervisor and consumers until an ``Exit`` event goes round."""
        settings = self.settings
        bus = self.bus
        interactive = not settings.non_interactive
        formatter = make_formatter(settings.output_format)

        supervisor = Supervisor(
            bus,
            settings,
            self.new_session,
            exit_when_idle=not interactive and settings.listen is None,
        )
        jobs: list[Awaitable[None]] = [
            log_loop(bus.subscribe(), None if interactive else formatter),
        ]
        if interactive:
            from colorctl.console import console_loop, open_stdin_reader

            reader = await open_stdin_reader()
            jobs.append(console_loop(bus, formatter, reader))
        if settings.listen is not None:
            from colorctl.server import serve

            host, port = settings.listen
            jobs.append(serve(bus, host, port))
        # Consumers must subscribe before the first session publishes.
        jobs.append(supervisor.run())

        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._request_exit, sig)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                LOGGER.debug("cannot install handler for %s", sig)
        try:
            await asyncio.gather(*jobs)
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    def _request_exit(self, sig: signal.Signals) -> None:
        LOGGER.info("Received %s, shutting down", sig.name)
        self.bus.publish(ExitEvent())
