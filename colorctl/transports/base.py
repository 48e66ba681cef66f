"""Transport interfaces."""

from __future__ import annotations

from typing import Protocol

from colorctl.core.model import DetectedDevice


class DeviceLink(Protocol):
    """One connection to a colorimeter over its write/notify characteristics."""

    address: str
    name: str | None

    async def connect(self) -> None:
        """Open the link."""

    async def discover(self) -> None:
        """Resolve the write and notify characteristics.

        Raises ``CharacteristicMissingError`` when either is absent.
        """

    async def subscribe(self) -> None:
        """Start delivering notifications to ``receive``."""

    async def receive(self) -> bytes | None:
        """Return the next notification, or ``None`` once the stream has ended."""

    async def write(self, frame: bytes) -> None:
        """Write one command frame."""

    async def unsubscribe(self) -> None:
        """Stop notifications."""

    async def disconnect(self) -> None:
        """Close the link."""


class LinkProvider(Protocol):
    async def find(self, address: str | None, timeout: float) -> DeviceLink:
        """Locate a device and return an unconnected link to it.

        Raises ``DeviceDiscoveryError`` when nothing suitable shows up in time.
        """

    async def discover(self, timeout: float) -> list[DetectedDevice]:
        """List devices seen during a scan of ``timeout`` seconds."""
