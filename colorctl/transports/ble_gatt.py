"""BLE GATT transport implementation."""

from __future__ import annotations

import asyncio
import logging

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

from colorctl.core.codec import NOTIFY_CHAR_UUID, WRITE_CHAR_UUID
from colorctl.core.device_match import address_matches, is_capable
from colorctl.core.errors import (
    CharacteristicMissingError,
    DeviceDiscoveryError,
    TransportConnectError,
    TransportSendError,
    TransportTimeoutError,
)
from colorctl.core.model import DetectedDevice

LOGGER = logging.getLogger(__name__)


class BleakLink:
    def __init__(self, device: BLEDevice, name: str | None = None, *, connect_timeout: float = 10.0) -> None:
        self._device = device
        self.address = device.address
        self.name = name or device.name
        self._connect_timeout = connect_timeout
        self._client: BleakClient | None = None
        self._write_char: BleakGATTCharacteristic | None = None
        self._notify_char: BleakGATTCharacteristic | None = None
        self._notifications: asyncio.Queue[bytes | None] = asyncio.Queue()

    def _notification_handler(self, _sender: BleakGATTCharacteristic, data: bytearray) -> None:
        self._notifications.put_nowait(bytes(data))

    def _disconnected(self, _client: BleakClient) -> None:
        LOGGER.debug("%s: link reported disconnect", self.address)
        self._notifications.put_nowait(None)

    def _require_client(self) -> BleakClient:
        if self._client is None:
            raise TransportConnectError(f"Not connected to {self.address}")
        return self._client

    async def connect(self) -> None:
        self._client = BleakClient(
            self._device,
            disconnected_callback=self._disconnected,
            timeout=self._connect_timeout,
        )
        try:
            await self._client.connect()
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(f"BLE connect timed out for {self.address}") from exc
        except Exception as exc:
            raise TransportConnectError(f"BLE connect failed for {self.address}: {exc}") from exc

    async def discover(self) -> None:
        client = self._require_client()
        services = client.services
        self._notify_char = services.get_characteristic(NOTIFY_CHAR_UUID)
        self._write_char = services.get_characteristic(WRITE_CHAR_UUID)
        LOGGER.debug("notify_char = %s, write_char = %s", self._notify_char, self._write_char)
        if self._notify_char is None:
            raise CharacteristicMissingError("No notify characteristic found")
        if self._write_char is None:
            raise CharacteristicMissingError("No write characteristic found")

    async def subscribe(self) -> None:
        client = self._require_client()
        try:
            await client.start_notify(self._notify_char, self._notification_handler)
        except Exception as exc:
            raise TransportConnectError(f"BLE subscribe failed: {exc}") from exc

    async def receive(self) -> bytes | None:
        return await self._notifications.get()

    async def write(self, frame: bytes) -> None:
        client = self._require_client()
        try:
            await client.write_gatt_char(self._write_char, frame, response=False)
        except Exception as exc:
            raise TransportSendError(f"BLE write failed: {exc}") from exc

    async def unsubscribe(self) -> None:
        if self._client is None or self._notify_char is None or not self._client.is_connected:
            return
        try:
            await self._client.stop_notify(self._notify_char)
        except Exception as exc:
            raise TransportSendError(f"BLE unsubscribe failed: {exc}") from exc

    async def disconnect(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.disconnect()
        except Exception as exc:
            raise TransportConnectError(f"BLE disconnect failed: {exc}") from exc


class BleakLinkProvider:
    def __init__(self, *, connect_timeout: float = 10.0) -> None:
        self._connect_timeout = connect_timeout

    async def find(self, address: str | None, timeout: float) -> BleakLink:
        found: dict[str, str | None] = {}

        def _accept(device: BLEDevice, adv: AdvertisementData) -> bool:
            capable = is_capable(adv.service_uuids)
            LOGGER.debug("device %s (%s), capable = %s", device.address, adv.local_name, capable)
            # An explicit address wins over the capability check.
            if address is not None:
                matched = address_matches(device.address, address)
            else:
                matched = capable
            if matched:
                found[device.address] = adv.local_name
            return matched

        try:
            device = await BleakScanner.find_device_by_filter(_accept, timeout=timeout)
        except Exception as exc:
            raise DeviceDiscoveryError(f"Bluetooth discovery failed: {exc}") from exc
        if device is None:
            if address is not None:
                raise DeviceDiscoveryError(f"Device {address} not found within {timeout:g}s")
            raise DeviceDiscoveryError(f"No device found within {timeout:g}s")

        name = found.get(device.address)
        if address is None:
            LOGGER.info("Selected device: %s %s", device.address, name or device.name)
        return BleakLink(device, name, connect_timeout=self._connect_timeout)

    async def discover(self, timeout: float) -> list[DetectedDevice]:
        try:
            seen = await BleakScanner.discover(timeout=timeout, return_adv=True)
        except Exception as exc:
            raise DeviceDiscoveryError(f"Bluetooth discovery failed: {exc}") from exc

        devices: list[DetectedDevice] = []
        for device, adv in seen.values():
            devices.append(
                DetectedDevice(
                    address=device.address,
                    name=adv.local_name or device.name,
                    capable=is_capable(adv.service_uuids),
                )
            )
        return sorted(devices, key=lambda d: (not d.capable, d.address))
