"""Device selection rules used during discovery."""

from __future__ import annotations

from collections.abc import Iterable

from colorctl.core.codec import NOTIFY_SERVICE_UUID, WRITE_SERVICE_UUID


def _normalize_address(address: str) -> str:
    return address.replace("-", ":").strip().upper()


def is_capable(service_uuids: Iterable[str]) -> bool:
    advertised = {uuid.lower() for uuid in service_uuids}
    return WRITE_SERVICE_UUID in advertised and NOTIFY_SERVICE_UUID in advertised


def address_matches(address: str, wanted: str) -> bool:
    return _normalize_address(address) == _normalize_address(wanted)
