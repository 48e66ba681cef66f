"""Binary frame codec for the colorimeter notify/write characteristics.

Outbound commands are fixed, pre-built frames. Inbound notifications start
with the ``0xAB`` sentinel followed by two kind bytes; multi-byte values are
little-endian signed 16-bit integers, color components scaled by 100.
"""

from __future__ import annotations

import struct
from enum import Enum

from colorctl.core.errors import FrameError
from colorctl.core.model import (
    CalibratedEvent,
    Command,
    CommandKind,
    DeviceInfoEvent,
    Event,
    PowerLevelEvent,
    ScanResult,
    Triple,
)

WRITE_SERVICE_UUID = "0000ffe5-0000-1000-8000-00805f9b34fb"
WRITE_CHAR_UUID = "0000ffe9-0000-1000-8000-00805f9b34fb"
NOTIFY_SERVICE_UUID = "0000ffe0-0000-1000-8000-00805f9b34fb"
NOTIFY_CHAR_UUID = "0000ffe4-0000-1000-8000-00805f9b34fb"

SCAN_FRAME = bytes.fromhex("AB440000000036001864")
# Device answers with AB202E00020000002DF4.
CALIBRATE_FRAME = bytes.fromhex("AB202E000200904F")
BATTERY_FRAME = bytes.fromhex("AB200B0002009B43")
INFO_FRAME = bytes.fromhex("AB400000000014004504")

SENTINEL = 0xAB
COLOR_SCALE = 100.0

_SCAN_HEADER_LEN = 8
_SCAN_TRIPLES = struct.Struct("<12h")
_SCAN_RGB_OFFSET = _SCAN_HEADER_LEN + _SCAN_TRIPLES.size + 4
_SCAN_MIN_LEN = _SCAN_RGB_OFFSET + 3
_POWER_LEVEL = struct.Struct("<h")
_POWER_LEVEL_OFFSET = 6
_DEVICE_INFO = struct.Struct("<15h")
_DEVICE_INFO_OFFSET = 10


class FrameKind(Enum):
    SCAN_RESULT = (0x44, 0x00)
    CALIBRATED = (0x20, 0x2E)
    POWER_LEVEL = (0x20, 0x0B)
    DEVICE_INFO = (0x40, 0x00)


_KINDS = {kind.value: kind for kind in FrameKind}

_COMMAND_FRAMES: dict[CommandKind, tuple[bytes, ...]] = {
    CommandKind.SCAN: (SCAN_FRAME,),
    CommandKind.CALIBRATE: (CALIBRATE_FRAME,),
    CommandKind.STATUS: (INFO_FRAME, BATTERY_FRAME),
}


def encode_command(command: Command) -> tuple[bytes, ...]:
    """Return the frames to write for ``command``, in order.

    Lifecycle commands (connect, reconnect, disconnect) have no wire form.
    """
    return _COMMAND_FRAMES.get(command.kind, ())


def classify(frame: bytes) -> FrameKind:
    if len(frame) < 3:
        raise FrameError(f"Message too short: {frame.hex()}")
    if frame[0] != SENTINEL:
        raise FrameError(f"Unknown message: {frame.hex()}")
    # Scan results are identified by the first kind byte alone.
    if frame[1] == 0x44:
        return FrameKind.SCAN_RESULT
    kind = _KINDS.get((frame[1], frame[2]))
    if kind is None:
        raise FrameError(f"Unknown message: {frame.hex()}")
    return kind


def _require(frame: bytes, size: int, what: str) -> None:
    if len(frame) < size:
        raise FrameError(f"Truncated {what} message ({len(frame)} < {size} bytes): {frame.hex()}")


def parse_scan_result(index: int, frame: bytes) -> ScanResult:
    _require(frame, _SCAN_MIN_LEN, "scan result")
    raw = _SCAN_TRIPLES.unpack_from(frame, _SCAN_HEADER_LEN)
    values = [round(v / COLOR_SCALE, 2) for v in raw]
    # Four bytes between yxY and RGB carry an unused CMYK-like value.
    rgb = frame[_SCAN_RGB_OFFSET:_SCAN_MIN_LEN]
    return ScanResult(
        index=index,
        lab=Triple(tuple(values[0:3])),
        luv=Triple(tuple(values[3:6])),
        lch=Triple(tuple(values[6:9])),
        yxy=Triple(tuple(values[9:12])),
        rgb=Triple(tuple(rgb)),
    )


def parse_power_level(frame: bytes) -> int:
    _require(frame, _POWER_LEVEL_OFFSET + _POWER_LEVEL.size, "power level")
    return _POWER_LEVEL.unpack_from(frame, _POWER_LEVEL_OFFSET)[0]


def parse_device_info(frame: bytes) -> tuple[int, ...]:
    _require(frame, _DEVICE_INFO_OFFSET + _DEVICE_INFO.size, "device info")
    return _DEVICE_INFO.unpack_from(frame, _DEVICE_INFO_OFFSET)


def decode(frame: bytes) -> Event | None:
    """Decode a non-scan notification into its event.

    Scan results need a session-scoped index and duplicate tracking, so they
    are left to ``parse_scan_result``; for them this returns ``None``.
    """
    kind = classify(frame)
    if kind is FrameKind.CALIBRATED:
        return CalibratedEvent()
    if kind is FrameKind.POWER_LEVEL:
        return PowerLevelEvent(parse_power_level(frame))
    if kind is FrameKind.DEVICE_INFO:
        return DeviceInfoEvent(parse_device_info(frame))
    return None
