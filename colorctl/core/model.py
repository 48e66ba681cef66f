"""Core data models shared by the session, supervisor, and consumers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Union


class CommandKind(Enum):
    SCAN = "scan"
    CALIBRATE = "calibrate"
    STATUS = "status"
    CONNECT = "connect"
    RECONNECT = "reconnect"
    DISCONNECT = "disconnect"


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    address: str | None = None

    @classmethod
    def connect(cls, address: str) -> Command:
        return cls(CommandKind.CONNECT, address)

    def __str__(self) -> str:
        if self.address is not None:
            return f"{self.kind.value}({self.address})"
        return self.kind.value


SCAN = Command(CommandKind.SCAN)
CALIBRATE = Command(CommandKind.CALIBRATE)
STATUS = Command(CommandKind.STATUS)
RECONNECT = Command(CommandKind.RECONNECT)
DISCONNECT = Command(CommandKind.DISCONNECT)

# Commands a session turns into frames; everything else is lifecycle control.
DEVICE_COMMANDS = frozenset({CommandKind.SCAN, CommandKind.CALIBRATE, CommandKind.STATUS})


@dataclass(frozen=True)
class Triple:
    values: tuple[float, float, float] | tuple[int, int, int]

    def __iter__(self):
        return iter(self.values)

    def __str__(self) -> str:
        return ", ".join(f"{v:.2f}" if isinstance(v, float) else str(v) for v in self.values)


@dataclass(frozen=True)
class ScanResult:
    """One color measurement. ``index`` counts results within a session, from 1."""

    index: int
    lab: Triple
    luv: Triple
    lch: Triple
    yxy: Triple
    rgb: Triple


@dataclass(frozen=True)
class ExitEvent:
    tag: ClassVar[str] = "exit"


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    tag: ClassVar[str] = "error"


@dataclass(frozen=True)
class ScanEvent:
    result: ScanResult
    tag: ClassVar[str] = "scan"


@dataclass(frozen=True)
class ConnectingEvent:
    address: str | None = None
    name: str | None = None
    tag: ClassVar[str] = "connecting"


@dataclass(frozen=True)
class ConnectedEvent:
    address: str
    name: str | None = None
    tag: ClassVar[str] = "connected"


@dataclass(frozen=True)
class DisconnectedEvent:
    tag: ClassVar[str] = "disconnected"


@dataclass(frozen=True)
class PowerLevelEvent:
    value: int
    tag: ClassVar[str] = "power_level"


@dataclass(frozen=True)
class DeviceInfoEvent:
    values: tuple[int, ...]
    tag: ClassVar[str] = "device_info"


@dataclass(frozen=True)
class CalibratedEvent:
    tag: ClassVar[str] = "calibrated"


@dataclass(frozen=True)
class CommandEvent:
    command: Command
    tag: ClassVar[str] = "command"


@dataclass(frozen=True)
class CommandQueueEvent:
    commands: tuple[Command, ...]
    tag: ClassVar[str] = "command_queue"


Event = Union[
    ExitEvent,
    ErrorEvent,
    ScanEvent,
    ConnectingEvent,
    ConnectedEvent,
    DisconnectedEvent,
    PowerLevelEvent,
    DeviceInfoEvent,
    CalibratedEvent,
    CommandEvent,
    CommandQueueEvent,
]


@dataclass
class DeviceState:
    """Device state folded from bus events, owned by a single consumer."""

    connected: bool = False
    connecting: bool = False
    device_address: str | None = None
    device_name: str | None = None
    power_level: int | None = None
    device_info_raw: tuple[int, ...] | None = None
    calibrated_at: datetime | None = None

    def apply(self, event: Event) -> None:
        if isinstance(event, ConnectingEvent):
            self.connecting = True
            self.connected = False
            self.device_address = event.address
            self.device_name = event.name
        elif isinstance(event, ConnectedEvent):
            self.connecting = False
            self.connected = True
            self.device_address = event.address
            self.device_name = event.name
        elif isinstance(event, DisconnectedEvent):
            self.connected = False
            self.connecting = False
        elif isinstance(event, PowerLevelEvent):
            self.power_level = event.value
        elif isinstance(event, DeviceInfoEvent):
            self.device_info_raw = event.values
        elif isinstance(event, CalibratedEvent):
            self.calibrated_at = datetime.now(timezone.utc)

    def as_dict(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "connecting": self.connecting,
            "device_address": self.device_address,
            "device_name": self.device_name,
            "power_level": self.power_level,
            "device_info": list(self.device_info_raw) if self.device_info_raw is not None else None,
            "calibrated": self.calibrated_at.isoformat() if self.calibrated_at else None,
        }


@dataclass(frozen=True)
class DetectedDevice:
    address: str
    name: str | None
    capable: bool = False
