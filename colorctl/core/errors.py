"""Domain-specific errors for colorctl."""


class ColorctlError(Exception):
    """Base error for colorctl."""


class ConfigError(ColorctlError):
    """Raised when settings or the config file are invalid."""


class DeviceDiscoveryError(ColorctlError):
    """Raised when no matching device can be found."""


class FrameError(ColorctlError):
    """Raised when a notification frame is malformed or unrecognized."""


class CharacteristicMissingError(ColorctlError):
    """Raised when the write or notify characteristic is absent."""


class TransportError(ColorctlError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised on link connect failures."""


class TransportSendError(TransportError):
    """Raised when writing a command frame fails."""


class TransportTimeoutError(TransportError):
    """Raised when connecting times out."""


class BusLagged(ColorctlError):
    """Raised to a subscriber that fell behind and lost events."""

    def __init__(self, missed: int) -> None:
        super().__init__(f"subscriber lagged, {missed} event(s) dropped")
        self.missed = missed
