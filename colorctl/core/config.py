"""Settings loading: defaults, an optional YAML file, then command-line overrides."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from importlib import resources
from pathlib import Path
from typing import Any, Mapping

import yaml
from jsonschema import ValidationError, validators

from colorctl.core.errors import ConfigError
from colorctl.core.model import CALIBRATE, SCAN, STATUS, Command

LOGGER = logging.getLogger(__name__)

OUTPUT_FORMATS = ("text", "json")
LOG_LEVELS = ("error", "warning", "info", "debug", "trace")
INITIAL_COMMANDS: dict[str, Command] = {"status": STATUS, "calibrate": CALIBRATE, "scan": SCAN}


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class Settings:
    device: str | None = None
    output_format: str = "text"
    non_interactive: bool = False
    log_level: str = "info"
    find_timeout: float = 5.0
    connect_timeout: float = 10.0
    reconnect_attempts: int = 3
    reconnect_interval: float = 5.0
    keepalive_interval: float = 30.0
    duplicate_window: float = 0.3
    remain: bool = False
    commands: tuple[str, ...] = ()
    listen: tuple[str, int] | None = None
    bus_capacity: int = 32

    @property
    def initial_commands(self) -> list[Command]:
        return [INITIAL_COMMANDS[name] for name in self.commands]


# YAML keys that differ from the attribute they set.
_FILE_KEYS = {"format": "output_format"}


def parse_listen(value: str) -> tuple[str, int]:
    host, sep, port_text = value.rpartition(":")
    if not sep or not host or not port_text:
        raise ConfigError(f"Listen address must look like HOST:PORT, got '{value}'")
    try:
        port = int(port_text)
    except ValueError as exc:
        raise ConfigError(f"Invalid listen port '{port_text}'") from exc
    if not 0 < port < 65536:
        raise ConfigError(f"Listen port out of range: {port}")
    return host.strip("[]"), port


def normalize_commands(names: list[str] | tuple[str, ...]) -> tuple[str, ...]:
    lowered = {name.strip().lower() for name in names}
    unknown = lowered - set(INITIAL_COMMANDS)
    if unknown:
        allowed = ", ".join(INITIAL_COMMANDS)
        raise ConfigError(f"Unknown initial command(s) {', '.join(sorted(unknown))}. Allowed: {allowed}")
    # Status first, then calibrate, then scan, whatever order they were given in.
    return tuple(name for name in INITIAL_COMMANDS if name in lowered)


def default_config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "colorctl" / "config.yaml"


def _load_schema_validator() -> Any:
    schema_text = resources.files("colorctl.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at root")
    return loaded


def _from_document(doc: Mapping[str, Any], source: Path | str) -> dict[str, Any]:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigError(f"Invalid configuration in {source}{where}: {exc.message}") from exc

    values: dict[str, Any] = {}
    for key, value in doc.items():
        values[_FILE_KEYS.get(key, key)] = value
    return values


def _coerce(values: dict[str, Any]) -> dict[str, Any]:
    coerced = dict(values)
    if coerced.get("device") is not None:
        # Same address pattern the config file is held to.
        errors = list(_load_schema_validator().iter_errors({"device": coerced["device"]}))
        if errors:
            raise ConfigError(f"Invalid device address '{coerced['device']}': {errors[0].message}")
    if "output_format" in coerced:
        fmt = str(coerced["output_format"]).lower()
        if fmt not in OUTPUT_FORMATS:
            raise ConfigError(f"Unknown output format: {coerced['output_format']}")
        coerced["output_format"] = fmt
    if "log_level" in coerced:
        level = str(coerced["log_level"]).lower()
        if level == "warn":
            level = "warning"
        if level not in LOG_LEVELS:
            raise ConfigError(f"Unknown log level: {coerced['log_level']}")
        coerced["log_level"] = level
    if "commands" in coerced:
        coerced["commands"] = normalize_commands(coerced["commands"])
    if isinstance(coerced.get("listen"), str):
        coerced["listen"] = parse_listen(coerced["listen"])
    for key in ("find_timeout", "connect_timeout", "reconnect_interval", "keepalive_interval", "duplicate_window"):
        if key in coerced:
            coerced[key] = float(coerced[key])
            if coerced[key] < 0:
                raise ConfigError(f"{key} must not be negative")
    if coerced.get("keepalive_interval") == 0:
        raise ConfigError("keepalive_interval must be positive")
    if "reconnect_attempts" in coerced and int(coerced["reconnect_attempts"]) < 0:
        raise ConfigError("reconnect_attempts must not be negative")
    if "bus_capacity" in coerced and int(coerced["bus_capacity"]) < 1:
        raise ConfigError("bus_capacity must be at least 1")
    return coerced


def load_settings(
    config_path: Path | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Build settings from defaults, a YAML file, and explicit overrides.

    ``config_path`` must exist when given; otherwise the default location is
    used if present. Overrides whose value is ``None`` are ignored so that
    command-line options left unset do not mask the file.
    """
    values: dict[str, Any] = {}

    path = config_path
    if path is None:
        candidate = default_config_path()
        if candidate.is_file():
            path = candidate
    if path is not None:
        LOGGER.debug("loading config from %s", path)
        values.update(_from_document(_read_yaml(path), path))

    known = {f.name for f in fields(Settings)}
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key not in known:
            raise ConfigError(f"Unknown setting '{key}'")
        values[key] = value

    return replace(Settings(), **_coerce(values))
