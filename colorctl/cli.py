"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import typer

from colorctl.core.config import Settings, load_settings
from colorctl.core.errors import ColorctlError
from colorctl.core.service import ColorimeterService

app = typer.Typer(help="Control a Bluetooth colorimeter: scan, calibrate, and stream results")

LOG_FORMAT = "%(asctime)s %(levelname)-5s [%(name)s] %(message)s"


def _configure_logging(level: str) -> None:
    numeric = logging.DEBUG if level == "trace" else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric, format=LOG_FORMAT, stream=sys.stderr, force=True)
    if level != "trace":
        # Bleak debug output only at trace level.
        logging.getLogger("bleak").setLevel(max(numeric, logging.INFO))


def _build_service(settings: Settings) -> ColorimeterService:
    return ColorimeterService(settings)


def _initial_commands(status: bool, calibrate: bool, scan: bool) -> list[str] | None:
    names = [name for name, wanted in (("status", status), ("calibrate", calibrate), ("scan", scan)) if wanted]
    return names or None


@app.command("run")
def run_device(
    device: str | None = typer.Option(None, "--device", "-d", help="Address of the device to use (e.g. 00:11:22:33:44:55)"),
    output_format: str | None = typer.Option(None, "--format", "-f", help="Output format (text, json)"),
    non_interactive: bool | None = typer.Option(
        None, "--non-interactive/--interactive", help="Disable the interactive console"
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Log level (error, warn, info, debug, trace)"),
    find_timeout: float | None = typer.Option(None, "--find-timeout", help="Timeout to find the device, in seconds"),
    connect_timeout: float | None = typer.Option(None, "--connect-timeout", help="Timeout to connect, in seconds"),
    reconnect_attempts: int | None = typer.Option(
        None, "--reconnect-attempts", help="Consecutive failed attempts before giving up"
    ),
    reconnect_interval: float | None = typer.Option(
        None, "--reconnect-interval", help="Delay between reconnect attempts, in seconds"
    ),
    keepalive_interval: float | None = typer.Option(
        None, "--keepalive-interval", help="Request battery level after this many idle seconds"
    ),
    remain: bool | None = typer.Option(None, "--remain/--no-remain", help="Reconnect after the link drops"),
    status: bool = typer.Option(False, "--status", "-g", help="Get battery level and device info on launch"),
    calibrate: bool = typer.Option(False, "--calibrate", "-c", help="Calibrate on launch"),
    scan: bool = typer.Option(False, "--scan", "-s", help="Scan on launch"),
    listen: str | None = typer.Option(None, "--listen", help="Serve events over websocket on HOST:PORT"),
    config: Path | None = typer.Option(None, "--config", help="YAML config file"),
) -> None:
    """Connect to the colorimeter and stream its events."""
    try:
        settings = load_settings(
            config,
            {
                "device": device,
                "output_format": output_format,
                "non_interactive": non_interactive,
                "log_level": log_level,
                "find_timeout": find_timeout,
                "connect_timeout": connect_timeout,
                "reconnect_attempts": reconnect_attempts,
                "reconnect_interval": reconnect_interval,
                "keepalive_interval": keepalive_interval,
                "remain": remain,
                "commands": _initial_commands(status, calibrate, scan),
                "listen": listen,
            },
        )
        _configure_logging(settings.log_level)
        service = _build_service(settings)
        asyncio.run(service.run())
    except ColorctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("devices")
def list_devices(
    timeout: float | None = typer.Option(None, "--timeout", help="Scan duration in seconds"),
    config: Path | None = typer.Option(None, "--config", help="YAML config file"),
) -> None:
    """List discoverable Bluetooth devices; '*' marks colorimeters."""
    try:
        settings = load_settings(config, {"find_timeout": timeout})
        _configure_logging(settings.log_level)
        service = _build_service(settings)
        devices = asyncio.run(service.list_devices())
        if not devices:
            typer.echo("No Bluetooth devices found")
            return

        for device in devices:
            marker = "*" if device.capable else " "
            typer.echo(f"{marker} {device.address} {device.name or '<unknown-device>'}")
    except ColorctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
