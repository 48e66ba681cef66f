"""Websocket broadcaster: relays bus events to network clients and takes commands back.

Every client gets a ``["state", {...}]`` snapshot on connect, then one JSON
array per bus event. Clients send ``[command_name, ...args]`` arrays.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from colorctl.core.bus import EventBus
from colorctl.core.errors import BusLagged
from colorctl.core.model import (
    CALIBRATE,
    DISCONNECT,
    RECONNECT,
    SCAN,
    STATUS,
    CommandEvent,
    DeviceState,
    Event,
    ExitEvent,
)
from colorctl.output import event_message

LOGGER = logging.getLogger(__name__)

INVALID_MESSAGE = ["error", "invalid message"]
INVALID_COMMAND = ["error", "invalid command"]

CLIENT_COMMANDS: dict[str, Event] = {
    "exit": ExitEvent(),
    "calibrate": CommandEvent(CALIBRATE),
    "scan": CommandEvent(SCAN),
    "status": CommandEvent(STATUS),
    "disconnect": CommandEvent(DISCONNECT),
    "reconnect": CommandEvent(RECONNECT),
}


class InvalidMessage(ValueError):
    def __init__(self, reply: list[str]) -> None:
        super().__init__(reply[1])
        self.reply = reply


def parse_client_message(text: str) -> Event:
    try:
        message = json.loads(text)
    except ValueError as exc:
        raise InvalidMessage(INVALID_MESSAGE) from exc
    if not isinstance(message, list) or not message or not isinstance(message[0], str):
        raise InvalidMessage(INVALID_MESSAGE)
    event = CLIENT_COMMANDS.get(message[0])
    if event is None:
        raise InvalidMessage(INVALID_COMMAND)
    return event


class Broadcaster:
    """Keeps the state snapshot handed to newly connected clients."""

    def __init__(self, bus: EventBus) -> None:
        self.state = DeviceState()
        self._subscription = bus.subscribe()

    async def run(self) -> None:
        try:
            async for event in self._subscription:
                if isinstance(event, ExitEvent):
                    break
                self.state.apply(event)
        finally:
            self._subscription.close()


class ClientConnection:
    def __init__(self, websocket: WebSocket, bus: EventBus, snapshot: dict[str, Any]) -> None:
        self._websocket = websocket
        self._bus = bus
        self._snapshot = snapshot
        self._subscription = bus.subscribe()

    @property
    def peer(self) -> str:
        client = self._websocket.client
        return f"{client.host}:{client.port}" if client else "unknown"

    async def run(self) -> None:
        websocket = self._websocket
        inbound: asyncio.Future[Any] | None = None
        outbound: asyncio.Future[Event] | None = None
        try:
            await websocket.accept()
            LOGGER.info("Connection from: %s", self.peer)
            await websocket.send_json(["state", self._snapshot])
            while True:
                if inbound is None:
                    inbound = asyncio.ensure_future(websocket.receive())
                if outbound is None:
                    outbound = asyncio.ensure_future(self._subscription.recv())
                done, _ = await asyncio.wait({inbound, outbound}, return_when=asyncio.FIRST_COMPLETED)

                if inbound in done:
                    message = inbound.result()
                    inbound = None
                    if message["type"] == "websocket.disconnect":
                        break
                    await self._handle_inbound(message)

                if outbound in done:
                    try:
                        event = outbound.result()
                    except BusLagged as exc:
                        LOGGER.warning("client %s %s", self.peer, exc)
                        outbound = None
                        continue
                    outbound = None
                    if isinstance(event, ExitEvent):
                        await websocket.close()
                        break
                    payload = event_message(event)
                    if payload is not None:
                        await websocket.send_json(payload)
        finally:
            for task in (inbound, outbound):
                if task is not None and not task.done():
                    task.cancel()
            self._subscription.close()
            LOGGER.info("Connection closed: %s", self.peer)

    async def _handle_inbound(self, message: dict[str, Any]) -> None:
        text = message.get("text")
        if text is None:
            await self._websocket.send_json(INVALID_MESSAGE)
            return
        LOGGER.debug("From %s: %s", self.peer, text)
        try:
            event = parse_client_message(text)
        except InvalidMessage as exc:
            await self._websocket.send_json(exc.reply)
            return
        self._bus.publish(event)


def create_app(bus: EventBus, broadcaster: Broadcaster) -> FastAPI:
    app = FastAPI(title="colorctl broadcaster")

    @app.websocket("/")
    async def events(websocket: WebSocket) -> None:
        connection = ClientConnection(websocket, bus, broadcaster.state.as_dict())
        try:
            await connection.run()
        except (WebSocketDisconnect, RuntimeError) as exc:
            LOGGER.warning("connection error from %s: %s", connection.peer, exc)

    return app


async def serve(bus: EventBus, host: str, port: int) -> None:
    """Run the websocket server in the current loop until ``Exit``."""
    broadcaster = Broadcaster(bus)
    config = uvicorn.Config(
        create_app(bus, broadcaster),
        host=host,
        port=port,
        lifespan="off",
        log_level="warning",
    )
    server = uvicorn.Server(config)
    LOGGER.info("Listening on: %s:%d", host, port)
    server_task = asyncio.ensure_future(server.serve())
    try:
        await broadcaster.run()
    finally:
        server.should_exit = True
        await server_task
