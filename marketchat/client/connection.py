import asyncio
import json
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import WebSocketException

from marketchat.core.config import client_settings
from marketchat.core.logging import get_logger


logger = get_logger(__name__)

EventHandler = Callable[[Any], None]


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    # terminal: retries exhausted or closed by the owner
    DISCONNECTED = "disconnected"


class GatewayConnection:
    """
    Client side of the real-time gateway.

    Sends setup on every (re)connect, dispatches incoming events to registered
    handlers and retries a dropped or refused connection a fixed number of
    times with a fixed delay before settling in DISCONNECTED.
    """

    def __init__(
        self,
        token: str,
        url: str | None = None,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
        connect: Callable[[str], Any] = websockets.connect,
    ) -> None:
        self._token = token
        self._url = url or client_settings.GATEWAY_URL
        self.max_attempts = max_attempts if max_attempts is not None else client_settings.RECONNECT_ATTEMPTS
        self.retry_delay = retry_delay if retry_delay is not None else client_settings.RECONNECT_DELAY
        self._connect = connect
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._state_listeners: List[Callable[[ConnectionState], None]] = []
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._ws = None
        self._closing = False
        self.state = ConnectionState.IDLE
        self.attempts = 0

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def on_state_change(self, listener: Callable[[ConnectionState], None]) -> None:
        self._state_listeners.append(listener)

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def emit(self, event: str, data: Any = None) -> None:
        # fire-and-forget; nothing is buffered across a disconnect
        if not self.connected:
            logger.debug("Dropping %s while %s", event, self.state.value)
            return
        self._outbox.put_nowait({"event": event, "data": data})

    async def run(self) -> None:
        while not self._closing:
            self._set_state(ConnectionState.CONNECTING if self.attempts == 0 else ConnectionState.RECONNECTING)
            try:
                async with self._connect(self._url) as ws:
                    self._ws = ws
                    self._outbox = asyncio.Queue()
                    await ws.send(json.dumps({"event": "setup", "data": {"token": self._token}}))
                    writer = asyncio.create_task(self._drain(ws))
                    try:
                        async for raw in ws:
                            self._dispatch(raw)
                    finally:
                        writer.cancel()
                        self._ws = None
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                logger.warning("Gateway connection failed: %s", exc)

            if self._closing:
                break
            if self.state == ConnectionState.CONNECTED:
                # an established session dropped; start a fresh retry budget
                self.attempts = 0
            self.attempts += 1
            if self.attempts > self.max_attempts:
                logger.error("Unable to connect to chat server after %d attempts", self.max_attempts)
                break
            self._set_state(ConnectionState.RECONNECTING)
            await asyncio.sleep(self.retry_delay)

        self._set_state(ConnectionState.DISCONNECTED)

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        self._set_state(ConnectionState.DISCONNECTED)

    async def _drain(self, ws) -> None:
        while True:
            frame = await self._outbox.get()
            await ws.send(json.dumps(frame))

    def _dispatch(self, raw: Any) -> None:
        try:
            frame = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.debug("Ignoring malformed gateway frame")
            return
        if not isinstance(frame, dict):
            return
        event = frame.get("event")
        if event == "connected":
            self.attempts = 0
            self._set_state(ConnectionState.CONNECTED)
        for handler in self._handlers.get(event, []):
            handler(frame.get("data"))

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        self.state = state
        for listener in self._state_listeners:
            listener(state)
