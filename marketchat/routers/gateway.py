import asyncio
import uuid
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from marketchat.core.config import settings
from marketchat.core.logging import get_logger
from marketchat.services.gateway import RealtimeGateway


logger = get_logger(__name__)

router = APIRouter(tags=["realtime"])


class WebSocketConnection:
    """Registry handle wrapping one accepted WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.connection_id = uuid.uuid4().hex

    async def send(self, event: str, data: Any) -> None:
        await self.websocket.send_json({"event": event, "data": data})

    async def close(self, code: int) -> None:
        await self.websocket.close(code=code)


@router.websocket("/ws")
async def gateway_socket(websocket: WebSocket):
    # Protocol: JSON frames {"event": ..., "data": ...}; the first event must be
    # {"event": "setup", "data": {"token": "<jwt>"}}
    gateway: RealtimeGateway = websocket.app.state.gateway
    await websocket.accept()
    connection = WebSocketConnection(websocket)

    heartbeat_task = None
    if gateway.bus.enabled:
        async def _presence_heartbeat():
            while True:
                await asyncio.sleep(settings.PRESENCE_TTL_SECONDS / 2)
                user_id = gateway.registry.user_of(connection.connection_id)
                if user_id:
                    await gateway.bus.set_presence(user_id, ttl_seconds=settings.PRESENCE_TTL_SECONDS)
        heartbeat_task = asyncio.create_task(_presence_heartbeat())

    try:
        while True:
            raw = await websocket.receive_text()
            await gateway.handle_raw(connection, raw)
    except WebSocketDisconnect:
        logger.debug("Socket %s disconnected", connection.connection_id)
    except RuntimeError as exc:
        # receive after the gateway closed the socket (failed setup)
        logger.debug("Socket %s closed: %s", connection.connection_id, exc)
    finally:
        if heartbeat_task:
            heartbeat_task.cancel()
        await gateway.disconnect(connection)
