import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import jwt
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorDatabase

from marketchat.core.config import settings
from marketchat.core.logging import get_logger, setup_logging
from marketchat.database.connection import close_mongo_connection, connect_to_mongo
from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.repositories.user_repository import UserRepository
from marketchat.routers.conversations import router as conversations_router
from marketchat.routers.gateway import router as gateway_router
from marketchat.routers.messages import router as messages_router
from marketchat.routers.presence import router as presence_router
from marketchat.services.chat_service import ChatService
from marketchat.services.exceptions import ChatError
from marketchat.services.gateway import RealtimeGateway
from marketchat.utils.realtime_bus import GATEWAY_CHANNEL, NoopBus, RedisBus, close_bus, get_bus
from marketchat.utils.room_registry import RoomRegistry
from marketchat.utils.security import decode_access_token


setup_logging()
logger = get_logger(__name__)


def build_gateway(db: AsyncIOMotorDatabase, bus: NoopBus | RedisBus) -> RealtimeGateway:
    users = UserRepository(db)
    chat = ChatService(MessageRepository(db), ConversationRepository(db), users)

    async def authenticate(token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        try:
            payload = decode_access_token(token)
        except jwt.InvalidTokenError:
            return None
        user = await users.get_user_by_id(payload["sub"])
        return user["_id"] if user else None

    return RealtimeGateway(
        registry=RoomRegistry(),
        bus=bus,
        authenticate=authenticate,
        lookup_participants=chat.get_participants,
        typing_quiet_period=settings.TYPING_QUIET_PERIOD,
        presence_ttl=settings.PRESENCE_TTL_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):

    db = await connect_to_mongo()
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()

    bus = get_bus()
    gateway = build_gateway(db, bus)
    app.state.gateway = gateway

    subscription = await bus.subscribe(GATEWAY_CHANNEL, gateway.on_bus_message)
    listener = asyncio.create_task(subscription.run())
    logger.info("Real-time gateway ready")
    try:
        yield
    finally:
        listener.cancel()
        await subscription.cancel()
        await gateway.shutdown()
        await close_bus()
        await close_mongo_connection()


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app(use_lifespan: bool = True) -> FastAPI:
    app = FastAPI(title="Marketplace chat", lifespan=lifespan if use_lifespan else None)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ChatError, chat_error_handler)

    app.include_router(conversations_router)
    app.include_router(messages_router)
    app.include_router(presence_router)
    app.include_router(gateway_router)

    @app.get("/")
    async def root(request: Request):
        gateway: RealtimeGateway = request.app.state.gateway
        return {"status": "ok", "distributed": gateway.bus.enabled, **gateway.registry.stats()}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("marketchat.main:app", host="0.0.0.0", port=8000)
