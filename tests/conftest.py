import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

import mongomock
import pytest
from bson import ObjectId
from redis.exceptions import ConnectionError as RedisConnectionError

from marketchat.client.connection import ConnectionState
from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.repositories.user_repository import UserRepository
from marketchat.services.chat_service import ChatService
from marketchat.services.gateway import RealtimeGateway
from marketchat.utils.realtime_bus import NoopBus
from marketchat.utils.room_registry import RoomRegistry


def _naive_utc(value: Any) -> Any:
    # stored the way Mongo stores dates for a client without tz_aware
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.replace(microsecond=value.microsecond // 1000 * 1000)
    if isinstance(value, dict):
        return {k: _naive_utc(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(_naive_utc(v) for v in value)
    return value


class AsyncMockCursor:

    def __init__(self, cursor) -> None:
        self._cursor = cursor

    def sort(self, *args, **kwargs) -> "AsyncMockCursor":
        self._cursor.sort(*args, **kwargs)
        return self

    def limit(self, count: int) -> "AsyncMockCursor":
        self._cursor.limit(count)
        return self

    async def to_list(self, length=None) -> List[Dict[str, Any]]:
        items = list(self._cursor)
        return items if length is None else items[:length]


class AsyncMockCollection:
    """Awaitable facade over a mongomock collection, shaped like Motor's."""

    def __init__(self, collection) -> None:
        self._collection = collection

    async def create_index(self, keys, **kwargs):
        return self._collection.create_index(keys, **kwargs)

    async def find_one(self, filter=None, *args, **kwargs):
        return self._collection.find_one(_naive_utc(filter), *args, **kwargs)

    def find(self, filter=None, *args, **kwargs) -> AsyncMockCursor:
        return AsyncMockCursor(self._collection.find(_naive_utc(filter), *args, **kwargs))

    async def insert_one(self, document):
        return self._collection.insert_one(_naive_utc(document))

    async def update_one(self, filter, update, **kwargs):
        return self._collection.update_one(_naive_utc(filter), _naive_utc(update), **kwargs)

    async def delete_one(self, filter):
        return self._collection.delete_one(_naive_utc(filter))

    async def count_documents(self, filter, **kwargs):
        return self._collection.count_documents(_naive_utc(filter), **kwargs)


class AsyncMockDatabase:

    def __init__(self, database) -> None:
        self._database = database

    def __getitem__(self, name: str) -> AsyncMockCollection:
        return AsyncMockCollection(self._database[name])

    def get_collection(self, name: str) -> AsyncMockCollection:
        return self[name]


class UnreachableBus(NoopBus):
    """Redis-mode bus whose server is down."""

    enabled = True

    def __init__(self) -> None:
        self.attempts = 0

    async def publish(self, channel: str, message: str) -> None:
        self.attempts += 1
        raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")


class FakeHandle:
    """Gateway-side connection that records what it was sent."""

    def __init__(self, name: str = "conn") -> None:
        self.connection_id = f"{name}-{uuid.uuid4().hex[:8]}"
        self.sent: List[Tuple[str, Any]] = []
        self.closed_with = None
        self.fail = False

    async def send(self, event: str, data: Any) -> None:
        if self.fail:
            raise ConnectionError("socket gone")
        self.sent.append((event, data))

    async def close(self, code: int) -> None:
        self.closed_with = code

    def events(self, name: str) -> List[Any]:
        return [data for event, data in self.sent if event == name]


class LoopbackConnection:
    """
    Client connection wired straight into a RealtimeGateway: it is the
    gateway's handle for this session and the controller's GatewayConnection.
    """

    def __init__(self, gateway: RealtimeGateway, token: str) -> None:
        self.gateway = gateway
        self.token = token
        self.connection_id = uuid.uuid4().hex
        self.state = ConnectionState.IDLE
        self.emitted: List[Tuple[str, Any]] = []
        self._handlers: Dict[str, list] = {}
        self._pending: List[asyncio.Future] = []

    # gateway handle side
    async def send(self, event: str, data: Any) -> None:
        if event == "connected":
            self.state = ConnectionState.CONNECTED
        for handler in self._handlers.get(event, []):
            handler(data)

    async def close(self, code: int) -> None:
        self.state = ConnectionState.DISCONNECTED

    # controller side
    def on(self, event: str, handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def on_state_change(self, listener) -> None:
        return

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def emit(self, event: str, data: Any = None) -> None:
        self.emitted.append((event, data))
        self._pending.append(asyncio.ensure_future(self.gateway.handle_event(self, event, data)))

    async def connect(self) -> None:
        await self.gateway.handle_event(self, "setup", {"token": self.token})

    async def flush(self) -> None:
        while self._pending:
            await self._pending.pop(0)


class RecordingConnection:
    """Controller-side connection that only records emitted events."""

    def __init__(self, connected: bool = True) -> None:
        self.state = ConnectionState.CONNECTED if connected else ConnectionState.IDLE
        self.emitted: List[Tuple[str, Any]] = []
        self.handlers: Dict[str, list] = {}
        self.state_listeners = []

    def on(self, event: str, handler) -> None:
        self.handlers.setdefault(event, []).append(handler)

    def on_state_change(self, listener) -> None:
        self.state_listeners.append(listener)

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def emit(self, event: str, data: Any = None) -> None:
        self.emitted.append((event, data))

    def push(self, event: str, data: Any) -> None:
        for handler in self.handlers.get(event, []):
            handler(data)

    def names(self) -> List[str]:
        return [event for event, _ in self.emitted]


@pytest.fixture
def db():
    return AsyncMockDatabase(mongomock.MongoClient()[f"marketchat_test_{uuid.uuid4().hex[:6]}"])


@pytest.fixture
async def users(db) -> Dict[str, str]:
    ids = {}
    for name, role in (("alice", "client"), ("bob", "provider"), ("carol", "client")):
        oid = ObjectId()
        await db["users"].insert_one({"_id": oid, "name": name, "role": role, "password": "x"})
        ids[name] = str(oid)
    return ids


@pytest.fixture
async def chat_service(db) -> ChatService:
    conversations = ConversationRepository(db)
    messages = MessageRepository(db)
    await conversations.ensure_indexes()
    await messages.ensure_indexes()
    return ChatService(messages, conversations, UserRepository(db))


@pytest.fixture
def make_gateway(chat_service, users):
    tokens = {f"token-{name}": user_id for name, user_id in users.items()}

    async def authenticate(token):
        return tokens.get(token)

    def _make(quiet_period: float = 3.0, bus=None) -> RealtimeGateway:
        return RealtimeGateway(
            registry=RoomRegistry(),
            bus=bus or NoopBus(),
            authenticate=authenticate,
            lookup_participants=chat_service.get_participants,
            typing_quiet_period=quiet_period,
        )

    return _make
