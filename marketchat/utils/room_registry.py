from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Protocol, Set

from marketchat.core.logging import get_logger


logger = get_logger(__name__)


class ConnectionHandle(Protocol):
    """A live real-time connection the registry can address."""

    connection_id: str

    async def send(self, event: str, data: Any) -> None:
        ...

    async def close(self, code: int) -> None:
        ...


@dataclass
class DroppedConnection:
    connection_id: str
    user_id: Optional[str]
    rooms: Set[str] = field(default_factory=set)


class RoomRegistry:
    """
    In-memory presence and room membership for one gateway process.

    rooms:          conversation_id -> connection ids subscribed to it
    subscriptions:  connection_id -> conversation ids it is subscribed to
    users:          connection_id -> authenticated user id
    user_connections: user_id -> connection ids owned by that user

    All mutations are plain dict/set operations with no awaits in between, so
    they are atomic under the event loop.
    """

    def __init__(self) -> None:
        self._handles: Dict[str, ConnectionHandle] = {}
        self._users: Dict[str, str] = {}
        self._user_connections: Dict[str, Set[str]] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._subscriptions: Dict[str, Set[str]] = {}
        self._participants: Dict[str, FrozenSet[str]] = {}

    def register_connection(self, handle: ConnectionHandle, user_id: str) -> None:
        conn_id = handle.connection_id
        if conn_id in self._users:
            return
        self._handles[conn_id] = handle
        self._users[conn_id] = user_id
        self._subscriptions[conn_id] = set()
        self._user_connections.setdefault(user_id, set()).add(conn_id)
        logger.info("User %s connected (%s). Total: %d", user_id, conn_id, len(self._users))

    def user_of(self, connection_id: str) -> Optional[str]:
        return self._users.get(connection_id)

    def cache_participants(self, conversation_id: str, participants: Iterable[str]) -> None:
        self._participants[conversation_id] = frozenset(participants)

    def participants_of(self, conversation_id: str) -> Optional[FrozenSet[str]]:
        return self._participants.get(conversation_id)

    def join(self, connection_id: str, conversation_id: str) -> bool:
        user_id = self._users.get(connection_id)
        if user_id is None:
            return False
        participants = self._participants.get(conversation_id)
        if participants is None or user_id not in participants:
            logger.warning("Ignoring join of %s to conversation %s: not a participant", user_id, conversation_id)
            if conversation_id not in self._rooms:
                self._participants.pop(conversation_id, None)
            return False
        self._rooms.setdefault(conversation_id, set()).add(connection_id)
        self._subscriptions[connection_id].add(conversation_id)
        logger.info("%s joined conversation %s (%d connections)", user_id, conversation_id, len(self._rooms[conversation_id]))
        return True

    def leave(self, connection_id: str, conversation_id: str) -> bool:
        subscribed = self._subscriptions.get(connection_id)
        if not subscribed or conversation_id not in subscribed:
            return False
        subscribed.discard(conversation_id)
        self._discard_from_room(conversation_id, connection_id)
        return True

    def drop_connection(self, connection_id: str) -> Optional[DroppedConnection]:
        if connection_id not in self._users:
            # already dropped by an earlier disconnect signal
            return None
        user_id = self._users.pop(connection_id)
        rooms = self._subscriptions.pop(connection_id, set())
        for conversation_id in rooms:
            self._discard_from_room(conversation_id, connection_id)
        owned = self._user_connections.get(user_id)
        if owned is not None:
            owned.discard(connection_id)
            if not owned:
                del self._user_connections[user_id]
        self._handles.pop(connection_id, None)
        logger.info("User %s disconnected (%s). Total: %d", user_id, connection_id, len(self._users))
        return DroppedConnection(connection_id=connection_id, user_id=user_id, rooms=rooms)

    def is_subscribed(self, connection_id: str, conversation_id: str) -> bool:
        return conversation_id in self._subscriptions.get(connection_id, ())

    def room_members(self, conversation_id: str) -> List[ConnectionHandle]:
        return [self._handles[c] for c in list(self._rooms.get(conversation_id, ())) if c in self._handles]

    def user_connections(self, user_id: str) -> List[ConnectionHandle]:
        return [self._handles[c] for c in list(self._user_connections.get(user_id, ())) if c in self._handles]

    def is_online(self, user_id: str) -> bool:
        return bool(self._user_connections.get(user_id))

    def stats(self) -> Dict[str, int]:
        return {
            "connections": len(self._users),
            "online_users": len(self._user_connections),
            "active_rooms": len(self._rooms),
        }

    def _discard_from_room(self, conversation_id: str, connection_id: str) -> None:
        members = self._rooms.get(conversation_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            # the participant cache lives only as long as the room
            del self._rooms[conversation_id]
            self._participants.pop(conversation_id, None)
