import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set, Tuple

from redis.exceptions import RedisError

from marketchat.core.logging import get_logger
from marketchat.utils.realtime_bus import GATEWAY_CHANNEL, NoopBus, RedisBus
from marketchat.utils.room_registry import ConnectionHandle, RoomRegistry


logger = get_logger(__name__)

# close code sent when the setup handshake carries an invalid identity
AUTH_FAILED_CLOSE_CODE = 4401

Authenticator = Callable[[Optional[str]], Awaitable[Optional[str]]]
ParticipantLookup = Callable[[str], Awaitable[Optional[Iterable[str]]]]


class TypingTracker:
    """Users flagged as typing per conversation, each with an expiry timer."""

    def __init__(self, quiet_period: float, on_expire: Callable[[str, str, str], None]) -> None:
        self._quiet_period = quiet_period
        self._on_expire = on_expire
        # (conversation_id, user_id) -> (connection_id, timer)
        self._entries: Dict[Tuple[str, str], Tuple[str, asyncio.TimerHandle]] = {}

    def mark(self, conversation_id: str, user_id: str, connection_id: str) -> bool:
        """Flag or renew; returns True on an idle-to-typing transition."""
        key = (conversation_id, user_id)
        previous = self._entries.pop(key, None)
        if previous is not None:
            previous[1].cancel()
        timer = asyncio.get_running_loop().call_later(self._quiet_period, self._expire, key)
        self._entries[key] = (connection_id, timer)
        return previous is None

    def clear(self, conversation_id: str, user_id: str) -> Optional[str]:
        entry = self._entries.pop((conversation_id, user_id), None)
        if entry is None:
            return None
        entry[1].cancel()
        return entry[0]

    def typing_users(self, conversation_id: str) -> Set[str]:
        return {uid for (cid, uid) in self._entries if cid == conversation_id}

    def clear_all(self) -> None:
        for _, timer in self._entries.values():
            timer.cancel()
        self._entries.clear()

    def _expire(self, key: Tuple[str, str]) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._on_expire(key[0], key[1], entry[0])


class RealtimeGateway:
    """
    Authenticated real-time endpoint logic.

    Client events: setup, join_chat, leave_chat, typing, stop_typing.
    Server pushes: connected, message_received, message_notification,
    message_updated, message_deleted, typing, stop_typing.

    Persistence never happens here. The REST message handlers call
    publish_message / publish_message_updated / publish_message_deleted once
    the store has accepted the change. Every push goes through dispatch(), which
    either delivers to the local registry or, with Redis configured, publishes
    an envelope that every process delivers to its own registry.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        bus: NoopBus | RedisBus,
        authenticate: Authenticator,
        lookup_participants: ParticipantLookup,
        typing_quiet_period: float = 3.0,
        presence_ttl: int = 60,
    ) -> None:
        self.registry = registry
        self.bus = bus
        self._authenticate = authenticate
        self._lookup_participants = lookup_participants
        self._presence_ttl = presence_ttl
        self.typing = TypingTracker(typing_quiet_period, self._on_typing_expired)
        self._tasks: Set[asyncio.Task] = set()
        self._handlers = {
            "setup": self.setup,
            "join_chat": self.join_chat,
            "leave_chat": self.leave_chat,
            "typing": self.start_typing,
            "stop_typing": self.stop_typing,
        }

    async def handle_event(self, handle: ConnectionHandle, event: Any, data: Any) -> None:
        handler = self._handlers.get(event) if isinstance(event, str) else None
        if handler is None:
            logger.debug("Dropping unknown event %r from %s", event, handle.connection_id)
            return
        if event != "setup" and self.registry.user_of(handle.connection_id) is None:
            logger.debug("Dropping %s from unauthenticated connection %s", event, handle.connection_id)
            return
        await handler(handle, data)

    async def handle_raw(self, handle: ConnectionHandle, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Dropping non-JSON frame from %s", handle.connection_id)
            return
        if not isinstance(frame, dict):
            return
        await self.handle_event(handle, frame.get("event"), frame.get("data"))

    # client events

    async def setup(self, handle: ConnectionHandle, data: Any) -> None:
        if self.registry.user_of(handle.connection_id) is not None:
            logger.debug("Ignoring repeated setup on %s", handle.connection_id)
            return
        token = data.get("token") if isinstance(data, dict) else None
        user_id = await self._authenticate(token)
        if user_id is None:
            logger.info("Rejected setup on %s: invalid identity", handle.connection_id)
            await handle.close(AUTH_FAILED_CLOSE_CODE)
            return
        self.registry.register_connection(handle, user_id)
        await self.bus.set_presence(user_id, ttl_seconds=self._presence_ttl)
        await handle.send("connected", {"user_id": user_id})

    async def join_chat(self, handle: ConnectionHandle, data: Any) -> None:
        conversation_id = _conversation_id(data)
        if conversation_id is None:
            return
        if self.registry.participants_of(conversation_id) is None:
            participants = await self._lookup_participants(conversation_id)
            if participants is None:
                logger.debug("Join for unknown conversation %s dropped", conversation_id)
                return
            self.registry.cache_participants(conversation_id, participants)
        self.registry.join(handle.connection_id, conversation_id)

    async def leave_chat(self, handle: ConnectionHandle, data: Any) -> None:
        conversation_id = _conversation_id(data)
        if conversation_id is None:
            return
        if self.registry.leave(handle.connection_id, conversation_id):
            await self._clear_typing(conversation_id, self.registry.user_of(handle.connection_id))

    async def start_typing(self, handle: ConnectionHandle, data: Any) -> None:
        conversation_id = _conversation_id(data)
        if conversation_id is None or not self.registry.is_subscribed(handle.connection_id, conversation_id):
            return
        user_id = self.registry.user_of(handle.connection_id)
        if self.typing.mark(conversation_id, user_id, handle.connection_id):
            await self.dispatch(_room_envelope(
                conversation_id, "typing",
                {"user_id": user_id, "conversation_id": conversation_id},
                exclude=handle.connection_id,
            ))

    async def stop_typing(self, handle: ConnectionHandle, data: Any) -> None:
        conversation_id = _conversation_id(data)
        if conversation_id is None or not self.registry.is_subscribed(handle.connection_id, conversation_id):
            return
        await self._clear_typing(conversation_id, self.registry.user_of(handle.connection_id))

    async def disconnect(self, handle: ConnectionHandle) -> None:
        dropped = self.registry.drop_connection(handle.connection_id)
        if dropped is None:
            return
        for conversation_id in dropped.rooms:
            await self._clear_typing(conversation_id, dropped.user_id)
        if dropped.user_id and not self.registry.is_online(dropped.user_id):
            await self.bus.clear_presence(dropped.user_id)

    # pushes triggered by the REST path

    async def publish_message(self, message: Dict[str, Any], participants: Iterable[str]) -> None:
        conversation_id = message["conversation_id"]
        # sender included so other tabs of the sender converge too
        await self.dispatch(_room_envelope(conversation_id, "message_received", message))
        for user_id in participants:
            await self.dispatch({
                "target": "user",
                "key": user_id,
                "event": "message_notification",
                "data": {"conversation_id": conversation_id, "message": message},
                "skip_room": conversation_id,
            })

    async def publish_message_updated(self, message: Dict[str, Any]) -> None:
        await self.dispatch(_room_envelope(message["conversation_id"], "message_updated", message))

    async def publish_message_deleted(self, message_id: str, conversation_id: str) -> None:
        await self.dispatch(_room_envelope(
            conversation_id, "message_deleted", {"id": message_id, "conversation_id": conversation_id}
        ))

    # delivery

    async def dispatch(self, envelope: Dict[str, Any]) -> None:
        if self.bus.enabled:
            try:
                await self.bus.publish(GATEWAY_CHANNEL, json.dumps(envelope))
                return
            except RedisError as exc:
                # fall back to this process's own sockets
                logger.error("Publishing %s to Redis failed: %s", envelope.get("event"), exc)
        await self.deliver(envelope)

    async def on_bus_message(self, raw: str) -> None:
        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed gateway envelope")
            return
        if not isinstance(envelope, dict):
            logger.warning("Ignoring gateway envelope of type %s", type(envelope).__name__)
            return
        await self.deliver(envelope)

    async def deliver(self, envelope: Dict[str, Any]) -> None:
        target, key = envelope.get("target"), envelope.get("key")
        if target == "room":
            handles = self.registry.room_members(key)
        elif target == "user":
            handles = self.registry.user_connections(key)
        else:
            logger.warning("Ignoring envelope with unknown target %r", target)
            return
        exclude = envelope.get("exclude")
        skip_room = envelope.get("skip_room")
        failed = []
        for handle in handles:
            if handle.connection_id == exclude:
                continue
            if skip_room and self.registry.is_subscribed(handle.connection_id, skip_room):
                continue
            try:
                await handle.send(envelope["event"], envelope.get("data"))
            except Exception as exc:
                logger.error("Send to %s failed: %s", handle.connection_id, exc)
                failed.append(handle)
        for handle in failed:
            await self.disconnect(handle)

    async def shutdown(self) -> None:
        self.typing.clear_all()
        for task in list(self._tasks):
            task.cancel()

    # internals

    async def _clear_typing(self, conversation_id: str, user_id: Optional[str]) -> None:
        if user_id is None:
            return
        connection_id = self.typing.clear(conversation_id, user_id)
        if connection_id is not None:
            await self.dispatch(_room_envelope(
                conversation_id, "stop_typing",
                {"user_id": user_id, "conversation_id": conversation_id},
                exclude=connection_id,
            ))

    def _on_typing_expired(self, conversation_id: str, user_id: str, connection_id: str) -> None:
        self._spawn(self.dispatch(_room_envelope(
            conversation_id, "stop_typing",
            {"user_id": user_id, "conversation_id": conversation_id},
            exclude=connection_id,
        )))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


def _conversation_id(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        data = data.get("conversation_id")
    if isinstance(data, str) and data:
        return data
    return None


def _room_envelope(conversation_id: str, event: str, data: Any, exclude: Optional[str] = None) -> Dict[str, Any]:
    return {"target": "room", "key": conversation_id, "event": event, "data": data, "exclude": exclude}
