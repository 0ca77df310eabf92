import asyncio
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from marketchat.client.api import ApiError, ChatApiClient
from marketchat.client.connection import ConnectionState, GatewayConnection
from marketchat.core.config import client_settings
from marketchat.core.logging import get_logger


logger = get_logger(__name__)


@dataclass
class ErrorState:
    message: str
    retryable: bool = False


class ConversationController:
    """
    One session's view of "my conversations" and "the open thread".

    History comes from REST; live updates come from the gateway. Sent messages
    are never inserted locally: the gateway echoes every created message to
    all room members, the sender included, and receive_message de-duplicates by
    server id so every tab converges on the same list.
    """

    def __init__(
        self,
        user_id: str,
        api: ChatApiClient,
        connection: GatewayConnection,
        typing_quiet_period: float | None = None,
    ) -> None:
        self.user_id = user_id
        self.api = api
        self.connection = connection
        self.typing_quiet_period = typing_quiet_period if typing_quiet_period is not None else client_settings.TYPING_QUIET_PERIOD

        self.conversations: List[Dict[str, Any]] = []
        self.messages: List[Dict[str, Any]] = []
        self.active_conversation_id: Optional[str] = None
        self.unread_counts: Dict[str, int] = {}
        self.typing_users: Set[str] = set()
        self.error: Optional[ErrorState] = None
        self.loading = False
        self.sending = False
        self.connection_state = connection.state

        self._message_ids: Set[str] = set()
        # conversation_id -> message ids already counted as unread
        self._counted_unread: Dict[str, Set[str]] = {}
        self._open_generation = 0
        self._retry_action: Optional[Callable[[], Awaitable[bool]]] = None
        self._typing_signaled = False
        self._typing_timer: Optional[asyncio.TimerHandle] = None
        self._renew_timer: Optional[asyncio.TimerHandle] = None

        connection.on("connected", self._on_connected)
        connection.on("message_received", self.receive_message)
        connection.on("message_notification", self._on_notification)
        connection.on("message_updated", self.receive_message_updated)
        connection.on("message_deleted", self.receive_message_deleted)
        connection.on("typing", self._on_typing)
        connection.on("stop_typing", self._on_stop_typing)
        connection.on_state_change(self._on_connection_state)

    # status

    @property
    def someone_typing(self) -> bool:
        return bool(self.typing_users)

    @property
    def disconnected(self) -> bool:
        return self.connection_state == ConnectionState.DISCONNECTED

    def dismiss_error(self) -> None:
        self.error = None
        self._retry_action = None

    async def retry(self) -> bool:
        if self.error is None or not self.error.retryable or self._retry_action is None:
            return False
        action = self._retry_action
        self.dismiss_error()
        return await action()

    # REST-backed operations

    async def load_conversations(self) -> bool:
        self.loading = True
        try:
            conversations = await self.api.list_conversations()
        except ApiError as exc:
            logger.warning("Loading conversations failed: %s", exc.detail)
            self._fail(exc.detail, True, self.load_conversations)
            return False
        finally:
            self.loading = False
        self.conversations = conversations
        return True

    async def start_conversation(self, participant_id: str, service_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        try:
            convo = await self.api.start_conversation(participant_id, service_id)
        except ApiError as exc:
            self._fail(exc.detail, False)
            return None
        if not any(c["id"] == convo["id"] for c in self.conversations):
            self.conversations.insert(0, convo)
        await self.open_conversation(convo["id"])
        return convo

    async def open_conversation(self, conversation_id: str) -> bool:
        previous = self.active_conversation_id
        if previous is not None and previous != conversation_id:
            self._end_typing_burst()
            self.connection.emit("leave_chat", previous)

        self.active_conversation_id = conversation_id
        self.messages = []
        self._message_ids = set()
        self.typing_users.clear()
        self.unread_counts[conversation_id] = 0
        self._counted_unread.pop(conversation_id, None)
        # subscribe before fetching so nothing lands between history and live updates
        self.connection.emit("join_chat", conversation_id)

        self._open_generation += 1
        generation = self._open_generation
        self.loading = True
        try:
            history = await self.api.list_messages(conversation_id)
        except ApiError as exc:
            if generation == self._open_generation:
                self._fail(exc.detail, exc.retryable, lambda: self.open_conversation(conversation_id))
            return False
        finally:
            if generation == self._open_generation:
                self.loading = False
        if generation != self._open_generation:
            # the user switched conversations while this fetch was in flight
            return False

        fetched = {m["id"] for m in history}
        live = [m for m in self.messages if m["id"] not in fetched]
        self.messages = list(history) + live
        self._message_ids = {m["id"] for m in self.messages}
        return True

    async def send_message(self, content: str, reply_to: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if self.sending:
            return None
        text = (content or "").strip()
        if not text:
            self._fail("Message content cannot be empty", False)
            return None
        conversation_id = self.active_conversation_id
        if conversation_id is None:
            self._fail("Select a conversation first", False)
            return None

        self.sending = True
        try:
            message = await self.api.create_message(conversation_id, text, reply_to)
        except ApiError as exc:
            # no automatic retry: the first attempt may have been stored
            self._fail(exc.detail, False)
            return None
        finally:
            self.sending = False
        self._end_typing_burst()
        return message

    async def edit_message(self, message_id: str, content: str) -> Optional[Dict[str, Any]]:
        text = (content or "").strip()
        if not text:
            self._fail("Message content cannot be empty", False)
            return None
        try:
            updated = await self.api.update_message(message_id, text)
        except ApiError as exc:
            self._fail(exc.detail, False)
            return None
        self.receive_message_updated(updated)
        return updated

    async def delete_message(self, message_id: str) -> bool:
        try:
            await self.api.delete_message(message_id)
        except ApiError as exc:
            self._fail(exc.detail, False)
            return False
        self._remove_message(message_id)
        return True

    # gateway-pushed updates

    def receive_message(self, message: Any) -> None:
        if not isinstance(message, dict) or not message.get("id") or not message.get("conversation_id"):
            return
        conversation_id = message["conversation_id"]
        self._update_preview(message)
        if conversation_id == self.active_conversation_id:
            if message["id"] in self._message_ids:
                return
            self._message_ids.add(message["id"])
            self.messages.append(message)
            return
        counted = self._counted_unread.setdefault(conversation_id, set())
        if message.get("sender_id") == self.user_id or message["id"] in counted:
            return
        counted.add(message["id"])
        self.unread_counts[conversation_id] = self.unread_counts.get(conversation_id, 0) + 1

    def receive_message_updated(self, message: Any) -> None:
        if not isinstance(message, dict) or not message.get("id"):
            return
        self.messages = [message if m["id"] == message["id"] else m for m in self.messages]
        for convo in self.conversations:
            latest = convo.get("latest_message")
            if latest and latest.get("id") == message["id"]:
                latest["content"] = message["content"]

    def receive_message_deleted(self, data: Any) -> None:
        if isinstance(data, dict) and data.get("id"):
            self._remove_message(data["id"])

    def receive_typing_event(self, user_id: str, conversation_id: Optional[str] = None) -> None:
        if not user_id or user_id == self.user_id:
            return
        if conversation_id is not None and conversation_id != self.active_conversation_id:
            return
        self.typing_users.add(user_id)

    def receive_stop_typing_event(self, user_id: str, conversation_id: Optional[str] = None) -> None:
        if conversation_id is not None and conversation_id != self.active_conversation_id:
            return
        self.typing_users.discard(user_id)

    # composer

    def set_typing_local(self) -> None:
        """Call on every keystroke in the composer."""
        conversation_id = self.active_conversation_id
        if conversation_id is None or not self.connection.connected:
            return
        loop = asyncio.get_running_loop()
        if not self._typing_signaled:
            self.connection.emit("typing", conversation_id)
            self._typing_signaled = True
            self._schedule_typing_renewal(conversation_id)

        if self._typing_timer is not None:
            self._typing_timer.cancel()
        self._typing_timer = loop.call_later(
            self.typing_quiet_period, self._typing_quiet_elapsed, conversation_id
        )

    # internals

    def _schedule_typing_renewal(self, conversation_id: str) -> None:
        # the gateway expires an unrenewed flag after its own quiet period
        self._renew_timer = asyncio.get_running_loop().call_later(
            self.typing_quiet_period / 2, self._renew_typing, conversation_id
        )

    def _renew_typing(self, conversation_id: str) -> None:
        self._renew_timer = None
        if self._typing_signaled and conversation_id == self.active_conversation_id:
            self.connection.emit("typing", conversation_id)
            self._schedule_typing_renewal(conversation_id)

    def _cancel_typing_timers(self) -> None:
        for timer in (self._typing_timer, self._renew_timer):
            if timer is not None:
                timer.cancel()
        self._typing_timer = None
        self._renew_timer = None

    def _typing_quiet_elapsed(self, conversation_id: str) -> None:
        self._cancel_typing_timers()
        if self._typing_signaled:
            self._typing_signaled = False
            self.connection.emit("stop_typing", conversation_id)

    def _end_typing_burst(self) -> None:
        self._cancel_typing_timers()
        if self._typing_signaled and self.active_conversation_id is not None:
            self._typing_signaled = False
            self.connection.emit("stop_typing", self.active_conversation_id)

    def _update_preview(self, message: Dict[str, Any]) -> None:
        for index, convo in enumerate(self.conversations):
            if convo["id"] != message["conversation_id"]:
                continue
            latest = convo.get("latest_message")
            if latest and latest.get("id") != message["id"] and _timestamp(latest.get("created_at")) > _timestamp(message.get("created_at")):
                return
            convo["latest_message"] = {
                "id": message["id"],
                "content": message["content"],
                "sender_id": message["sender_id"],
                "created_at": message["created_at"],
            }
            convo["updated_at"] = message["created_at"]
            # most recently active first
            self.conversations.insert(0, self.conversations.pop(index))
            return

    def _remove_message(self, message_id: str) -> None:
        self.messages = [m for m in self.messages if m["id"] != message_id]
        self._message_ids.discard(message_id)

    def _fail(self, message: str, retryable: bool, action: Optional[Callable[[], Awaitable[bool]]] = None) -> None:
        self.error = ErrorState(message=message, retryable=retryable)
        self._retry_action = action if retryable else None

    def _on_connected(self, data: Any) -> None:
        # rejoin after a reconnect; the gateway keeps no subscriptions across connections
        if self.active_conversation_id is not None:
            self.connection.emit("join_chat", self.active_conversation_id)

    def _on_notification(self, data: Any) -> None:
        if isinstance(data, dict):
            self.receive_message(data.get("message"))

    def _on_typing(self, data: Any) -> None:
        if isinstance(data, dict):
            self.receive_typing_event(data.get("user_id"), data.get("conversation_id"))

    def _on_stop_typing(self, data: Any) -> None:
        if isinstance(data, dict):
            self.receive_stop_typing_event(data.get("user_id"), data.get("conversation_id"))

    def _on_connection_state(self, state: ConnectionState) -> None:
        self.connection_state = state
        if state == ConnectionState.DISCONNECTED:
            self.typing_users.clear()


def _timestamp(value: Any) -> datetime:
    if not isinstance(value, datetime):
        try:
            value = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            value = datetime.min
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
