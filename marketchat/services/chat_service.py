from typing import Any, Dict, List, Optional, Tuple

from marketchat.core.config import settings
from marketchat.core.logging import get_logger
from marketchat.repositories.conversation_repository import ConversationRepository
from marketchat.repositories.message_repository import MessageRepository
from marketchat.repositories.user_repository import UserRepository
from marketchat.services.exceptions import (
    EmptyContent,
    InvalidParticipant,
    MessageTooLong,
    NotFound,
    NotOwner,
    NotParticipant,
)
from marketchat.utils.timeutils import ONE_MILLISECOND, utc_now


logger = get_logger(__name__)


def latest_preview(message: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": message["_id"],
        "content": message["content"],
        "sender_id": message["sender_id"],
        "created_at": message["created_at"],
    }


class ChatService:
    """Conversation directory and message store rules on top of the repositories."""

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        user_repo: UserRepository,
        max_length: int | None = None,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._user_repo = user_repo
        self._max_length = max_length or settings.MESSAGE_MAX_LENGTH

    # conversations

    async def get_or_create(self, user_a: str, user_b: str, service_id: Optional[str] = None) -> Tuple[Dict[str, Any], bool]:
        """Returns the pair's conversation and whether this call created it."""
        if not user_a or not user_b or user_a == user_b:
            raise InvalidParticipant("A conversation needs two different users")
        for user_id in (user_a, user_b):
            if not await self._user_repo.exists(user_id):
                raise InvalidParticipant(f"Unknown user: {user_id}")
        convo, created = await self._conversation_repo.get_or_create_one_to_one(user_a, user_b, service_id)
        if created:
            logger.info("Created conversation %s between %s and %s", convo["_id"], user_a, user_b)
        return convo, created

    async def find_or_create(self, user_a: str, user_b: str, service_id: Optional[str] = None) -> Dict[str, Any]:
        convo, _ = await self.get_or_create(user_a, user_b, service_id)
        return convo

    async def list_conversations(self, user_id: str, limit: int = 20, cursor: str | None = None) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        return await self._conversation_repo.list_for_user(user_id, limit=limit, cursor=cursor)

    async def get_conversation(self, conversation_id: str) -> Dict[str, Any]:
        convo = await self._conversation_repo.get(conversation_id)
        if not convo:
            raise NotFound("Conversation not found")
        return convo

    async def get_participants(self, conversation_id: str) -> Optional[List[str]]:
        convo = await self._conversation_repo.get(conversation_id)
        return list(convo["participants"]) if convo else None

    # messages

    async def list_messages(self, conversation_id: str, user_id: str) -> List[Dict[str, Any]]:
        convo = await self.get_conversation(conversation_id)
        if user_id not in convo["participants"]:
            raise NotParticipant("Not authorized to access this conversation")
        return await self._message_repo.get_messages_by_conversation(conversation_id)

    async def create_message(self, conversation_id: str, sender_id: str, content: str, reply_to: Optional[str] = None) -> Dict[str, Any]:
        convo = await self.get_conversation(conversation_id)
        if sender_id not in convo["participants"]:
            raise NotParticipant("Not authorized to send messages in this conversation")
        text = self._validate_content(content)

        # creation times strictly increase within a conversation
        created_at = utc_now()
        latest = convo.get("latest_message")
        if latest and latest.get("created_at") and created_at <= latest["created_at"]:
            created_at = latest["created_at"] + ONE_MILLISECOND

        saved = await self._message_repo.save_message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=text,
            created_at=created_at,
            reply_to=reply_to,
        )
        await self._conversation_repo.advance_latest_message(conversation_id, latest_preview(saved))
        return saved

    async def update_message(self, message_id: str, editor_id: str, content: str) -> Dict[str, Any]:
        message = await self._message_repo.get(message_id)
        if not message:
            raise NotFound("Message not found")
        if message["sender_id"] != editor_id:
            raise NotOwner("Only the sender can edit this message")
        text = self._validate_content(content)
        updated = await self._message_repo.update_content(message_id, text)
        if not updated:
            raise NotFound("Message not found")
        convo = await self._conversation_repo.get(updated["conversation_id"])
        if convo and (convo.get("latest_message") or {}).get("id") == message_id:
            await self._conversation_repo.replace_latest_message(updated["conversation_id"], message_id, latest_preview(updated))
        return updated

    async def delete_message(self, message_id: str, actor_id: str) -> Dict[str, Any]:
        message = await self._message_repo.get(message_id)
        if not message:
            raise NotFound("Message not found")
        if message["sender_id"] != actor_id:
            raise NotOwner("Only the sender can delete this message")
        if not await self._message_repo.delete(message_id):
            raise NotFound("Message not found")
        conversation_id = message["conversation_id"]
        convo = await self._conversation_repo.get(conversation_id)
        if convo and (convo.get("latest_message") or {}).get("id") == message_id:
            remaining = await self._message_repo.get_latest(conversation_id)
            await self._conversation_repo.replace_latest_message(
                conversation_id, message_id, latest_preview(remaining) if remaining else None
            )
        return message

    def _validate_content(self, content: Optional[str]) -> str:
        text = (content or "").strip()
        if not text:
            raise EmptyContent("Message content cannot be empty")
        if len(text) > self._max_length:
            raise MessageTooLong(f"Message content exceeds {self._max_length} characters")
        return text
