from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class LatestMessagePublic(BaseModel):

    id: str
    content: str
    sender_id: str
    created_at: datetime


class ConversationPublic(BaseModel):

    id: str
    participants: List[str]
    service_id: Optional[str] = None
    latest_message: Optional[LatestMessagePublic] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "ConversationPublic":
        return cls(
            id=str(doc["_id"]),
            participants=list(doc["participants"]),
            service_id=doc.get("service_id"),
            latest_message=doc.get("latest_message"),
            created_at=doc["created_at"],
            updated_at=doc["updated_at"],
        )


class MessagePublic(BaseModel):

    id: str
    conversation_id: str
    sender_id: str
    content: str
    reply_to: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "MessagePublic":
        return cls(
            id=str(doc["_id"]),
            conversation_id=str(doc["conversation_id"]),
            sender_id=doc["sender_id"],
            content=doc["content"],
            reply_to=doc.get("reply_to"),
            created_at=doc["created_at"],
            updated_at=doc.get("updated_at"),
        )


class StartConversationRequest(BaseModel):

    participant_id: str = Field(min_length=1)
    service_id: Optional[str] = None


class CreateMessageRequest(BaseModel):

    conversation_id: str = Field(min_length=1)
    # emptiness and length are checked by the service so errors stay domain errors
    content: str
    reply_to: Optional[str] = None


class UpdateMessageRequest(BaseModel):

    content: str


class ConversationPage(BaseModel):

    items: List[ConversationPublic]
    next_cursor: Optional[str] = None


class MessageList(BaseModel):

    items: List[MessagePublic]
