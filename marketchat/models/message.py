from datetime import datetime
from typing import Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    content: str
    # advisory link to another message of the same conversation
    reply_to: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]
