from datetime import datetime
from typing import List, Optional, TypedDict


class LatestMessage(TypedDict):
    id: str
    content: str
    sender_id: str
    created_at: datetime


class ConversationDocument(TypedDict, total=False):
    _id: str
    # sorted pair of user ids
    participants: List[str]
    # "<a>:<b>" of the sorted pair, unique
    pair_key: str
    service_id: Optional[str]
    latest_message: Optional[LatestMessage]
    created_at: datetime
    updated_at: datetime
