from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from marketchat.models.message import MessageDocument
from marketchat.utils.timeutils import as_utc, utc_now


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("created_at", ASCENDING), ("_id", ASCENDING)])

    async def save_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        created_at: datetime,
        reply_to: Optional[str] = None,
    ) -> MessageDocument:
        doc: MessageDocument = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "reply_to": reply_to,
            "created_at": created_at,
            "updated_at": None,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get(self, message_id: str) -> Optional[MessageDocument]:
        if not ObjectId.is_valid(message_id):
            return None
        doc = await self.collection.find_one({"_id": ObjectId(message_id)})
        return self._normalize(doc) if doc else None

    async def get_messages_by_conversation(self, conversation_id: str) -> List[MessageDocument]:
        cur = self.collection.find({"conversation_id": conversation_id}).sort([("created_at", ASCENDING), ("_id", ASCENDING)])
        return [self._normalize(it) for it in await cur.to_list(length=None)]

    async def get_latest(self, conversation_id: str) -> Optional[MessageDocument]:
        cur = self.collection.find({"conversation_id": conversation_id}).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).limit(1)
        items = await cur.to_list(length=1)
        return self._normalize(items[0]) if items else None

    async def update_content(self, message_id: str, content: str) -> Optional[MessageDocument]:
        result = await self.collection.update_one(
            {"_id": ObjectId(message_id)},
            {"$set": {"content": content, "updated_at": utc_now()}},
        )
        if not result.matched_count:
            return None
        return await self.get(message_id)

    async def delete(self, message_id: str) -> bool:
        result = await self.collection.delete_one({"_id": ObjectId(message_id)})
        return bool(result.deleted_count)

    def _normalize(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc["_id"] = str(doc.get("_id"))
        doc["created_at"] = as_utc(doc.get("created_at"))
        doc["updated_at"] = as_utc(doc.get("updated_at"))
        return doc
