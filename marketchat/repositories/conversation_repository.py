from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from marketchat.models.conversation import ConversationDocument, LatestMessage
from marketchat.utils.timeutils import as_utc, from_millis, to_millis, utc_now


def pair_key(user_a: str, user_b: str) -> str:
    return ":".join(sorted([user_a, user_b]))


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("pair_key", ASCENDING)], unique=True)
        await self.collection.create_index([("participants", ASCENDING)])
        await self.collection.create_index([("updated_at", DESCENDING), ("_id", DESCENDING)])

    async def get(self, conversation_id: str) -> Optional[ConversationDocument]:
        oid = self._to_object_id(conversation_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        return self._normalize(doc) if doc else None

    async def find_by_pair(self, user_a: str, user_b: str) -> Optional[ConversationDocument]:
        doc = await self.collection.find_one({"pair_key": pair_key(user_a, user_b)})
        return self._normalize(doc) if doc else None

    async def get_or_create_one_to_one(self, user_a: str, user_b: str, service_id: Optional[str] = None) -> Tuple[ConversationDocument, bool]:
        existing = await self.find_by_pair(user_a, user_b)
        if existing:
            return existing, False
        now = utc_now()
        doc: Dict[str, Any] = {
            "participants": sorted([user_a, user_b]),
            "pair_key": pair_key(user_a, user_b),
            "service_id": service_id,
            "latest_message": None,
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError:
            # lost a concurrent create for the same pair
            existing = await self.find_by_pair(user_a, user_b)
            if existing is None:
                raise
            return existing, False
        doc["_id"] = str(result.inserted_id)
        return doc, True

    async def advance_latest_message(self, conversation_id: str, latest: LatestMessage) -> bool:
        """Move the preview forward; a message older than the current preview never replaces it."""
        result = await self.collection.update_one(
            {
                "_id": ObjectId(conversation_id),
                "$or": [
                    {"latest_message": None},
                    {"latest_message.created_at": {"$lt": latest["created_at"]}},
                ],
            },
            {"$set": {"latest_message": latest, "updated_at": latest["created_at"]}},
        )
        return result.modified_count == 1

    async def replace_latest_message(self, conversation_id: str, expected_id: str, latest: Optional[LatestMessage]) -> bool:
        # no-op once a newer message has taken over the preview
        result = await self.collection.update_one(
            {"_id": ObjectId(conversation_id), "latest_message.id": expected_id},
            {"$set": {"latest_message": latest}},
        )
        return result.modified_count == 1

    async def list_for_user(self, user_id: str, limit: int = 20, cursor: Optional[str] = None) -> Tuple[List[ConversationDocument], Optional[str]]:
        query: Dict[str, Any] = {"participants": user_id}
        sort = [("updated_at", DESCENDING), ("_id", DESCENDING)]
        if cursor:
            # cursor format: updated_at_ms:object_id_hex
            try:
                ts_str, oid_hex = cursor.split(":", 1)
                ts = from_millis(int(ts_str))
                query["$or"] = [
                    {"updated_at": {"$lt": ts}},
                    {"updated_at": ts, "_id": {"$lt": ObjectId(oid_hex)}},
                ]
            except (ValueError, InvalidId):
                pass

        cursor_db = self.collection.find(query).sort(sort).limit(limit)
        items = [self._normalize(it) for it in await cursor_db.to_list(length=limit)]
        next_cursor = None
        if len(items) == limit:
            last = items[-1]
            next_cursor = f"{to_millis(last['updated_at'])}:{last['_id']}"
        return items, next_cursor

    def _normalize(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc["_id"] = str(doc.get("_id"))
        doc["created_at"] = as_utc(doc.get("created_at"))
        doc["updated_at"] = as_utc(doc.get("updated_at"))
        latest = doc.get("latest_message")
        if latest:
            latest["created_at"] = as_utc(latest.get("created_at"))
        return doc

    def _to_object_id(self, oid_hex: str) -> Optional[ObjectId]:
        if not ObjectId.is_valid(oid_hex):
            return None
        return ObjectId(oid_hex)
