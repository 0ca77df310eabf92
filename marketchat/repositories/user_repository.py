from typing import Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from marketchat.models.user import UserDocument


# credentials never leave the user-management service
PUBLIC_PROJECTION = {"password": 0, "hashed_password": 0}


class UserRepository:
    """Read-only view of marketplace users (clients, providers, admins)."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._users = db.get_collection("users")

    async def get_user_by_id(self, user_id: str) -> Optional[UserDocument]:
        if not ObjectId.is_valid(user_id):
            return None
        user = await self._users.find_one({"_id": ObjectId(user_id)}, PUBLIC_PROJECTION)
        if user is None:
            return None
        user["_id"] = str(user["_id"])
        return user

    async def exists(self, user_id: str) -> bool:
        return await self.get_user_by_id(user_id) is not None
