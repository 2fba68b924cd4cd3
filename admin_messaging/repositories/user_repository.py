from typing import Any, Dict, List, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from admin_messaging.repositories.base import UserStore
from admin_messaging.repositories.conversation_repository import normalize, to_object_id

# directory fields exposed to other admins; never the password hash
PUBLIC_FIELDS = {"email": 1, "user_name": 1, "role": 1, "profile_picture": 1, "last_active": 1}


class MongoUserRepository(UserStore):

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        oid = to_object_id(user_id)
        if oid is None:
            return None
        return normalize(await self._collection.find_one({"_id": oid}, PUBLIC_FIELDS))

    async def list_by_roles(self, roles: Sequence[str], exclude_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"role": {"$in": list(roles)}}
        oid = to_object_id(exclude_id)
        if oid is not None:
            query["_id"] = {"$ne": oid}
        cursor = self._collection.find(query, PUBLIC_FIELDS).sort("user_name", ASCENDING)
        items = await cursor.to_list(length=None)
        return [normalize(it) for it in items]
