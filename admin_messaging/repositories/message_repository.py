from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from admin_messaging.repositories.base import MessageStore
from admin_messaging.repositories.conversation_repository import normalize, to_object_id


class MongoMessageRepository(MessageStore):

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("created_at", DESCENDING)])
        await self.collection.create_index([("sender_id", ASCENDING), ("created_at", DESCENDING)])
        await self.collection.create_index([("read_by.user_id", ASCENDING)])
        await self.collection.create_index([("status", ASCENDING)])
        await self.collection.create_index([("reply_to", ASCENDING)])

    async def create(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(doc)
        doc.pop("_id", None)
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get_by_id(self, message_id: str) -> Optional[Dict[str, Any]]:
        oid = to_object_id(message_id)
        if oid is None:
            return None
        return normalize(await self.collection.find_one({"_id": oid}))

    async def list_page(self, conversation_id: str, skip: int, limit: int) -> List[Dict[str, Any]]:
        query = {"conversation_id": str(conversation_id), "deleted_at": None}
        sort = [("created_at", DESCENDING), ("_id", DESCENDING)]
        cursor = self.collection.find(query).sort(sort).skip(skip).limit(limit)
        items = await cursor.to_list(length=limit)
        return [normalize(it) for it in items]

    async def count_visible(self, conversation_id: str) -> int:
        return await self.collection.count_documents({"conversation_id": str(conversation_id), "deleted_at": None})

    def _unread_query(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        return {
            "conversation_id": str(conversation_id),
            "sender_id": {"$ne": str(user_id)},
            "is_system_message": {"$ne": True},
            "read_by.user_id": {"$ne": str(user_id)},
            "status": {"$nin": ["sending", "failed"]},
        }

    async def mark_read(
        self,
        conversation_id: str,
        user_id: str,
        now: datetime,
        message_ids: Optional[Iterable[str]] = None,
    ) -> int:
        query = self._unread_query(conversation_id, user_id)
        scope: Dict[str, Any] = {}
        if message_ids is not None:
            oids = [oid for oid in (to_object_id(mid) for mid in message_ids) if oid is not None]
            if not oids:
                return 0
            scope["_id"] = {"$in": oids}
        result = await self.collection.update_many(
            {**query, **scope},
            {"$push": {"read_by": {"user_id": str(user_id), "read_at": now}}, "$set": {"updated_at": now}},
        )
        await self.collection.update_many(
            {
                "conversation_id": str(conversation_id),
                "sender_id": {"$ne": str(user_id)},
                "read_by.user_id": str(user_id),
                "status": {"$in": ["sent", "delivered"]},
                **scope,
            },
            {"$set": {"status": "read"}},
        )
        return result.modified_count or 0

    async def count_unread(self, conversation_id: str, user_id: str) -> int:
        return await self.collection.count_documents(self._unread_query(conversation_id, user_id))

    async def update_content(self, message_id: str, content: str, now: datetime) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one_and_update(
            {"_id": to_object_id(message_id), "deleted_at": None},
            {"$set": {"content": content, "edited_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        return normalize(doc)

    async def soft_delete(self, message_id: str, deleted_by: str, now: datetime) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one_and_update(
            {"_id": to_object_id(message_id)},
            {"$set": {"deleted_at": now, "deleted_by": str(deleted_by), "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        return normalize(doc)

    async def transition_status(
        self,
        message_id: str,
        from_statuses: Sequence[str],
        target: str,
        now: datetime,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one_and_update(
            {"_id": to_object_id(message_id), "status": {"$in": list(from_statuses)}},
            {"$set": {"status": target, "updated_at": now, **(extra or {})}},
            return_document=ReturnDocument.AFTER,
        )
        return normalize(doc)
