from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from admin_messaging.repositories.base import ConversationStore, DuplicateConversation


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if value is None or not ObjectId.is_valid(str(value)):
        return None
    return ObjectId(str(value))


def normalize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is not None:
        doc["_id"] = str(doc.get("_id"))
    return doc


class MongoConversationRepository(ConversationStore):

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participants.user_id", ASCENDING), ("status", ASCENDING)])
        await self.collection.create_index([("last_message.sent_at", DESCENDING), ("updated_at", DESCENDING)])
        await self.collection.create_index([("related_entity.entity_id", ASCENDING), ("related_entity.type", ASCENDING)])
        await self.collection.create_index([("created_at", DESCENDING)])
        await self.collection.create_index([("status", ASCENDING), ("priority", ASCENDING)])
        # one live direct conversation per participant pair; archiving unsets the key
        await self.collection.create_index(
            [("direct_key", ASCENDING)],
            unique=True,
            partialFilterExpression={"direct_key": {"$exists": True}},
        )

    async def get_by_id(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        oid = to_object_id(conversation_id)
        if oid is None:
            return None
        return normalize(await self.collection.find_one({"_id": oid}))

    async def find_direct(self, key: str) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one({"direct_key": key, "type": "direct", "status": {"$ne": "archived"}})
        return normalize(doc)

    async def create(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(doc)
        doc.pop("_id", None)
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError as exc:
            raise DuplicateConversation(doc.get("direct_key", "")) from exc
        doc["_id"] = str(result.inserted_id)
        return doc

    async def list_for_participant(
        self,
        user_id: str,
        status: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"participants.user_id": str(user_id)}
        query["status"] = status if status else {"$ne": "archived"}
        if type:
            query["type"] = type
        sort = [("last_message.sent_at", DESCENDING), ("updated_at", DESCENDING)]
        cursor = self.collection.find(query).sort(sort).limit(limit)
        items = await cursor.to_list(length=limit)
        return [normalize(it) for it in items]

    async def sum_unread(self, user_id: str) -> int:
        field = f"$unread_counters.{user_id}"
        pipeline = [
            {"$match": {"participants.user_id": str(user_id), "status": {"$ne": "archived"}}},
            {"$group": {"_id": None, "total": {"$sum": {"$ifNull": [field, 0]}}}},
        ]
        rows = await self.collection.aggregate(pipeline).to_list(length=1)
        return int(rows[0]["total"]) if rows else 0

    async def apply_new_message(
        self,
        conversation_id: str,
        snapshot: Dict[str, Any],
        recipient_ids: Sequence[str],
        now: datetime,
    ) -> None:
        # pipeline update: counters and last_message change in one write, and a late
        # write for an older message never replaces a newer last_message
        fields: Dict[str, Any] = {
            "last_message": {
                "$cond": [
                    {"$gt": ["$last_message.sent_at", snapshot["sent_at"]]},
                    "$last_message",
                    {"$literal": snapshot},
                ]
            },
            "updated_at": {"$max": ["$updated_at", now]},
        }
        for rid in recipient_ids:
            field = f"unread_counters.{rid}"
            fields[field] = {"$add": [{"$ifNull": [f"${field}", 0]}, 1]}
        await self.collection.update_one({"_id": to_object_id(conversation_id)}, [{"$set": fields}])

    async def touch(self, conversation_id: str, now: datetime) -> None:
        await self.collection.update_one({"_id": to_object_id(conversation_id)}, {"$set": {"updated_at": now}})

    async def decrement_unread(self, conversation_id: str, user_id: str, amount: int) -> None:
        if amount <= 0:
            return
        field = f"unread_counters.{user_id}"
        # pipeline update so the floor at zero is applied inside the same write
        await self.collection.update_one(
            {"_id": to_object_id(conversation_id)},
            [{"$set": {field: {"$max": [0, {"$subtract": [{"$ifNull": [f"${field}", 0]}, amount]}]}}}],
        )

    async def archive(self, conversation_id: str, user_id: str, now: datetime) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one_and_update(
            {"_id": to_object_id(conversation_id)},
            {
                "$set": {"status": "archived", "archived_at": now, "archived_by": str(user_id), "updated_at": now},
                "$unset": {"direct_key": ""},
            },
            return_document=ReturnDocument.AFTER,
        )
        return normalize(doc)

    async def replace_participants(
        self,
        conversation_id: str,
        participants: List[Dict[str, Any]],
        unread_counters: Dict[str, int],
        now: datetime,
    ) -> None:
        await self.collection.update_one(
            {"_id": to_object_id(conversation_id)},
            {"$set": {"participants": participants, "unread_counters": unread_counters, "updated_at": now}},
        )
