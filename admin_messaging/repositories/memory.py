"""In-memory record store.

Same contract as the MongoDB repositories; every mutation runs under one
``asyncio.Lock`` so a send or a mark-read is applied as a single step.
"""

import asyncio
import copy
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from bson import ObjectId

from admin_messaging.models.conversation import sort_key
from admin_messaging.models.message import is_read_by
from admin_messaging.repositories.base import ConversationStore, DuplicateConversation, MessageStore, UserStore

logger = logging.getLogger(__name__)


class InMemoryStore:

    def __init__(self) -> None:
        self.conversations: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, Dict[str, Any]] = {}
        self.users: Dict[str, Dict[str, Any]] = {}
        self.lock = asyncio.Lock()
        self._sequence = 0

    def next_id(self) -> str:
        return str(ObjectId())

    def next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def add_user(self, user: Dict[str, Any]) -> Dict[str, Any]:
        user = dict(user)
        user["_id"] = str(user.get("_id") or self.next_id())
        self.users[user["_id"]] = user
        return copy.deepcopy(user)


class InMemoryConversationRepository(ConversationStore):

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    @property
    def _items(self) -> Dict[str, Dict[str, Any]]:
        return self._store.conversations

    async def ensure_indexes(self) -> None:
        return

    async def get_by_id(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        doc = self._items.get(str(conversation_id))
        return copy.deepcopy(doc) if doc else None

    async def find_direct(self, key: str) -> Optional[Dict[str, Any]]:
        for doc in self._items.values():
            if doc.get("direct_key") == key and doc.get("type") == "direct" and doc.get("status") != "archived":
                return copy.deepcopy(doc)
        return None

    async def create(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        async with self._store.lock:
            key = doc.get("direct_key")
            if key and any(other.get("direct_key") == key for other in self._items.values()):
                raise DuplicateConversation(key)
            doc = copy.deepcopy(doc)
            doc["_id"] = self._store.next_id()
            self._items[doc["_id"]] = doc
            logger.debug("conversation %s created", doc["_id"])
            return copy.deepcopy(doc)

    async def list_for_participant(
        self,
        user_id: str,
        status: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        uid = str(user_id)
        matches = []
        for doc in self._items.values():
            if uid not in [str(p["user_id"]) for p in doc.get("participants", [])]:
                continue
            if status and doc.get("status") != status:
                continue
            if not status and doc.get("status") == "archived":
                continue
            if type and doc.get("type") != type:
                continue
            matches.append(doc)
        matches.sort(key=sort_key, reverse=True)
        return [copy.deepcopy(doc) for doc in matches[:limit]]

    async def sum_unread(self, user_id: str) -> int:
        uid = str(user_id)
        return sum(
            int((doc.get("unread_counters") or {}).get(uid, 0))
            for doc in self._items.values()
            if doc.get("status") != "archived" and uid in [str(p["user_id"]) for p in doc.get("participants", [])]
        )

    async def apply_new_message(
        self,
        conversation_id: str,
        snapshot: Dict[str, Any],
        recipient_ids: Sequence[str],
        now: datetime,
    ) -> None:
        async with self._store.lock:
            doc = self._items.get(str(conversation_id))
            if doc is None:
                return
            current = doc.get("last_message") or {}
            if current.get("sent_at") is None or current["sent_at"] <= snapshot["sent_at"]:
                doc["last_message"] = dict(snapshot)
            doc["updated_at"] = max(doc.get("updated_at") or now, now)
            counters = doc.setdefault("unread_counters", {})
            for rid in recipient_ids:
                counters[str(rid)] = counters.get(str(rid), 0) + 1

    async def touch(self, conversation_id: str, now: datetime) -> None:
        async with self._store.lock:
            doc = self._items.get(str(conversation_id))
            if doc is not None:
                doc["updated_at"] = now

    async def decrement_unread(self, conversation_id: str, user_id: str, amount: int) -> None:
        if amount <= 0:
            return
        async with self._store.lock:
            doc = self._items.get(str(conversation_id))
            if doc is None:
                return
            counters = doc.setdefault("unread_counters", {})
            counters[str(user_id)] = max(0, counters.get(str(user_id), 0) - amount)

    async def archive(self, conversation_id: str, user_id: str, now: datetime) -> Optional[Dict[str, Any]]:
        async with self._store.lock:
            doc = self._items.get(str(conversation_id))
            if doc is None:
                return None
            doc.update({"status": "archived", "archived_at": now, "archived_by": str(user_id), "updated_at": now})
            doc.pop("direct_key", None)
            return copy.deepcopy(doc)

    async def replace_participants(
        self,
        conversation_id: str,
        participants: List[Dict[str, Any]],
        unread_counters: Dict[str, int],
        now: datetime,
    ) -> None:
        async with self._store.lock:
            doc = self._items.get(str(conversation_id))
            if doc is not None:
                doc["participants"] = copy.deepcopy(participants)
                doc["unread_counters"] = dict(unread_counters)
                doc["updated_at"] = now


class InMemoryMessageRepository(MessageStore):

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    @property
    def _items(self) -> Dict[str, Dict[str, Any]]:
        return self._store.messages

    async def ensure_indexes(self) -> None:
        return

    async def create(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        async with self._store.lock:
            doc = copy.deepcopy(doc)
            doc["_id"] = self._store.next_id()
            doc["_seq"] = self._store.next_sequence()
            self._items[doc["_id"]] = doc
            return self._public(doc)

    def _public(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        out = copy.deepcopy(doc)
        out.pop("_seq", None)
        return out

    def _in_conversation(self, conversation_id: str) -> List[Dict[str, Any]]:
        return [m for m in self._items.values() if m["conversation_id"] == str(conversation_id)]

    async def get_by_id(self, message_id: str) -> Optional[Dict[str, Any]]:
        doc = self._items.get(str(message_id))
        return self._public(doc) if doc else None

    async def list_page(self, conversation_id: str, skip: int, limit: int) -> List[Dict[str, Any]]:
        visible = [m for m in self._in_conversation(conversation_id) if not m.get("deleted_at")]
        visible.sort(key=lambda m: (m["created_at"], m["_seq"]), reverse=True)
        return [self._public(m) for m in visible[skip : skip + limit]]

    async def count_visible(self, conversation_id: str) -> int:
        return len([m for m in self._in_conversation(conversation_id) if not m.get("deleted_at")])

    def _is_unread_for(self, message: Dict[str, Any], user_id: str) -> bool:
        return (
            message.get("sender_id") != str(user_id)
            and not message.get("is_system_message")
            and message.get("status") not in ("sending", "failed")
            and not is_read_by(message, user_id)
        )

    async def mark_read(
        self,
        conversation_id: str,
        user_id: str,
        now: datetime,
        message_ids: Optional[Iterable[str]] = None,
    ) -> int:
        wanted = None if message_ids is None else {str(mid) for mid in message_ids}
        marked = 0
        async with self._store.lock:
            for message in self._in_conversation(conversation_id):
                if wanted is not None and message["_id"] not in wanted:
                    continue
                if not self._is_unread_for(message, user_id):
                    continue
                message.setdefault("read_by", []).append({"user_id": str(user_id), "read_at": now})
                message["updated_at"] = now
                if message.get("status") in ("sent", "delivered"):
                    message["status"] = "read"
                marked += 1
        return marked

    async def count_unread(self, conversation_id: str, user_id: str) -> int:
        return len([m for m in self._in_conversation(conversation_id) if self._is_unread_for(m, user_id)])

    async def update_content(self, message_id: str, content: str, now: datetime) -> Optional[Dict[str, Any]]:
        async with self._store.lock:
            doc = self._items.get(str(message_id))
            if doc is None or doc.get("deleted_at"):
                return None
            doc.update({"content": content, "edited_at": now, "updated_at": now})
            return self._public(doc)

    async def soft_delete(self, message_id: str, deleted_by: str, now: datetime) -> Optional[Dict[str, Any]]:
        async with self._store.lock:
            doc = self._items.get(str(message_id))
            if doc is None:
                return None
            doc.update({"deleted_at": now, "deleted_by": str(deleted_by), "updated_at": now})
            return self._public(doc)

    async def transition_status(
        self,
        message_id: str,
        from_statuses: Sequence[str],
        target: str,
        now: datetime,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        async with self._store.lock:
            doc = self._items.get(str(message_id))
            if doc is None or doc.get("status") not in from_statuses:
                return None
            doc.update({"status": target, "updated_at": now, **(extra or {})})
            return self._public(doc)


class InMemoryUserRepository(UserStore):

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    async def get_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        user = self._store.users.get(str(user_id))
        return copy.deepcopy(user) if user else None

    async def list_by_roles(self, roles: Sequence[str], exclude_id: Optional[str] = None) -> List[Dict[str, Any]]:
        users = [
            u for u in self._store.users.values()
            if u.get("role") in roles and u["_id"] != str(exclude_id)
        ]
        users.sort(key=lambda u: u.get("user_name") or "")
        return copy.deepcopy(users)
