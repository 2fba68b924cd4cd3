import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from admin_messaging.client.api import MessagingApiClient, UploadTuple
from admin_messaging.client.errors import ClientError
from admin_messaging.models.message import can_transition, last_message_snapshot

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local-"


class MessagingStore:

    def __init__(self, api: MessagingApiClient, user_id: str) -> None:
        self._api = api
        self.user_id = str(user_id)
        self._generations: Dict[str, int] = {}
        self._in_flight: Set[Tuple[str, int]] = set()
        self.reset()

    def reset(self) -> None:
        self.conversations: List[Dict[str, Any]] = []
        self.active_conversation_id: Optional[str] = None
        self.messages_by_conversation: Dict[str, List[Dict[str, Any]]] = {}
        self.pagination_by_conversation: Dict[str, Dict[str, Any]] = {}
        self.total_unread = 0
        self.available_users: List[Dict[str, Any]] = []
        self.loading = False
        self.messages_loading = False
        self.sending_message = False
        self.error: Optional[str] = None
        self.draft = ""
        self.reply_to_message: Optional[Dict[str, Any]] = None
        self.typing_users: Dict[str, Set[str]] = {}
        self._generations.clear()
        self._in_flight.clear()

    # selectors

    def conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        for conversation in self.conversations:
            if conversation["_id"] == conversation_id:
                return conversation
        return None

    def messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        return self.messages_by_conversation.get(conversation_id, [])

    @property
    def active_messages(self) -> List[Dict[str, Any]]:
        if self.active_conversation_id is None:
            return []
        return self.messages(self.active_conversation_id)

    def clear_error(self) -> None:
        self.error = None

    def _fail(self, exc: Exception) -> None:
        self.error = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__

    # conversations

    async def fetch_conversations(self, status: Optional[str] = None, type: Optional[str] = None) -> Dict[str, Any]:
        self.loading = True
        try:
            data = await self._api.list_conversations(status=status, type=type)
        except ClientError as exc:
            self._fail(exc)
            raise
        finally:
            self.loading = False
        self.conversations = list(data.get("conversations", []))
        self.total_unread = int(data.get("total_unread", 0))
        return data

    async def create_conversation(self, recipient_id: str, title: Optional[str] = None) -> Dict[str, Any]:
        try:
            conversation = await self._api.get_or_create_direct(recipient_id, title)
        except ClientError as exc:
            self._fail(exc)
            raise
        self._upsert_front(conversation)
        return conversation

    async def fetch_available_users(self) -> List[Dict[str, Any]]:
        try:
            self.available_users = await self._api.available_users()
        except ClientError as exc:
            self._fail(exc)
            raise
        return self.available_users

    def _upsert_front(self, conversation: Dict[str, Any]) -> None:
        rest = [c for c in self.conversations if c["_id"] != conversation["_id"]]
        self.conversations = [conversation] + rest

    def _touch_conversation(self, conversation_id: str, message: Dict[str, Any]) -> None:
        conversation = self.conversation(conversation_id)
        if conversation is None:
            return
        conversation = dict(conversation)
        conversation["last_message"] = last_message_snapshot(message)
        conversation["updated_at"] = message.get("created_at")
        self._upsert_front(conversation)

    # messages

    async def open_conversation(self, conversation_id: str) -> Optional[List[Dict[str, Any]]]:
        self.active_conversation_id = conversation_id
        self.reply_to_message = None
        loaded = await self.fetch_messages(conversation_id, page=1)
        if loaded is None:
            return None
        await self.mark_as_read(conversation_id)
        return loaded

    def close_conversation(self) -> None:
        self.active_conversation_id = None
        self.messages_loading = self._fetch_pending()

    async def fetch_messages(self, conversation_id: str, page: int = 1, limit: int = 50) -> Optional[List[Dict[str, Any]]]:
        """Loads one page for the active conversation. Returns ``None`` when the response went stale."""
        generation = self._generations.get(conversation_id, 0) + 1
        self._generations[conversation_id] = generation
        request = (conversation_id, generation)
        self._in_flight.add(request)
        self.messages_loading = True
        try:
            data = await self._api.get_messages(conversation_id, page=page, limit=limit)
        except ClientError as exc:
            if self._is_current(conversation_id, generation):
                self._fail(exc)
            raise
        finally:
            self._in_flight.discard(request)
            self.messages_loading = self._fetch_pending()

        if not self._is_current(conversation_id, generation):
            logger.debug("Discarding stale page %d for conversation %s", page, conversation_id)
            return None

        fetched = list(data.get("messages", []))
        if page == 1:
            merged = fetched + [m for m in self.messages(conversation_id) if m["_id"].startswith(LOCAL_ID_PREFIX)]
        else:
            cached = self.messages(conversation_id)
            known = {m["_id"] for m in cached}
            merged = [m for m in fetched if m["_id"] not in known] + cached
        self.messages_by_conversation[conversation_id] = merged
        self.pagination_by_conversation[conversation_id] = data.get("pagination", {})
        return merged

    def _is_current(self, conversation_id: str, generation: int) -> bool:
        return (
            self.active_conversation_id == conversation_id
            and self._generations.get(conversation_id) == generation
        )

    def _fetch_pending(self) -> bool:
        return any(self._is_current(cid, generation) for cid, generation in self._in_flight)

    async def fetch_older(self, conversation_id: str) -> Optional[List[Dict[str, Any]]]:
        pagination = self.pagination_by_conversation.get(conversation_id) or {}
        if not pagination.get("has_more"):
            return self.messages(conversation_id)
        return await self.fetch_messages(conversation_id, page=int(pagination.get("current_page", 1)) + 1)

    def _replace_message(self, conversation_id: str, old_id: str, message: Dict[str, Any]) -> None:
        cached = [m for m in self.messages(conversation_id) if m["_id"] not in (old_id, message["_id"])]
        cached.append(message)
        self.messages_by_conversation[conversation_id] = cached

    def _remove_message(self, conversation_id: str, message_id: str) -> None:
        self.messages_by_conversation[conversation_id] = [
            m for m in self.messages(conversation_id) if m["_id"] != message_id
        ]

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        mentions: Optional[List[str]] = None,
        priority: str = "normal",
    ) -> Dict[str, Any]:
        reply_to = self.reply_to_message["_id"] if self.reply_to_message else None
        local_id = f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"
        pending = {
            "_id": local_id,
            "conversation_id": conversation_id,
            "sender_id": self.user_id,
            "message_type": "text",
            "content": content,
            "attachments": [],
            "status": "sending",
            "reply_to": reply_to,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self.messages_by_conversation.setdefault(conversation_id, []).append(pending)
        self.draft = ""
        self.sending_message = True
        try:
            message = await self._api.send_text(
                conversation_id, content, reply_to=reply_to, mentions=mentions, priority=priority
            )
        except ClientError as exc:
            # give the text back so the user can retry
            self._remove_message(conversation_id, local_id)
            self.draft = content
            self._fail(exc)
            raise
        finally:
            self.sending_message = False

        self.reply_to_message = None
        self._replace_message(conversation_id, local_id, message)
        self._touch_conversation(conversation_id, message)
        return message

    async def send_media_message(
        self,
        conversation_id: str,
        files: Sequence[UploadTuple],
        caption: Optional[str] = None,
    ) -> Dict[str, Any]:
        self.sending_message = True
        try:
            message = await self._api.send_media(conversation_id, files, content=caption)
        except ClientError as exc:
            if caption:
                self.draft = caption
            self._fail(exc)
            raise
        finally:
            self.sending_message = False
        self._replace_message(conversation_id, message["_id"], message)
        self._touch_conversation(conversation_id, message)
        return message

    async def mark_as_read(self, conversation_id: str, message_ids: Optional[List[str]] = None) -> None:
        try:
            ack = await self._api.mark_read(conversation_id, message_ids)
        except ClientError as exc:
            self._fail(exc)
            raise
        conversation = self.conversation(conversation_id)
        if conversation is None:
            return
        current = int(conversation.get("unread_count", 0))
        cleared = current if not message_ids else min(current, int(ack.get("marked", 0)))
        conversation["unread_count"] = current - cleared
        # until the next fetch brings the server's total
        self.total_unread = max(0, self.total_unread - cleared)

    # realtime

    def apply_realtime_message(self, conversation_id: str, message: Dict[str, Any]) -> None:
        cached = self.messages_by_conversation.get(conversation_id)
        if cached is not None:
            if any(m["_id"] == message["_id"] for m in cached):
                return
            cached.append(message)
        self._touch_conversation(conversation_id, message)
        if message.get("sender_id") == self.user_id or conversation_id == self.active_conversation_id:
            return
        conversation = self.conversation(conversation_id)
        if conversation is not None:
            conversation["unread_count"] = int(conversation.get("unread_count", 0)) + 1
            self.total_unread += 1

    def update_message_status(self, conversation_id: str, message_id: str, status: str) -> bool:
        for message in self.messages(conversation_id):
            if message["_id"] != message_id:
                continue
            if not can_transition(message.get("status", "sending"), status):
                return False
            message["status"] = status
            return True
        return False

    def set_typing(self, conversation_id: str, user_id: str, typing: bool) -> None:
        users = self.typing_users.setdefault(conversation_id, set())
        if typing:
            users.add(user_id)
        else:
            users.discard(user_id)
