# services/messaging_service.py
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from admin_messaging.config import Settings, get_settings
from admin_messaging.models.conversation import (
    CONVERSATION_STATUSES,
    CONVERSATION_TYPES,
    direct_key,
    is_participant,
    new_conversation,
    participant_ids,
    participant_role,
    unread_for,
    with_participant,
    without_participant,
)
from admin_messaging.models.message import (
    MESSAGE_PRIORITIES,
    can_transition,
    category_for_mime,
    last_message_snapshot,
    new_message,
)
from admin_messaging.models.user import ELEVATED_ROLES, MESSAGING_DIRECTORY
from admin_messaging.repositories.base import ConversationStore, DuplicateConversation, MessageStore, UserStore
from admin_messaging.services.attachment_service import AttachmentPipeline, IncomingFile, message_type_for
from admin_messaging.services.errors import (
    AccessDenied,
    EditWindowExpired,
    Forbidden,
    InvalidInput,
    NoFiles,
    NotFound,
    UnsupportedOperation,
)
from admin_messaging.utils.realtime_bus import publish_safely

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class MessagingService:

    def __init__(
        self,
        conversation_repo: ConversationStore,
        message_repo: MessageStore,
        user_repo: UserStore,
        attachments: AttachmentPipeline,
        email=None,
        bus=None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._conversations = conversation_repo
        self._messages = message_repo
        self._users = user_repo
        self._attachments = attachments
        self._email = email
        self._bus = bus
        self._settings = settings or get_settings()
        self._clock = clock

    # -- helpers ---------------------------------------------------------

    async def _participant_conversation(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        # missing and not-a-participant look the same to the caller
        conversation = await self._conversations.get_by_id(conversation_id)
        if not is_participant(conversation, user_id):
            raise AccessDenied("Access denied to this conversation")
        return conversation

    async def _publish(self, user_ids: Sequence[str], event_type: str, payload: Dict[str, Any]) -> None:
        if self._bus is None or not user_ids:
            return
        await publish_safely(self._bus, user_ids, event_type, payload)

    def _others(self, conversation: Dict[str, Any], user_id: str) -> List[str]:
        return [pid for pid in participant_ids(conversation) if pid != str(user_id)]

    def _with_unread(self, conversation: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        conversation["unread_count"] = unread_for(conversation, user_id)
        return conversation

    async def _system_message(
        self,
        conversation_id: str,
        system_message_type: str,
        content: str,
        sender_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = self._clock()
        doc = new_message(
            conversation_id,
            sender_id,
            now,
            content=content,
            system_message_type=system_message_type,
        )
        message = await self._messages.create(doc)
        await self._conversations.touch(conversation_id, now)
        return message

    async def _commit_message(self, conversation: Dict[str, Any], message: Dict[str, Any]) -> Dict[str, Any]:
        """Counts a stored ``sending`` message for the other participants, then moves it to ``sent``."""
        sender_id = message["sender_id"]
        try:
            await self._conversations.apply_new_message(
                conversation["_id"],
                last_message_snapshot(message),
                self._others(conversation, sender_id),
                message["created_at"],
            )
        except Exception as e:
            logger.error("Failed to update conversation %s for message %s: %s", conversation["_id"], message["_id"], e)
            await self.mark_failed(message["_id"], "conversation_update_failed", str(e))
            raise
        sent = await self._messages.transition_status(message["_id"], ("sending",), "sent", self._clock())
        if sent is not None:
            return sent
        current = await self._messages.get_by_id(message["_id"]) or message
        if current.get("status") == "failed":
            # failed while its counters were being applied
            await self._release_unread(current)
        return current

    async def _notify_by_email(self, conversation: Dict[str, Any], sender: Dict[str, Any], preview: str) -> None:
        if self._email is None or not getattr(self._email, "enabled", True):
            return
        for recipient_id in self._others(conversation, sender["_id"]):
            try:
                recipient = await self._users.get_by_id(recipient_id)
                if not recipient or not recipient.get("email"):
                    continue
                await self._email.send_message_notification(
                    recipient["email"],
                    recipient.get("user_name") or "",
                    sender.get("user_name") or "",
                    sender.get("role") or "",
                    preview,
                    conversation["_id"],
                )
            except Exception as e:
                logger.warning("Email notification to %s failed: %s", recipient_id, e)

    # -- conversations ---------------------------------------------------

    async def list_conversations(
        self,
        user_id: str,
        status: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 50,
    ) -> Dict[str, Any]:
        if status is not None and status not in CONVERSATION_STATUSES:
            raise InvalidInput(f"Unknown conversation status: {status}")
        if type is not None and type not in CONVERSATION_TYPES:
            raise InvalidInput(f"Unknown conversation type: {type}")
        if limit < 1:
            raise InvalidInput("limit must be positive")
        conversations = await self._conversations.list_for_participant(user_id, status=status, type=type, limit=limit)
        total_unread = await self._conversations.sum_unread(user_id)
        return {
            "conversations": [self._with_unread(c, user_id) for c in conversations],
            "total_unread": total_unread,
            "count": len(conversations),
        }

    async def get_or_create_direct_conversation(
        self,
        current_user: Dict[str, Any],
        recipient_id: str,
        title: Optional[str] = None,
    ) -> Dict[str, Any]:
        user_id = str(current_user["_id"])
        if str(recipient_id) == user_id:
            raise InvalidInput("Cannot start a conversation with yourself")
        recipient = await self._users.get_by_id(recipient_id)
        if not recipient:
            raise NotFound("Recipient not found")

        key = direct_key(user_id, recipient["_id"])
        existing = await self._conversations.find_direct(key)
        if existing:
            return self._with_unread(existing, user_id)

        now = self._clock()
        title = (title or "").strip() or f"Chat with {recipient.get('user_name') or 'user'}"
        doc = new_conversation(
            [
                {"user_id": user_id, "role": current_user.get("role", ""), "joined_at": now},
                {"user_id": str(recipient["_id"]), "role": recipient.get("role", ""), "joined_at": now},
            ],
            title,
            now,
        )
        try:
            conversation = await self._conversations.create(doc)
        except DuplicateConversation:
            # lost the race with a concurrent create for the same pair
            existing = await self._conversations.find_direct(key)
            if existing is None:
                raise
            return self._with_unread(existing, user_id)

        logger.info("Direct conversation %s created between %s and %s", conversation["_id"], user_id, recipient["_id"])
        await self._system_message(
            conversation["_id"],
            "conversation_created",
            f"Conversation started by {current_user.get('user_name') or user_id}",
            sender_id=user_id,
        )
        conversation = await self._conversations.get_by_id(conversation["_id"]) or conversation
        return self._with_unread(conversation, user_id)

    async def get_conversation_details(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        conversation = await self._participant_conversation(conversation_id, user_id)
        await self._mark_read(conversation, user_id)
        conversation = await self._conversations.get_by_id(conversation_id) or conversation
        return self._with_unread(conversation, user_id)

    async def archive_conversation(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        conversation = await self._participant_conversation(conversation_id, user_id)
        archived = await self._conversations.archive(conversation["_id"], user_id, self._clock())
        if archived is None:
            raise AccessDenied("Access denied to this conversation")
        logger.info("Conversation %s archived by %s", conversation_id, user_id)
        await self._publish(
            participant_ids(conversation),
            "conversation_archived",
            {"conversation_id": conversation["_id"], "archived_by": str(user_id)},
        )
        return archived

    async def add_participant(self, conversation_id: str, user_id: str, new_user_id: str) -> Dict[str, Any]:
        conversation = await self._participant_conversation(conversation_id, user_id)
        if conversation.get("type") == "direct":
            raise UnsupportedOperation("Direct conversations have exactly two participants")
        if is_participant(conversation, new_user_id):
            return conversation
        user = await self._users.get_by_id(new_user_id)
        if not user:
            raise NotFound("User not found")
        now = self._clock()
        updated = with_participant(conversation, user["_id"], user.get("role", ""), now)
        await self._conversations.replace_participants(
            conversation["_id"], updated["participants"], updated["unread_counters"], now
        )
        await self._system_message(
            conversation["_id"], "user_joined", f"{user.get('user_name') or user['_id']} joined the conversation"
        )
        return await self._conversations.get_by_id(conversation["_id"]) or updated

    async def remove_participant(self, conversation_id: str, user_id: str, removed_user_id: str) -> Dict[str, Any]:
        conversation = await self._participant_conversation(conversation_id, user_id)
        if conversation.get("type") == "direct":
            raise UnsupportedOperation("Direct conversations have exactly two participants")
        if not is_participant(conversation, removed_user_id):
            raise NotFound("User is not a participant")
        now = self._clock()
        updated = without_participant(conversation, removed_user_id)
        await self._conversations.replace_participants(
            conversation["_id"], updated["participants"], updated["unread_counters"], now
        )
        await self._system_message(conversation["_id"], "user_left", f"{removed_user_id} left the conversation")
        return await self._conversations.get_by_id(conversation["_id"]) or updated

    # -- messages --------------------------------------------------------

    async def get_messages(self, conversation_id: str, user_id: str, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        if page < 1:
            raise InvalidInput("page must be at least 1")
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise InvalidInput(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        await self._participant_conversation(conversation_id, user_id)

        newest_first = await self._messages.list_page(conversation_id, skip=(page - 1) * limit, limit=limit)
        total = await self._messages.count_visible(conversation_id)
        return {
            "messages": list(reversed(newest_first)),
            "pagination": {
                "current_page": page,
                "total_pages": math.ceil(total / limit),
                "total_messages": total,
                "has_more": page * limit < total,
            },
        }

    async def send_text_message(
        self,
        conversation_id: str,
        user: Dict[str, Any],
        content: Optional[str],
        reply_to: Optional[str] = None,
        mentions: Optional[List[str]] = None,
        priority: str = "normal",
    ) -> Dict[str, Any]:
        user_id = str(user["_id"])
        conversation = await self._participant_conversation(conversation_id, user_id)

        content = (content or "").strip()
        if not content:
            raise InvalidInput("Message content is required")
        if len(content) > self._settings.max_message_length:
            raise InvalidInput(f"Message cannot exceed {self._settings.max_message_length} characters")
        if priority not in MESSAGE_PRIORITIES:
            raise InvalidInput(f"Unknown message priority: {priority}")
        await self._check_reply_target(conversation_id, reply_to)

        doc = new_message(
            conversation["_id"],
            user_id,
            self._clock(),
            content=content,
            reply_to=reply_to,
            mentions=mentions,
            priority=priority,
            status="sending",
        )
        message = await self._commit_message(conversation, await self._messages.create(doc))
        logger.debug("Text message %s sent to conversation %s", message["_id"], conversation_id)

        await self._notify_by_email(conversation, user, content)
        await self._publish(
            self._others(conversation, user_id),
            "new_message",
            {"conversation_id": conversation["_id"], "message": message},
        )
        return message

    async def send_media_message(
        self,
        conversation_id: str,
        user: Dict[str, Any],
        files: Sequence[IncomingFile],
        caption: Optional[str] = None,
        reply_to: Optional[str] = None,
        mentions: Optional[List[str]] = None,
        priority: str = "normal",
    ) -> Dict[str, Any]:
        user_id = str(user["_id"])
        conversation = await self._participant_conversation(conversation_id, user_id)

        if not files:
            raise NoFiles("No files uploaded")
        if len(files) > self._settings.max_files_per_message:
            raise InvalidInput(f"At most {self._settings.max_files_per_message} files per message")
        if priority not in MESSAGE_PRIORITIES:
            raise InvalidInput(f"Unknown message priority: {priority}")
        caption = (caption or "").strip() or None
        if caption and len(caption) > self._settings.max_message_length:
            raise InvalidInput(f"Message cannot exceed {self._settings.max_message_length} characters")
        await self._check_reply_target(conversation_id, reply_to)
        self._check_feature(conversation, category_for_mime(files[0].mime_type))

        attachments = await self._attachments.process_many(files)
        message_type = message_type_for(attachments)

        doc = new_message(
            conversation["_id"],
            user_id,
            self._clock(),
            message_type=message_type,
            content=caption,
            attachments=attachments,
            reply_to=reply_to,
            mentions=mentions,
            priority=priority,
            status="sending",
        )
        message = await self._commit_message(conversation, await self._messages.create(doc))
        logger.info("%s message %s with %d attachment(s) sent", message_type, message["_id"], len(attachments))

        await self._publish(
            self._others(conversation, user_id),
            "new_message",
            {"conversation_id": conversation["_id"], "message": message},
        )
        return message

    def _check_feature(self, conversation: Dict[str, Any], message_type: str) -> None:
        features = conversation.get("features") or {}
        flag = {"audio": "audio_messages", "video": "video_messages"}.get(message_type, "file_sharing")
        if not features.get(flag, True):
            raise Forbidden(f"{message_type} messages are disabled in this conversation")

    async def _check_reply_target(self, conversation_id: str, reply_to: Optional[str]) -> None:
        if not reply_to:
            return
        target = await self._messages.get_by_id(reply_to)
        if not target or target.get("deleted_at") or target["conversation_id"] != str(conversation_id):
            raise InvalidInput("Reply target is not a message in this conversation")

    async def _mark_read(
        self,
        conversation: Dict[str, Any],
        user_id: str,
        message_ids: Optional[Sequence[str]] = None,
    ) -> int:
        marked = await self._messages.mark_read(conversation["_id"], user_id, self._clock(), message_ids=message_ids)
        await self._conversations.decrement_unread(conversation["_id"], user_id, marked)
        return marked

    async def mark_as_read(
        self,
        conversation_id: str,
        user_id: str,
        message_ids: Optional[Sequence[str]] = None,
    ) -> int:
        conversation = await self._participant_conversation(conversation_id, user_id)
        marked = await self._mark_read(conversation, user_id, message_ids or None)

        if marked:
            await self._publish(
                self._others(conversation, user_id),
                "messages_read",
                {
                    "conversation_id": conversation["_id"],
                    "read_by": str(user_id),
                    "message_ids": list(message_ids) if message_ids else "all",
                },
            )
        return marked

    async def edit_message(self, message_id: str, user_id: str, content: Optional[str]) -> Dict[str, Any]:
        message = await self._messages.get_by_id(message_id)
        if not message or message.get("deleted_at"):
            raise NotFound("Message not found")
        if message.get("sender_id") != str(user_id):
            raise Forbidden("You can only edit your own messages")
        age = self._clock() - _as_aware(message["created_at"])
        if age > timedelta(hours=self._settings.edit_window_hours):
            raise EditWindowExpired(f"Messages can only be edited within {self._settings.edit_window_hours} hours")
        if message.get("message_type") != "text" or message.get("is_system_message"):
            raise UnsupportedOperation("Only text messages can be edited")
        content = (content or "").strip()
        if not content:
            raise InvalidInput("Message content is required")
        if len(content) > self._settings.max_message_length:
            raise InvalidInput(f"Message cannot exceed {self._settings.max_message_length} characters")

        updated = await self._messages.update_content(message_id, content, self._clock())
        if updated is None:
            raise NotFound("Message not found")
        conversation = await self._conversations.get_by_id(updated["conversation_id"])
        if conversation:
            await self._publish(
                participant_ids(conversation),
                "message_edited",
                {
                    "conversation_id": updated["conversation_id"],
                    "message_id": updated["_id"],
                    "content": content,
                    "edited_at": updated["edited_at"],
                },
            )
        return updated

    async def delete_message(self, message_id: str, user_id: str, role: Optional[str] = None) -> Dict[str, Any]:
        message = await self._messages.get_by_id(message_id)
        if not message or message.get("deleted_at"):
            raise NotFound("Message not found")
        conversation = await self._conversations.get_by_id(message["conversation_id"])
        if conversation is None:
            raise NotFound("Message not found")
        if message.get("sender_id") != str(user_id):
            member_role = participant_role(conversation, user_id)
            elevated = member_role in ELEVATED_ROLES or (
                member_role is not None and role in ELEVATED_ROLES
            )
            if not elevated:
                raise Forbidden("You can only delete your own messages")

        deleted = await self._messages.soft_delete(message_id, user_id, self._clock())
        if deleted is None:
            raise NotFound("Message not found")
        logger.info("Message %s deleted by %s", message_id, user_id)
        await self._publish(
            participant_ids(conversation),
            "message_deleted",
            {"conversation_id": message["conversation_id"], "message_id": message["_id"], "deleted_by": str(user_id)},
        )
        return deleted

    async def mark_delivered(self, message_id: str, user_id: str) -> Dict[str, Any]:
        message = await self._messages.get_by_id(message_id)
        if not message or message.get("deleted_at"):
            raise NotFound("Message not found")
        await self._participant_conversation(message["conversation_id"], user_id)
        if message.get("sender_id") == str(user_id):
            raise Forbidden("Only a recipient can confirm delivery")
        if not can_transition(message["status"], "delivered"):
            return message
        now = self._clock()
        updated = await self._messages.transition_status(
            message_id, ("sent",), "delivered", now, {"delivered_at": now}
        )
        return updated or await self._messages.get_by_id(message_id) or message

    async def mark_failed(self, message_id: str, code: str, reason: str) -> Optional[Dict[str, Any]]:
        message = await self._messages.get_by_id(message_id)
        if not message or not can_transition(message["status"], "failed"):
            return message
        retry_count = int((message.get("error_info") or {}).get("retry_count", 0))
        extra = {"error_info": {"code": code, "message": reason, "retry_count": retry_count}}
        now = self._clock()

        # a sending message was never counted; anything later was
        failed = await self._messages.transition_status(message_id, ("sending",), "failed", now, extra)
        if failed is not None:
            return failed
        failed = await self._messages.transition_status(message_id, ("sent", "delivered"), "failed", now, extra)
        if failed is None:
            return await self._messages.get_by_id(message_id)
        await self._release_unread(failed)
        return failed

    async def _release_unread(self, message: Dict[str, Any]) -> None:
        # failed messages are not unread for anyone
        if message.get("is_system_message"):
            return
        conversation = await self._conversations.get_by_id(message["conversation_id"])
        if not conversation:
            return
        readers = {r["user_id"] for r in message.get("read_by", [])}
        for uid in self._others(conversation, message.get("sender_id") or ""):
            if uid not in readers:
                await self._conversations.decrement_unread(conversation["_id"], uid, 1)

    # -- directory -------------------------------------------------------

    async def list_available_users(self, user_id: str, role: Optional[str]) -> List[Dict[str, Any]]:
        roles = MESSAGING_DIRECTORY.get(role or "")
        if not roles:
            raise Forbidden("Messaging not available for your role")
        return await self._users.list_by_roles(roles, exclude_id=user_id)
