from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, TypedDict


MessageType = Literal["text", "image", "audio", "video", "file"]
MessageStatus = Literal["sending", "sent", "delivered", "read", "failed"]

MESSAGE_TYPES = ("text", "image", "audio", "video", "file")
MESSAGE_PRIORITIES = ("normal", "high", "urgent")
SYSTEM_MESSAGE_TYPES = (
    "user_joined",
    "user_left",
    "conversation_created",
    "conversation_closed",
    "conversation_reopened",
    "role_change",
    "team_update",
)

# forward order of the delivery lifecycle; "failed" sits outside it
STATUS_ORDER = ("sending", "sent", "delivered", "read")
TERMINAL_STATUSES = ("read", "failed")


class Attachment(TypedDict, total=False):
    file_name: str
    original_name: str
    file_url: str
    file_size: int
    mime_type: str
    duration: Optional[float]
    width: Optional[int]
    height: Optional[int]
    thumbnail: Optional[str]


class ReadReceipt(TypedDict):
    user_id: str
    read_at: datetime


class ErrorInfo(TypedDict, total=False):
    code: str
    message: str
    retry_count: int


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: Optional[str]
    message_type: MessageType
    content: Optional[str]
    attachments: List[Attachment]
    status: MessageStatus
    read_by: List[ReadReceipt]
    reply_to: Optional[str]
    mentions: List[str]
    priority: str
    is_system_message: bool
    system_message_type: Optional[str]
    delivered_at: Optional[datetime]
    edited_at: Optional[datetime]
    deleted_at: Optional[datetime]
    deleted_by: Optional[str]
    error_info: Optional[ErrorInfo]
    created_at: datetime
    updated_at: datetime


def can_transition(current: str, target: str) -> bool:
    if current in TERMINAL_STATUSES or current == target:
        return False
    if target == "failed":
        return current in ("sending", "sent", "delivered")
    if current not in STATUS_ORDER or target not in STATUS_ORDER:
        return False
    return STATUS_ORDER.index(target) > STATUS_ORDER.index(current)


def category_for_mime(mime_type: str) -> str:
    """Maps a MIME type to the message type / storage category it belongs to."""
    base = (mime_type or "").split(";", 1)[0].strip().lower()
    if base.startswith("image/"):
        return "image"
    if base.startswith("audio/"):
        return "audio"
    if base.startswith("video/"):
        return "video"
    return "file"


def preview_for(message: Dict[str, Any]) -> str:
    if message.get("message_type", "text") == "text":
        return message.get("content") or ""
    return f"[{message['message_type'].upper()}]"


def last_message_snapshot(message: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "message_id": str(message["_id"]),
        "content": preview_for(message),
        "sender_id": message.get("sender_id"),
        "sent_at": message["created_at"],
        "message_type": message.get("message_type", "text"),
    }


def is_read_by(message: Dict[str, Any], user_id: str) -> bool:
    return any(r["user_id"] == str(user_id) for r in message.get("read_by", []))


def new_message(
    conversation_id: str,
    sender_id: Optional[str],
    now: datetime,
    message_type: str = "text",
    content: Optional[str] = None,
    attachments: Optional[List[Attachment]] = None,
    reply_to: Optional[str] = None,
    mentions: Optional[List[str]] = None,
    priority: str = "normal",
    system_message_type: Optional[str] = None,
    status: str = "sent",
) -> MessageDocument:
    if message_type not in MESSAGE_TYPES:
        raise ValueError(f"Unknown message type: {message_type}")
    if priority not in MESSAGE_PRIORITIES:
        raise ValueError(f"Unknown message priority: {priority}")
    if system_message_type is not None and system_message_type not in SYSTEM_MESSAGE_TYPES:
        raise ValueError(f"Unknown system message type: {system_message_type}")
    return {
        "conversation_id": str(conversation_id),
        "sender_id": sender_id,
        "message_type": message_type,
        "content": content,
        "attachments": list(attachments or []),
        # user messages are stored as sending until their conversation update lands
        "status": status,
        "read_by": [],
        "reply_to": reply_to,
        "mentions": list(dict.fromkeys(mentions or [])),
        "priority": priority,
        "is_system_message": system_message_type is not None,
        "system_message_type": system_message_type,
        "delivered_at": None,
        "edited_at": None,
        "deleted_at": None,
        "deleted_by": None,
        "error_info": None,
        "created_at": now,
        "updated_at": now,
    }
