from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple, TypedDict


ConversationType = Literal["direct", "support", "product_related", "general", "system"]
ConversationStatus = Literal["active", "closed", "archived"]
ConversationPriority = Literal["low", "normal", "high", "urgent"]

CONVERSATION_TYPES = ("direct", "support", "product_related", "general", "system")
CONVERSATION_STATUSES = ("active", "closed", "archived")
CONVERSATION_PRIORITIES = ("low", "normal", "high", "urgent")
RELATED_ENTITY_TYPES = ("product", "order", "user", "general")

MAX_TITLE_LENGTH = 200


class Participant(TypedDict):
    user_id: str
    role: str
    joined_at: datetime


class RelatedEntity(TypedDict, total=False):
    type: str
    entity_id: str
    entity_title: str


class LastMessage(TypedDict):
    message_id: str
    content: str
    sender_id: Optional[str]
    sent_at: datetime
    message_type: str


class ConversationFeatures(TypedDict):
    file_sharing: bool
    audio_messages: bool
    video_messages: bool


class ConversationDocument(TypedDict, total=False):
    _id: str
    participants: List[Participant]
    title: str
    type: ConversationType
    related_entity: Optional[RelatedEntity]
    last_message: Optional[LastMessage]
    # per-user unread counters (user_id -> count)
    unread_counters: Dict[str, int]
    status: ConversationStatus
    priority: ConversationPriority
    tags: List[str]
    features: ConversationFeatures
    archived_at: Optional[datetime]
    archived_by: Optional[str]
    # set only while a direct conversation is not archived; carries the unique index
    direct_key: str
    created_at: datetime
    updated_at: datetime


def direct_key(user_a: str, user_b: str) -> str:
    return ":".join(sorted([str(user_a), str(user_b)]))


def unique_participants(participants: List[Participant]) -> List[Participant]:
    seen = set()
    result: List[Participant] = []
    for participant in participants:
        uid = str(participant["user_id"])
        if uid in seen:
            continue
        seen.add(uid)
        result.append(participant)
    return result


def participant_ids(conversation: Dict[str, Any]) -> List[str]:
    return [str(p["user_id"]) for p in conversation.get("participants", [])]


def is_participant(conversation: Optional[Dict[str, Any]], user_id: str) -> bool:
    if not conversation:
        return False
    return str(user_id) in participant_ids(conversation)


def participant_role(conversation: Dict[str, Any], user_id: str) -> Optional[str]:
    for participant in conversation.get("participants", []):
        if str(participant["user_id"]) == str(user_id):
            return participant.get("role")
    return None


def unread_for(conversation: Dict[str, Any], user_id: str) -> int:
    return int((conversation.get("unread_counters") or {}).get(str(user_id), 0))


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def sort_key(conversation: Dict[str, Any]) -> Tuple[bool, datetime, datetime]:
    # same order as sorting on (last_message.sent_at desc, updated_at desc) in MongoDB,
    # where conversations without a message come after every conversation with one
    last = conversation.get("last_message") or {}
    sent_at = last.get("sent_at")
    updated_at = conversation.get("updated_at") or conversation.get("created_at") or _EPOCH
    return (sent_at is not None, sent_at or _EPOCH, updated_at)


def new_conversation(
    participants: List[Participant],
    title: str,
    now: datetime,
    type: str = "direct",
    priority: str = "normal",
    related_entity: Optional[RelatedEntity] = None,
) -> ConversationDocument:
    if type not in CONVERSATION_TYPES:
        raise ValueError(f"Unknown conversation type: {type}")
    if priority not in CONVERSATION_PRIORITIES:
        raise ValueError(f"Unknown conversation priority: {priority}")
    if related_entity and related_entity.get("type") not in RELATED_ENTITY_TYPES:
        raise ValueError(f"Unknown related entity type: {related_entity.get('type')}")
    participants = unique_participants(participants)
    doc: ConversationDocument = {
        "participants": participants,
        "title": title.strip()[:MAX_TITLE_LENGTH],
        "type": type,
        "related_entity": related_entity,
        "last_message": None,
        "unread_counters": {str(p["user_id"]): 0 for p in participants},
        "status": "active",
        "priority": priority,
        "tags": [],
        "features": {"file_sharing": True, "audio_messages": True, "video_messages": True},
        "archived_at": None,
        "archived_by": None,
        "created_at": now,
        "updated_at": now,
    }
    if type == "direct" and len(participants) == 2:
        doc["direct_key"] = direct_key(participants[0]["user_id"], participants[1]["user_id"])
    return doc


def with_participant(conversation: Dict[str, Any], user_id: str, role: str, now: datetime) -> Dict[str, Any]:
    if is_participant(conversation, user_id):
        return conversation
    participants = list(conversation.get("participants", []))
    participants.append({"user_id": str(user_id), "role": role, "joined_at": now})
    counters = dict(conversation.get("unread_counters") or {})
    counters.setdefault(str(user_id), 0)
    return {**conversation, "participants": unique_participants(participants), "unread_counters": counters}


def without_participant(conversation: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    uid = str(user_id)
    participants = [p for p in conversation.get("participants", []) if str(p["user_id"]) != uid]
    counters = {k: v for k, v in (conversation.get("unread_counters") or {}).items() if k != uid}
    return {**conversation, "participants": participants, "unread_counters": counters}
