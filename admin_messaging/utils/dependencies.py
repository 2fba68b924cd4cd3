import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from admin_messaging.config import Settings, get_settings
from admin_messaging.database.connection import get_database
from admin_messaging.repositories.base import ConversationStore, MessageStore, UserStore
from admin_messaging.repositories.conversation_repository import MongoConversationRepository
from admin_messaging.repositories.memory import (
    InMemoryConversationRepository,
    InMemoryMessageRepository,
    InMemoryStore,
    InMemoryUserRepository,
)
from admin_messaging.repositories.message_repository import MongoMessageRepository
from admin_messaging.repositories.user_repository import MongoUserRepository
from admin_messaging.services.attachment_service import AttachmentPipeline
from admin_messaging.services.email_service import build_email_notifier
from admin_messaging.services.messaging_service import MessagingService
from admin_messaging.services.storage_service import BlobStorage, HttpBlobStorage, InMemoryBlobStorage
from admin_messaging.services.transcoder import FfmpegTranscoder
from admin_messaging.utils.realtime_bus import get_bus
from admin_messaging.utils.security import TokenError, decode_access_token

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(scheme_name="BearerAuth", auto_error=False)


@lru_cache
def get_memory_store() -> InMemoryStore:
    return InMemoryStore()


def get_conversation_repository(settings: Settings = Depends(get_settings)) -> ConversationStore:
    if settings.storage_backend == "memory":
        return InMemoryConversationRepository(get_memory_store())
    return MongoConversationRepository(get_database())


def get_message_repository(settings: Settings = Depends(get_settings)) -> MessageStore:
    if settings.storage_backend == "memory":
        return InMemoryMessageRepository(get_memory_store())
    return MongoMessageRepository(get_database())


def get_user_repository(settings: Settings = Depends(get_settings)) -> UserStore:
    if settings.storage_backend == "memory":
        return InMemoryUserRepository(get_memory_store())
    return MongoUserRepository(get_database())


@lru_cache
def get_blob_storage() -> BlobStorage:
    settings = get_settings()
    if not settings.storage_upload_url:
        logger.warning("storage_upload_url is not set; attachments are kept in memory")
        return InMemoryBlobStorage()
    return HttpBlobStorage(settings.storage_upload_url, settings.storage_api_key, settings.upload_timeout_seconds)


@lru_cache
def get_email_notifier():
    return build_email_notifier(get_settings())


def get_attachment_pipeline(settings: Settings = Depends(get_settings)) -> AttachmentPipeline:
    return AttachmentPipeline(
        get_blob_storage(),
        FfmpegTranscoder(settings.ffmpeg_binary, settings.transcode_timeout_seconds),
        max_bytes=settings.max_attachment_bytes,
        upload_timeout=settings.upload_timeout_seconds,
    )


async def get_messaging_service(
    conversations: ConversationStore = Depends(get_conversation_repository),
    messages: MessageStore = Depends(get_message_repository),
    users: UserStore = Depends(get_user_repository),
    attachments: AttachmentPipeline = Depends(get_attachment_pipeline),
    settings: Settings = Depends(get_settings),
) -> MessagingService:
    return MessagingService(
        conversations,
        messages,
        users,
        attachments,
        email=get_email_notifier(),
        bus=await get_bus(),
        settings=settings,
    )


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def resolve_user(token: str, users: UserStore) -> Dict[str, Any]:
    """Turns a bearer token into the caller's user document; raises ``TokenError`` otherwise."""
    payload = decode_access_token(token)
    user = await users.get_by_id(payload["sub"])
    if not user:
        raise TokenError("Unknown user")
    return {
        "_id": str(user["_id"]),
        "email": user.get("email"),
        "user_name": user.get("user_name") or "",
        "role": user.get("role") or "",
    }


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    users: UserStore = Depends(get_user_repository),
) -> Dict[str, Any]:
    if credentials is None or not credentials.credentials:
        raise _unauthorized("Authorization header required")
    try:
        return await resolve_user(credentials.credentials, users)
    except TokenError as e:
        logger.warning("Rejected bearer token: %s", e)
        raise _unauthorized("Invalid or expired token") from e


def valid_object_id(value: str, label: str = "id") -> str:
    if not ObjectId.is_valid(value):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid {label}")
    return value
