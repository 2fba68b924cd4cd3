from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status

from admin_messaging.schemas.messaging import (
    DirectConversationRequest,
    MarkReadRequest,
    ParticipantRequest,
    TextMessageRequest,
)
from admin_messaging.services.attachment_service import IncomingFile
from admin_messaging.services.messaging_service import MessagingService
from admin_messaging.utils.dependencies import get_current_user, get_messaging_service, valid_object_id


router = APIRouter(prefix="/conversations", tags=["messaging"])


@router.get("")
async def list_conversations(
    status_filter: Optional[str] = Query(None, alias="status"),
    type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
    service: MessagingService = Depends(get_messaging_service),
):
    data = await service.list_conversations(current_user["_id"], status=status_filter, type=type, limit=limit)
    return {"success": True, "data": data}


@router.post("/direct")
async def get_or_create_direct(
    body: DirectConversationRequest,
    current_user: dict = Depends(get_current_user),
    service: MessagingService = Depends(get_messaging_service),
):
    valid_object_id(body.recipient_id, "recipient id")
    conversation = await service.get_or_create_direct_conversation(current_user, body.recipient_id, body.title)
    return {"success": True, "data": conversation}


@router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    current_user: dict = Depends(get_current_user),
    service: MessagingService = Depends(get_messaging_service),
):
    valid_object_id(conversation_id, "conversation id")
    conversation = await service.get_conversation_details(conversation_id, current_user["_id"])
    return {"success": True, "data": conversation}


@router.get("/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
    service: MessagingService = Depends(get_messaging_service),
):
    valid_object_id(conversation_id, "conversation id")
    data = await service.get_messages(conversation_id, current_user["_id"], page=page, limit=limit)
    return {"success": True, "data": data}


@router.post("/{conversation_id}/messages/text", status_code=status.HTTP_201_CREATED)
async def send_text(
    conversation_id: str,
    body: TextMessageRequest,
    current_user: dict = Depends(get_current_user),
    service: MessagingService = Depends(get_messaging_service),
):
    valid_object_id(conversation_id, "conversation id")
    message = await service.send_text_message(
        conversation_id,
        current_user,
        body.content,
        reply_to=body.reply_to,
        mentions=body.mentions,
        priority=body.priority,
    )
    return {"success": True, "data": message}


@router.post("/{conversation_id}/messages/media", status_code=status.HTTP_201_CREATED)
async def send_media(
    conversation_id: str,
    files: Optional[List[UploadFile]] = File(None),
    content: Optional[str] = Form(None),
    reply_to: Optional[str] = Form(None, alias="replyTo"),
    priority: str = Form("normal"),
    current_user: dict = Depends(get_current_user),
    service: MessagingService = Depends(get_messaging_service),
):
    valid_object_id(conversation_id, "conversation id")
    incoming = []
    for upload in files or []:
        incoming.append(IncomingFile(await upload.read(), upload.content_type or "", upload.filename or "file"))
    message = await service.send_media_message(
        conversation_id,
        current_user,
        incoming,
        caption=content,
        reply_to=reply_to,
        priority=priority,
    )
    return {"success": True, "data": message}


@router.post("/{conversation_id}/read")
async def mark_read(
    conversation_id: str,
    body: Optional[MarkReadRequest] = None,
    current_user: dict = Depends(get_current_user),
    service: MessagingService = Depends(get_messaging_service),
):
    valid_object_id(conversation_id, "conversation id")
    message_ids = body.message_ids if body else None
    marked = await service.mark_as_read(conversation_id, current_user["_id"], message_ids)
    return {"success": True, "message": "Messages marked as read", "marked": marked}


@router.post("/{conversation_id}/archive")
async def archive(
    conversation_id: str,
    current_user: dict = Depends(get_current_user),
    service: MessagingService = Depends(get_messaging_service),
):
    valid_object_id(conversation_id, "conversation id")
    await service.archive_conversation(conversation_id, current_user["_id"])
    return {"success": True, "message": "Conversation archived successfully"}


@router.post("/{conversation_id}/participants")
async def add_participant(
    conversation_id: str,
    body: ParticipantRequest,
    current_user: dict = Depends(get_current_user),
    service: MessagingService = Depends(get_messaging_service),
):
    valid_object_id(conversation_id, "conversation id")
    valid_object_id(body.user_id, "user id")
    conversation = await service.add_participant(conversation_id, current_user["_id"], body.user_id)
    return {"success": True, "data": conversation}


@router.delete("/{conversation_id}/participants/{user_id}")
async def remove_participant(
    conversation_id: str,
    user_id: str,
    current_user: dict = Depends(get_current_user),
    service: MessagingService = Depends(get_messaging_service),
):
    valid_object_id(conversation_id, "conversation id")
    conversation = await service.remove_participant(conversation_id, current_user["_id"], user_id)
    return {"success": True, "data": conversation}
