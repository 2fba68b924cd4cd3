from fastapi import APIRouter, Depends

from admin_messaging.schemas.messaging import EditMessageRequest
from admin_messaging.services.messaging_service import MessagingService
from admin_messaging.utils.dependencies import get_current_user, get_messaging_service, valid_object_id


router = APIRouter(prefix="/messages", tags=["messaging"])


@router.patch("/{message_id}")
async def edit_message(
    message_id: str,
    body: EditMessageRequest,
    current_user: dict = Depends(get_current_user),
    service: MessagingService = Depends(get_messaging_service),
):
    valid_object_id(message_id, "message id")
    message = await service.edit_message(message_id, current_user["_id"], body.content)
    return {"success": True, "data": message}


@router.delete("/{message_id}")
async def delete_message(
    message_id: str,
    current_user: dict = Depends(get_current_user),
    service: MessagingService = Depends(get_messaging_service),
):
    valid_object_id(message_id, "message id")
    await service.delete_message(message_id, current_user["_id"], current_user.get("role"))
    return {"success": True, "message": "Message deleted successfully"}


@router.post("/{message_id}/delivered")
async def mark_delivered(
    message_id: str,
    current_user: dict = Depends(get_current_user),
    service: MessagingService = Depends(get_messaging_service),
):
    valid_object_id(message_id, "message id")
    message = await service.mark_delivered(message_id, current_user["_id"])
    return {"success": True, "data": message}
