from fastapi import APIRouter, Depends

from admin_messaging.schemas.user import UserPublic
from admin_messaging.services.messaging_service import MessagingService
from admin_messaging.utils.dependencies import get_current_user, get_messaging_service


router = APIRouter(prefix="/users", tags=["messaging"])


@router.get("/available")
async def available_users(
    current_user: dict = Depends(get_current_user),
    service: MessagingService = Depends(get_messaging_service),
):
    users = await service.list_available_users(current_user["_id"], current_user.get("role"))
    return {"success": True, "data": [UserPublic.from_document(u) for u in users]}
