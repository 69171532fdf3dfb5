from fastapi import APIRouter, Depends, Query, Request, Response, status
from typing import List
from uuid import UUID

from ..services.errors import ServiceError
from ..services.notification_service import NotificationService
from ..models.db_models import User, Notification
from .auth import get_current_user
from .dependencies import get_notification_service
from .utilities.errors import to_http_exception
from .utilities.limiter import limiter

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=List[Notification], summary="List my notifications, newest first")
@limiter.limit("60/minute")
async def list_notifications(
    request: Request,
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service)
):
    return await service.list_notifications(user.user_id, unread_only=unread_only, limit=limit)

@router.get("/unread-count", summary="Number of unread notifications")
@limiter.limit("120/minute")
async def unread_count(request: Request, user: User = Depends(get_current_user), service: NotificationService = Depends(get_notification_service)):
    return {"unread": await service.unread_count(user.user_id)}

@router.post("/{notification_id}/read", status_code=status.HTTP_204_NO_CONTENT, summary="Mark one notification as read")
@limiter.limit("120/minute")
async def mark_read(request: Request, notification_id: UUID, user: User = Depends(get_current_user), service: NotificationService = Depends(get_notification_service)):
    try:
        await service.mark_read(user.user_id, notification_id)
    except ServiceError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

@router.post("/read-all", summary="Mark all my notifications as read")
@limiter.limit("30/minute")
async def mark_all_read(request: Request, user: User = Depends(get_current_user), service: NotificationService = Depends(get_notification_service)):
    return {"updated": await service.mark_all_read(user.user_id)}
