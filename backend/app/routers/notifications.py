from fastapi import APIRouter, Depends, HTTPException, Query

from app.schemas import (
    ApiResponse,
    DeletedCountOut,
    NotificationEventIn,
    NotificationListOut,
    NotificationOut,
    UnreadCountOut,
    UpdatedCountOut,
)
from app.security import CurrentUser, get_current_user, verify_internal_secret
from app.services import notification_service

router = APIRouter(prefix="/api/notifications", tags=["notifications"])

# Domain services (reviews, moderation, bookings) originate notifications here
internal_router = APIRouter(
    prefix="/internal/notifications",
    tags=["notifications-internal"],
    dependencies=[Depends(verify_internal_secret)],
)


@router.get("", response_model=ApiResponse[NotificationListOut])
async def get_notifications(
    unread_only: bool = Query(False, alias="unreadOnly"),
    current: CurrentUser = Depends(get_current_user),
):
    """Notifications of the current user, newest first."""
    notifications = await notification_service.list_notifications(current.user_id, unread_only)
    return ApiResponse(data=NotificationListOut(notifications=notifications))


@router.get("/unread/count", response_model=ApiResponse[UnreadCountOut])
async def get_unread_count(current: CurrentUser = Depends(get_current_user)):
    count = await notification_service.unread_count(current.user_id)
    return ApiResponse(data=UnreadCountOut(unreadCount=count))


@router.put("/read/all", response_model=ApiResponse[UpdatedCountOut])
async def mark_all_as_read(current: CurrentUser = Depends(get_current_user)):
    count = await notification_service.mark_all_read(current.user_id)
    return ApiResponse(message="All notifications marked as read", data=UpdatedCountOut(updatedCount=count))


@router.put("/{notification_id}/read", response_model=ApiResponse[dict])
async def mark_as_read(notification_id: str, current: CurrentUser = Depends(get_current_user)):
    if not await notification_service.mark_read(notification_id, current.user_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return ApiResponse(message="Notification marked as read")


@router.delete("/read/all", response_model=ApiResponse[DeletedCountOut])
async def delete_all_read(current: CurrentUser = Depends(get_current_user)):
    count = await notification_service.delete_all_read(current.user_id)
    return ApiResponse(message="All read notifications deleted", data=DeletedCountOut(deletedCount=count))


@router.delete("/{notification_id}", response_model=ApiResponse[dict])
async def delete_notification(notification_id: str, current: CurrentUser = Depends(get_current_user)):
    if not await notification_service.delete_notification(notification_id, current.user_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return ApiResponse(message="Notification deleted successfully")


@internal_router.post("", status_code=201, response_model=ApiResponse[NotificationOut])
async def publish_notification(event: NotificationEventIn):
    """Persist a domain-event notification and push it to all of the user's sessions."""
    notification = await notification_service.notify_user(
        user_id=event.userID,
        notification_type=event.notificationType,
        message=event.message,
        request_id=event.requestID,
        review_id=event.reviewID,
        reason=event.reason,
    )
    return ApiResponse(data=notification)
