from typing import List, Optional

from beanie import PydanticObjectId as OID
from beanie.operators import Set as UpdateSet

from app.constants import LiveEvent, NotificationType
from app.models import Notification
from app.schemas import NotificationOut
from app.utils.logger import get_logger

logger = get_logger("notification_service")


def notification_to_out(doc: Notification) -> NotificationOut:
    return NotificationOut(
        notificationID=str(doc.id),
        userID=doc.user_id,
        notificationType=NotificationType(doc.notification_type),
        message=doc.message,
        requestID=doc.request_id,
        reviewID=doc.review_id,
        reason=doc.reason,
        createdAt=doc.created_at,
        readStatus=doc.read_status,
    )


def _parse_id(notification_id: str) -> Optional[OID]:
    try:
        return OID(notification_id)
    except Exception:
        return None


async def notify_user(
    *,
    user_id: str,
    notification_type: NotificationType,
    message: str,
    request_id: str | None = None,
    review_id: str | None = None,
    reason: str | None = None,
) -> NotificationOut:
    """Persist a notification and push it to every live session of the user."""
    doc = Notification(
        user_id=user_id,
        notification_type=notification_type.value,
        message=message,
        request_id=request_id,
        review_id=review_id,
        reason=reason,
    )
    await doc.insert()
    notification = notification_to_out(doc)
    await push_notification(notification)
    return notification


async def push_notification(notification: NotificationOut) -> None:
    """Live push only; the stored copy stays reachable through REST if this fails."""
    from app.services.socket_service import emit_to_user

    try:
        await emit_to_user(
            notification.userID,
            LiveEvent.NEW_NOTIFICATION,
            notification.model_dump(mode="json", exclude_none=True),
        )
    except Exception as e:
        logger.warning(f"Failed to push notification {notification.notificationID} to {notification.userID}: {e}")


async def list_notifications(user_id: str, unread_only: bool = False) -> List[NotificationOut]:
    query = Notification.find(Notification.user_id == user_id)
    if unread_only:
        query = query.find(Notification.read_status == False)
    docs = await query.sort(-Notification.created_at).to_list()
    return [notification_to_out(d) for d in docs]


async def unread_count(user_id: str) -> int:
    return await Notification.find(
        Notification.user_id == user_id,
        Notification.read_status == False,
    ).count()


async def mark_read(notification_id: str, user_id: str) -> bool:
    """False when the notification does not exist or belongs to someone else."""
    oid = _parse_id(notification_id)
    if oid is None:
        return False
    doc = await Notification.find_one(Notification.id == oid, Notification.user_id == user_id)
    if not doc:
        return False
    if not doc.read_status:
        doc.read_status = True
        await doc.save()
    return True


async def mark_all_read(user_id: str) -> int:
    result = await Notification.find(
        Notification.user_id == user_id,
        Notification.read_status == False,
    ).update(UpdateSet({Notification.read_status: True}))
    return getattr(result, "modified_count", 0) or 0


async def delete_notification(notification_id: str, user_id: str) -> bool:
    oid = _parse_id(notification_id)
    if oid is None:
        return False
    doc = await Notification.find_one(Notification.id == oid, Notification.user_id == user_id)
    if not doc:
        return False
    await doc.delete()
    return True


async def delete_all_read(user_id: str) -> int:
    result = await Notification.find(
        Notification.user_id == user_id,
        Notification.read_status == True,
    ).delete()
    return getattr(result, "deleted_count", 0) or 0
