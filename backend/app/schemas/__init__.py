from datetime import datetime, timezone
from pydantic import BaseModel, Field, field_validator
from typing import Any, Generic, List, Optional, TypeVar

from app.constants import NotificationType

T = TypeVar("T")

# Field names follow the live-channel wire contract (camelCase), shared by
# the broker, the REST routers and the client SDK.


def _id_to_str(value: Any) -> Any:
    """Booking and user IDs arrive as ints from some callers."""
    if value is None or isinstance(value, str):
        return value
    return str(value)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ApiResponse(BaseModel, Generic[T]):
    """REST envelope: {"success": true, "data": ...}."""
    success: bool = True
    message: Optional[str] = None
    data: Optional[T] = None


# -------------------- Chat --------------------

class ChatMessageOut(BaseModel):
    messageID: str
    conversationID: str
    senderID: str
    receiverID: str
    messageText: str
    sentAt: datetime
    deliveredAt: Optional[datetime] = None
    isRead: bool = False

    class Config:
        from_attributes = True

    @field_validator("messageID", "conversationID", "senderID", "receiverID", mode="before")
    @classmethod
    def ids_to_str(cls, value):
        return _id_to_str(value)

    @field_validator("sentAt", "deliveredAt")
    @classmethod
    def to_utc(cls, value):
        return _as_utc(value)

    def sort_key(self) -> tuple[datetime, str]:
        """Total order inside a conversation: sentAt, then messageID."""
        return (self.sentAt, self.messageID)


class SendMessageIn(BaseModel):
    """Payload of `send_message` and of the REST send fallback."""
    conversationID: str
    receiverID: Optional[str] = None
    messageText: str = Field("", max_length=5000)

    @field_validator("conversationID", "receiverID", mode="before")
    @classmethod
    def ids_to_str(cls, value):
        return _id_to_str(value)


class TypingEvent(BaseModel):
    conversationID: str
    userID: str

    @field_validator("conversationID", "userID", mode="before")
    @classmethod
    def ids_to_str(cls, value):
        return _id_to_str(value)


class ConversationOut(BaseModel):
    """Conversation list item with last message and unread count."""
    conversationID: str
    otherUserID: Optional[str] = None
    lastMessage: Optional[str] = None
    lastMessageTime: Optional[datetime] = None
    unreadCount: int = 0


class MarkReadOut(BaseModel):
    updatedCount: int = 0
    lastReadMessageID: Optional[str] = None


class UnreadCountOut(BaseModel):
    unreadCount: int = 0


# -------------------- Notifications --------------------

class NotificationOut(BaseModel):
    """Stored notification; also the `new_notification` push payload.
    Only `notificationType` and `message` are guaranteed on a push.
    """
    notificationID: Optional[str] = None
    userID: Optional[str] = None
    notificationType: NotificationType
    message: str = ""
    requestID: Optional[str] = None
    reviewID: Optional[str] = None
    reason: Optional[str] = None
    createdAt: Optional[datetime] = None
    readStatus: bool = False

    class Config:
        from_attributes = True

    @field_validator("notificationID", "userID", "requestID", "reviewID", mode="before")
    @classmethod
    def ids_to_str(cls, value):
        return _id_to_str(value)

    @field_validator("createdAt")
    @classmethod
    def to_utc(cls, value):
        return _as_utc(value)


class NotificationListOut(BaseModel):
    notifications: List[NotificationOut] = []


class NotificationEventIn(BaseModel):
    """Domain event from the review / moderation / booking services."""
    userID: str
    notificationType: NotificationType
    message: str = Field(..., min_length=1, max_length=500)
    requestID: Optional[str] = None
    reviewID: Optional[str] = None
    reason: Optional[str] = None

    @field_validator("userID", "requestID", "reviewID", mode="before")
    @classmethod
    def ids_to_str(cls, value):
        return _id_to_str(value)


class UpdatedCountOut(BaseModel):
    updatedCount: int = 0


class DeletedCountOut(BaseModel):
    deletedCount: int = 0
