from beanie import Document, Indexed
from pydantic import Field
from datetime import datetime, timezone
from typing import Optional

from app.constants import NotificationType

class Notification(Document):
    """Notification persisted for the REST history and pushed live to the user."""
    user_id: Indexed(str)
    notification_type: Indexed(str) = NotificationType.MESSAGE.value
    message: str
    request_id: Optional[str] = None
    review_id: Optional[str] = None
    reason: Optional[str] = None
    created_at: Indexed(datetime) = Field(default_factory=lambda: datetime.now(timezone.utc))
    read_status: bool = False

    class Settings:
        name = "notifications"
        indexes = [
            [("user_id", 1), ("read_status", 1)],  # unread counts and unread-only lists
        ]
