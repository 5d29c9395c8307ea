from beanie import Document, Indexed
from pydantic import Field
from datetime import datetime, timezone
from typing import Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Conversation(Document):
    """One conversation per booking / service request, between its two parties."""
    # Booking / service-request ID, the conversation identity
    conversation_id: Indexed(str, unique=True)
    customer_id: Indexed(str)
    provider_id: Indexed(str)
    created_at: datetime = Field(default_factory=_now)
    last_message_at: Optional[datetime] = None

    class Settings:
        name = "conversations"

    def participants(self) -> set[str]:
        return {self.customer_id, self.provider_id}

    def other_party(self, user_id: str) -> str | None:
        if user_id == self.customer_id:
            return self.provider_id
        if user_id == self.provider_id:
            return self.customer_id
        return None


class ChatMessage(Document):
    """Persisted chat message. Immutable apart from delivery/read metadata."""
    conversation_id: Indexed(str)
    sender_id: Indexed(str)
    receiver_id: Indexed(str)
    text: str
    sent_at: Indexed(datetime) = Field(default_factory=_now)
    delivered_at: Optional[datetime] = None
    is_read: bool = False

    class Settings:
        name = "chat_messages"


class ReadReceipt(Document):
    """Last message a user has read in a conversation (upserted)."""
    conversation_id: Indexed(str)
    user_id: Indexed(str)
    last_read_message_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=_now)

    class Settings:
        name = "read_receipts"
