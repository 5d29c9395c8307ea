"""
Chat persistence: conversations, messages, read receipts and unread counts.
Raises HTTPException so REST routers and socket handlers share one error path.
"""
from datetime import datetime, timezone
from typing import List, Optional

from beanie.operators import Or, Set as UpdateSet
from fastapi import HTTPException

from app.constants import Role
from app.models import Conversation, ChatMessage, ReadReceipt
from app.schemas import ChatMessageOut, ConversationOut, MarkReadOut
from app.security import CurrentUser
from app.utils.logger import get_logger

logger = get_logger("chat_service")

MAX_HISTORY_PAGE = 200


def message_to_out(message: ChatMessage) -> ChatMessageOut:
    return ChatMessageOut(
        messageID=str(message.id),
        conversationID=message.conversation_id,
        senderID=message.sender_id,
        receiverID=message.receiver_id,
        messageText=message.text,
        sentAt=message.sent_at,
        deliveredAt=message.delivered_at,
        isRead=message.is_read,
    )


async def get_participant_conversation(conversation_id: str, user_id: str) -> Optional[Conversation]:
    """Conversation for a participant; None if it has no messages yet, 403 for outsiders."""
    conversation = await Conversation.find_one(Conversation.conversation_id == conversation_id)
    if conversation and user_id not in conversation.participants():
        raise HTTPException(status_code=403, detail="Access denied. You are not part of this conversation.")
    return conversation


async def _conversation_for_send(conversation_id: str, sender: CurrentUser, receiver_id: str) -> Conversation:
    """Create the conversation on its first message, otherwise check both parties."""
    conversation = await Conversation.find_one(Conversation.conversation_id == conversation_id)
    if conversation is None:
        if sender.role == Role.CUSTOMER:
            customer_id, provider_id = sender.user_id, receiver_id
        elif sender.role == Role.PROVIDER:
            customer_id, provider_id = receiver_id, sender.user_id
        else:
            raise HTTPException(status_code=403, detail="Only customers and providers can chat")
        conversation = Conversation(
            conversation_id=conversation_id,
            customer_id=customer_id,
            provider_id=provider_id,
        )
        await conversation.insert()
        logger.info(f"Conversation {conversation_id} created ({customer_id} <-> {provider_id})")
        return conversation

    if sender.user_id not in conversation.participants():
        raise HTTPException(status_code=403, detail="Access denied. You are not part of this conversation.")
    if conversation.other_party(sender.user_id) != receiver_id:
        raise HTTPException(status_code=400, detail="receiverID is not the other participant of this conversation")
    return conversation


async def create_message(
    *,
    sender: CurrentUser,
    conversation_id: str,
    receiver_id: str | None,
    text: str,
    delivered: bool = False,
) -> ChatMessageOut:
    """Validate and persist a message. `delivered` marks it as pushed to a live receiver."""
    text = (text or "").strip()
    if not text:
        raise HTTPException(status_code=400, detail="Message text is required")
    if not receiver_id:
        raise HTTPException(status_code=400, detail="Missing required field: receiverID")
    if receiver_id == sender.user_id:
        raise HTTPException(status_code=400, detail="Cannot send a message to yourself")

    conversation = await _conversation_for_send(conversation_id, sender, receiver_id)

    now = datetime.now(timezone.utc)
    message = ChatMessage(
        conversation_id=conversation_id,
        sender_id=sender.user_id,
        receiver_id=receiver_id,
        text=text,
        sent_at=now,
        delivered_at=now if delivered else None,
    )
    await message.insert()

    conversation.last_message_at = message.sent_at
    await conversation.save()
    return message_to_out(message)


async def list_messages(
    conversation_id: str,
    user: CurrentUser,
    limit: int = 100,
    before: Optional[datetime] = None,
) -> List[ChatMessageOut]:
    """History page (newest `limit` before the cursor), returned in render order."""
    conversation = await get_participant_conversation(conversation_id, user.user_id)
    if conversation is None:
        return []

    limit = max(1, min(limit, MAX_HISTORY_PAGE))
    query = ChatMessage.find(ChatMessage.conversation_id == conversation_id)
    if before is not None:
        query = query.find(ChatMessage.sent_at < before)
    messages = await query.sort(-ChatMessage.sent_at).limit(limit).to_list()

    out = [message_to_out(m) for m in messages]
    out.sort(key=ChatMessageOut.sort_key)
    return out


async def mark_read(conversation_id: str, user_id: str) -> MarkReadOut:
    """Mark the user's received messages read and upsert the read receipt (idempotent)."""
    conversation = await get_participant_conversation(conversation_id, user_id)
    if conversation is None:
        return MarkReadOut()

    result = await ChatMessage.find(
        ChatMessage.conversation_id == conversation_id,
        ChatMessage.receiver_id == user_id,
        ChatMessage.is_read == False,
    ).update(UpdateSet({ChatMessage.is_read: True}))
    updated = getattr(result, "modified_count", 0) or 0

    last = await ChatMessage.find(
        ChatMessage.conversation_id == conversation_id
    ).sort(-ChatMessage.sent_at).limit(1).to_list()
    last_id = str(last[0].id) if last else None

    receipt = await ReadReceipt.find_one(
        ReadReceipt.conversation_id == conversation_id,
        ReadReceipt.user_id == user_id,
    )
    if receipt is None:
        await ReadReceipt(
            conversation_id=conversation_id,
            user_id=user_id,
            last_read_message_id=last_id,
        ).insert()
    elif receipt.last_read_message_id != last_id:
        receipt.last_read_message_id = last_id
        receipt.updated_at = datetime.now(timezone.utc)
        await receipt.save()

    return MarkReadOut(updatedCount=updated, lastReadMessageID=last_id)


async def unread_count(user_id: str, conversation_id: str | None = None) -> int:
    query = ChatMessage.find(
        ChatMessage.receiver_id == user_id,
        ChatMessage.is_read == False,
    )
    if conversation_id:
        query = query.find(ChatMessage.conversation_id == conversation_id)
    return await query.count()


async def list_conversations(user_id: str) -> List[ConversationOut]:
    """Conversations of a user with last message and unread count, most recent first."""
    conversations = await Conversation.find(
        Or(Conversation.customer_id == user_id, Conversation.provider_id == user_id)
    ).to_list()

    result = []
    for conversation in conversations:
        last_messages = await ChatMessage.find(
            ChatMessage.conversation_id == conversation.conversation_id
        ).sort(-ChatMessage.sent_at).limit(1).to_list()
        last_message = last_messages[0] if last_messages else None

        result.append(ConversationOut(
            conversationID=conversation.conversation_id,
            otherUserID=conversation.other_party(user_id),
            lastMessage=last_message.text if last_message else None,
            lastMessageTime=last_message.sent_at if last_message else None,
            unreadCount=await unread_count(user_id, conversation.conversation_id),
        ))

    result.sort(key=lambda c: c.lastMessageTime.isoformat() if c.lastMessageTime else "", reverse=True)
    return result
