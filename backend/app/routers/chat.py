from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from app.constants import Role
from app.rate_limit import limiter
from app.schemas import (
    ApiResponse,
    ChatMessageOut,
    ConversationOut,
    MarkReadOut,
    SendMessageIn,
    UnreadCountOut,
)
from app.security import CurrentUser, get_current_user, require_roles
from app.services import chat_service, socket_service
from app.utils.logger import get_logger

logger = get_logger("chat_router")

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.get("/conversations", response_model=ApiResponse[List[ConversationOut]])
async def get_conversations(current: CurrentUser = Depends(get_current_user)):
    """Conversations of the current user with last message and unread count."""
    return ApiResponse(data=await chat_service.list_conversations(current.user_id))


@router.get("/messages/{conversation_id}", response_model=ApiResponse[List[ChatMessageOut]])
async def get_messages(
    conversation_id: str,
    limit: int = Query(100, ge=1, le=chat_service.MAX_HISTORY_PAGE),
    before: Optional[str] = Query(None, description="ISO timestamp cursor"),
    current: CurrentUser = Depends(get_current_user),
):
    """History of one conversation in render order (sentAt, messageID)."""
    before_dt = None
    if before:
        try:
            before_dt = datetime.fromisoformat(before.replace('Z', '+00:00'))
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid 'before' timestamp")
    messages = await chat_service.list_messages(conversation_id, current, limit=limit, before=before_dt)
    return ApiResponse(data=messages)


@router.post("/send", status_code=201, response_model=ApiResponse[ChatMessageOut])
@limiter.limit("30/minute")
async def send_message(
    request: Request,
    payload: SendMessageIn,
    current: CurrentUser = Depends(require_roles([Role.CUSTOMER, Role.PROVIDER])),
):
    """REST fallback for sending; the message still goes out on the live channel."""
    message = await chat_service.create_message(
        sender=current,
        conversation_id=payload.conversationID,
        receiver_id=payload.receiverID,
        text=payload.messageText,
        delivered=socket_service.registry.is_online(payload.receiverID or ""),
    )

    try:
        await socket_service.deliver_message(message)
    except Exception as e:
        # Stored already; clients catch up through history
        logger.warning(f"Failed to emit message {message.messageID} via Socket.IO: {e}")

    logger.info(
        f"📨 [REST] Message saved - Conversation: {message.conversationID}, "
        f"Sender: {message.senderID}, Receiver: {message.receiverID}"
    )
    return ApiResponse(message="Message sent successfully", data=message)


@router.put("/read/{conversation_id}", response_model=ApiResponse[MarkReadOut])
async def mark_as_read(conversation_id: str, current: CurrentUser = Depends(get_current_user)):
    """Idempotent: marking an already-read conversation changes nothing."""
    result = await chat_service.mark_read(conversation_id, current.user_id)
    return ApiResponse(message="Messages marked as read", data=result)


@router.get("/unread", response_model=ApiResponse[UnreadCountOut])
async def get_unread_count(
    conversation_id: Optional[str] = Query(None, alias="conversationID"),
    current: CurrentUser = Depends(get_current_user),
):
    count = await chat_service.unread_count(current.user_id, conversation_id)
    return ApiResponse(data=UnreadCountOut(unreadCount=count))
