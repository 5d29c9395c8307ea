"""
Socket.IO broker for the live channel: chat rooms, typing relay and per-user notifications.
"""
import socketio
from fastapi import HTTPException
from pydantic import ValidationError

from app.config import get_settings
from app.constants import LiveEvent, NotificationType, conversation_room, user_room
from app.errors import AuthError
from app.realtime.registry import SessionRegistry
from app.schemas import ChatMessageOut, SendMessageIn
from app.security import CurrentUser, token_from_handshake, user_from_token
from app.services import chat_service, notification_service
from app.utils.logger import get_logger

settings = get_settings()
logger = get_logger("socket_service")

sio = socketio.AsyncServer(
    cors_allowed_origins=settings.cors_origins or "*",
    async_mode='asgi',
    logger=settings.APP_DEBUG,
    engineio_logger=settings.APP_DEBUG,
)

# sid / user / conversation membership
registry = SessionRegistry()


async def _emit_error(
    sid: str, message: str, code: str, event: str | None = None, conversation_id: str | None = None
) -> None:
    """`{message, code}`, plus the rejected request's event and conversation when known."""
    payload = {'message': message, 'code': code}
    if event:
        payload['event'] = event
    if conversation_id:
        payload['conversationID'] = conversation_id
    await sio.emit(LiveEvent.ERROR, payload, room=sid)


def _conversation_id_from(data) -> str | None:
    """join/leave send the bare ID, typing sends {"conversationID": ...}."""
    if isinstance(data, dict):
        data = data.get('conversationID')
    if data is None or data == "":
        return None
    return str(data)


@sio.on('connect')
async def connect(sid: str, environ: dict, auth: dict | None = None):
    """Authenticate the handshake and bind the socket to its user."""
    try:
        user = user_from_token(token_from_handshake(auth, environ))
    except AuthError as e:
        logger.warning(f"Connection rejected for {sid}: {e.message}")
        raise socketio.exceptions.ConnectionRefusedError('unauthorized')

    registry.register(sid, user.user_id, user.role)
    await sio.enter_room(sid, user_room(user.user_id))
    logger.info(f"User connected: {user.user_id} ({user.role.value}) - Socket: {sid}")
    return True


@sio.on('disconnect')
async def disconnect(sid: str, reason=None):
    info = registry.user_of(sid)
    rooms = registry.unregister(sid)
    if info:
        logger.info(f"User disconnected: {info.user_id} - Socket: {sid} (left {len(rooms)} rooms)")
    else:
        logger.info(f"Socket disconnected: {sid}")


@sio.on(LiveEvent.JOIN_REQUEST)
async def join_request(sid: str, data):
    """Join a conversation room; no-op if already joined."""
    info = registry.user_of(sid)
    if not info:
        await _emit_error(sid, 'Not authenticated', 'E401')
        return
    conversation_id = _conversation_id_from(data)
    if not conversation_id:
        await _emit_error(sid, 'conversationID is required', 'E400', LiveEvent.JOIN_REQUEST)
        return

    try:
        conversation = await chat_service.get_participant_conversation(conversation_id, info.user_id)
    except HTTPException as e:
        await _emit_error(sid, str(e.detail), f'E{e.status_code}', LiveEvent.JOIN_REQUEST, conversation_id)
        return

    if conversation is None:
        # no participants on record yet: nothing is routed to this socket until the first message
        if registry.hold(sid, conversation_id):
            logger.debug(f"User {info.user_id} waiting on new conversation {conversation_id} ({sid})")
    elif registry.join(sid, conversation_id):
        await sio.enter_room(sid, conversation_room(conversation_id))
        logger.debug(f"User {info.user_id} joined conversation {conversation_id} ({sid})")
    await sio.emit(LiveEvent.JOINED_CONVERSATION, {'conversationID': conversation_id}, room=sid)


@sio.on(LiveEvent.LEAVE_REQUEST)
async def leave_request(sid: str, data):
    """Leave a conversation room; safe on a room never joined."""
    conversation_id = _conversation_id_from(data)
    if not conversation_id:
        return
    if registry.leave(sid, conversation_id):
        await sio.leave_room(sid, conversation_room(conversation_id))
        logger.debug(f"Socket {sid} left conversation {conversation_id}")
    await sio.emit(LiveEvent.LEFT_CONVERSATION, {'conversationID': conversation_id}, room=sid)


@sio.on(LiveEvent.SEND_MESSAGE)
async def send_message(sid: str, data):
    """Persist a message, fan it out to the room and notify the receiver."""
    info = registry.user_of(sid)
    if not info:
        await _emit_error(sid, 'Not authenticated', 'E401')
        return
    try:
        payload = SendMessageIn.model_validate(data if isinstance(data, dict) else {})
    except ValidationError:
        await _emit_error(
            sid, 'Missing required fields: conversationID, receiverID, messageText', 'E400',
            LiveEvent.SEND_MESSAGE, _conversation_id_from(data),
        )
        return

    sender = CurrentUser(user_id=info.user_id, role=info.role)
    try:
        message = await chat_service.create_message(
            sender=sender,
            conversation_id=payload.conversationID,
            receiver_id=payload.receiverID,
            text=payload.messageText,
            delivered=registry.is_online(payload.receiverID or ""),
        )
    except HTTPException as e:
        await _emit_error(sid, str(e.detail), f'E{e.status_code}', LiveEvent.SEND_MESSAGE, payload.conversationID)
        return

    await deliver_message(message)
    logger.info(
        f"📨 [Socket] Message {message.messageID} - Conversation: {message.conversationID}, "
        f"Sender: {message.senderID}, Receiver: {message.receiverID}"
    )


@sio.on(LiveEvent.TYPING)
async def typing(sid: str, data):
    await _relay_typing(sid, data, LiveEvent.USER_TYPING)


@sio.on(LiveEvent.STOP_TYPING)
async def stop_typing(sid: str, data):
    await _relay_typing(sid, data, LiveEvent.USER_STOP_TYPING)


async def _relay_typing(sid: str, data, event: str) -> None:
    """Typing is ephemeral: relayed to the other room members, never stored."""
    info = registry.user_of(sid)
    conversation_id = _conversation_id_from(data)
    if not info or not conversation_id:
        return
    if conversation_id not in registry.rooms_of(sid):
        return
    await sio.emit(
        event,
        {'conversationID': conversation_id, 'userID': info.user_id},
        room=conversation_room(conversation_id),
        skip_sid=sid,
    )


async def deliver_message(message: ChatMessageOut) -> None:
    """Room fan-out (every joined tab, the sender's included) plus the receiver's notification.
    Also used by the REST send fallback.
    """
    await _admit_held(message.conversationID, {message.senderID, message.receiverID})
    await sio.emit(
        LiveEvent.NEW_MESSAGE,
        message.model_dump(mode='json'),
        room=conversation_room(message.conversationID),
    )
    await notification_service.notify_user(
        user_id=message.receiverID,
        notification_type=NotificationType.MESSAGE,
        message="You have a new message",
        request_id=message.conversationID,
    )


async def _admit_held(conversation_id: str, participants: set) -> None:
    """Settle joins parked before the conversation existed: parties enter the room, others are refused."""
    for sid in sorted(registry.release_held(conversation_id)):
        info = registry.user_of(sid)
        if info is None:
            continue
        if info.user_id in participants:
            if registry.join(sid, conversation_id):
                await sio.enter_room(sid, conversation_room(conversation_id))
            continue
        logger.warning(f"Refused held join of {info.user_id} to conversation {conversation_id} ({sid})")
        await _emit_error(
            sid, 'Access denied. You are not part of this conversation.', 'E403',
            LiveEvent.JOIN_REQUEST, conversation_id,
        )


async def emit_to_user(user_id: str, event: str, data: dict) -> None:
    """Emit to every session owned by a user."""
    await sio.emit(event, data, room=user_room(user_id))


def get_socket_app(other_asgi_app=None):
    """Socket.IO ASGI app, optionally wrapping the FastAPI app."""
    return socketio.ASGIApp(sio, other_asgi_app=other_asgi_app, socketio_path=settings.SOCKETIO_PATH)
