from enum import Enum

class Role(str, Enum):
    """Marketplace roles carried in the access token."""
    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"


class NotificationType(str, Enum):
    """Discriminant of the multiplexed `new_notification` stream."""
    MESSAGE = "message"
    REVIEW_RECEIVED = "review_received"
    REVIEW_REPLY = "review_reply"
    CONTENT_MODERATED = "content_moderated"
    CONTENT_FLAGGED = "content_flagged"
    REQUEST_ACCEPTED = "request_accepted"


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


class ViewStatus(str, Enum):
    LOADING = "loading"
    READY = "ready"


class LiveEvent:
    """Live channel event names (wire contract, keep bit-exact)."""
    # inbound (server -> client)
    NEW_MESSAGE = "new_message"
    USER_TYPING = "user_typing"
    USER_STOP_TYPING = "user_stop_typing"
    NEW_NOTIFICATION = "new_notification"
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    CONNECT_ERROR = "connect_error"
    ERROR = "error"
    JOINED_CONVERSATION = "joined_conversation"
    LEFT_CONVERSATION = "left_conversation"

    # outbound (client -> server)
    JOIN_REQUEST = "join_request"
    LEAVE_REQUEST = "leave_request"
    SEND_MESSAGE = "send_message"
    TYPING = "typing"
    STOP_TYPING = "stop_typing"


def conversation_room(conversation_id: str) -> str:
    """Socket.IO room name for a conversation."""
    return f"conversation_{conversation_id}"


def user_room(user_id: str) -> str:
    """Socket.IO room name reaching every session of a user."""
    return f"user_{user_id}"
