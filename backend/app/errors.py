"""
Error taxonomy shared by the live client and the REST fallback.
"""


class LiveChannelError(Exception):
    """Base class; `message` is safe to show to a user."""

    default_message = "Live channel error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthError(LiveChannelError):
    """Missing or invalid credential at connect time. Never retried."""

    default_message = "Authentication required"


class TransportError(LiveChannelError):
    """Network-level failure of the live connection."""

    default_message = "Live connection unavailable"


class UnresolvedRecipientError(LiveChannelError):
    """A send could not determine its receiver. Nothing was sent."""

    default_message = "Cannot determine message recipient. Please refresh the conversation."

    def __init__(self, conversation_id: str, message: str | None = None):
        self.conversation_id = conversation_id
        super().__init__(message)


class RestError(LiveChannelError):
    """A REST fallback call failed (network, 4xx or 5xx)."""

    default_message = "Request failed"

    def __init__(self, message: str | None = None, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class BrokerError(LiveChannelError):
    """The broker rejected a request and reported it on the `error` event."""

    default_message = "Request rejected by the live channel"

    def __init__(
        self,
        message: str | None = None,
        code: str | None = None,
        event: str | None = None,
        conversation_id: str | None = None,
    ):
        self.code = code
        self.event = event
        self.conversation_id = conversation_id
        super().__init__(message)

    @classmethod
    def from_payload(cls, data) -> "BrokerError":
        data = data if isinstance(data, dict) else {"message": str(data)}
        conversation_id = data.get("conversationID")
        return cls(
            data.get("message"),
            code=data.get("code"),
            event=data.get("event"),
            conversation_id=str(conversation_id) if conversation_id is not None else None,
        )
