"""
History/REST fallback client over httpx.

Every call carries the bearer token. Failures raise RestError with the
server's message when it sent one; nothing is retried here.
"""
from typing import Any, List, Optional

import httpx

from app.config import get_settings
from app.errors import RestError
from app.schemas import (
    ChatMessageOut,
    ConversationOut,
    MarkReadOut,
    NotificationOut,
)
from app.utils.logger import get_logger

settings = get_settings()
logger = get_logger("client.history")


class HistoryClient:
    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.token = token
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.REST_TIMEOUT_SECONDS,
            transport=transport,
        )

    def set_token(self, token: str | None) -> None:
        self.token = token

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        default_error: str,
        params: dict | None = None,
        json: dict | None = None,
    ) -> Any:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            response = await self._client.request(method, path, params=params, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise RestError(default_error) from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_error:
            message = None
            if isinstance(body, dict):
                message = body.get("message") or body.get("detail")
            if not isinstance(message, str):
                message = None
            logger.warning(f"{method} {path} -> {response.status_code}: {message or default_error}")
            raise RestError(message or default_error, status_code=response.status_code)

        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    # ---------------- chat ----------------

    async def get_messages(
        self, conversation_id, limit: int | None = None, before: str | None = None
    ) -> List[ChatMessageOut]:
        params = {}
        if limit is not None:
            params["limit"] = limit
        if before:
            params["before"] = before
        data = await self._request(
            "GET", f"/chat/messages/{conversation_id}",
            params=params or None, default_error="Failed to fetch messages",
        )
        messages = [ChatMessageOut.model_validate(m) for m in data or []]
        messages.sort(key=ChatMessageOut.sort_key)
        return messages

    async def send_message(self, conversation_id, message_text: str, receiver_id=None) -> ChatMessageOut:
        """REST send fallback; the broker still fans the message out live."""
        payload = {
            "conversationID": str(conversation_id),
            "receiverID": str(receiver_id) if receiver_id is not None else None,
            "messageText": message_text,
        }
        data = await self._request("POST", "/chat/send", json=payload, default_error="Failed to send message")
        return ChatMessageOut.model_validate(data)

    async def list_conversations(self) -> List[ConversationOut]:
        data = await self._request("GET", "/chat/conversations", default_error="Failed to fetch conversations")
        return [ConversationOut.model_validate(c) for c in data or []]

    async def mark_read(self, conversation_id) -> MarkReadOut:
        data = await self._request(
            "PUT", f"/chat/read/{conversation_id}", default_error="Failed to mark messages as read"
        )
        return MarkReadOut.model_validate(data or {})

    async def get_unread_count(self, conversation_id=None) -> int:
        params = {"conversationID": str(conversation_id)} if conversation_id is not None else None
        data = await self._request(
            "GET", "/chat/unread", params=params, default_error="Failed to fetch unread count"
        )
        return int((data or {}).get("unreadCount", 0))

    # ---------------- notifications ----------------

    async def list_notifications(self, unread_only: bool = False) -> List[NotificationOut]:
        params = {"unreadOnly": "true"} if unread_only else None
        data = await self._request(
            "GET", "/notifications", params=params, default_error="Failed to fetch notifications"
        )
        return [NotificationOut.model_validate(n) for n in (data or {}).get("notifications", [])]

    async def get_notification_unread_count(self) -> int:
        data = await self._request(
            "GET", "/notifications/unread/count", default_error="Failed to fetch unread count"
        )
        return int((data or {}).get("unreadCount", 0))

    async def mark_notification_read(self, notification_id) -> None:
        await self._request(
            "PUT", f"/notifications/{notification_id}/read",
            default_error="Failed to mark notification as read",
        )

    async def mark_all_notifications_read(self) -> int:
        data = await self._request(
            "PUT", "/notifications/read/all", default_error="Failed to mark all notifications as read"
        )
        return int((data or {}).get("updatedCount", 0))

    async def delete_notification(self, notification_id) -> None:
        await self._request(
            "DELETE", f"/notifications/{notification_id}", default_error="Failed to delete notification"
        )

    async def delete_all_read_notifications(self) -> int:
        data = await self._request(
            "DELETE", "/notifications/read/all", default_error="Failed to delete read notifications"
        )
        return int((data or {}).get("deletedCount", 0))
