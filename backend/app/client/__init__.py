"""
Client SDK for the live channel.

`LiveClient` wires one ConnectionManager shared by the MessageChannel and the
NotificationFeed (one socket per session, multiplexed), plus the REST
history client they both fall back on.
"""
import asyncio
from typing import Any, Awaitable, Callable

import httpx

from app.config import get_settings
from app.client.connection import ConnectionManager, Session
from app.client.history import HistoryClient
from app.client.message_channel import ConversationView, MessageChannel
from app.client.notifications import NotificationFeed, Subscription
from app.client.presence import TypingTracker
from app.client.rooms import RoomRouter
from app.client.transport import SocketIOTransport, Transport

settings = get_settings()


class LiveClient:
    def __init__(
        self,
        base_url: str | None = None,
        *,
        transport_factory: Callable[[], Transport] | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        typing_ttl: float | None = None,
        poll_interval: float | None = None,
    ):
        self.base_url = (base_url or settings.LIVE_BASE_URL).rstrip("/")
        if transport_factory is None:
            transport_factory = lambda: SocketIOTransport(self.base_url)

        self.connection = ConnectionManager(transport_factory, sleep=sleep)
        self.rooms = RoomRouter(self.connection)
        self.history = HistoryClient(f"{self.base_url}/api", transport=http_transport)
        self.messages = MessageChannel(self.connection, self.rooms, self.history, typing_ttl=typing_ttl)
        self.notifications = NotificationFeed(
            self.connection,
            self.history,
            poll_interval=poll_interval,
            open_conversations=self.messages.open_conversation_ids,
            sleep=sleep,
        )

    @property
    def state(self):
        return self.connection.state

    async def start(self, token: str) -> Session:
        """Connect, then start both consumers of the shared connection."""
        self.history.set_token(token)
        session = await self.connection.connect(token)
        self.messages.start()
        await self.notifications.start()
        return session

    async def close(self) -> None:
        """Both consumers release; the last release closes the socket."""
        await self.notifications.stop()
        await self.messages.stop()
        if self.connection.consumers == 0:
            await self.connection.disconnect()
        self.rooms.reset()
        await self.history.aclose()


__all__ = [
    "ConnectionManager",
    "ConversationView",
    "HistoryClient",
    "LiveClient",
    "MessageChannel",
    "NotificationFeed",
    "RoomRouter",
    "Session",
    "Subscription",
    "TypingTracker",
]
