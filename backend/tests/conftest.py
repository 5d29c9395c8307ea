import asyncio
import itertools
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List

import pytest

# Settings are cached on first import; pin the test environment before that
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("INTERNAL_API_SECRET", "internal-test-secret")
os.environ.setdefault("LOG_DIR", str(Path(tempfile.gettempdir()) / "marketplace_live_test_logs"))
os.environ.setdefault("APP_DEBUG", "false")

from app.constants import LiveEvent
from app.errors import AuthError, RestError, TransportError
from app.realtime.registry import SessionRegistry
from app.schemas import ChatMessageOut, MarkReadOut, NotificationOut
from app.security import create_access_token, user_from_token
from app.client.connection import ConnectionManager
from app.client.message_channel import MessageChannel
from app.client.notifications import NotificationFeed
from app.client.rooms import RoomRouter
from app.client.transport import Transport

USER_A = "userA"
USER_B = "userB"


def make_token(user_id: str, role: str = "customer") -> str:
    return create_access_token({"sub": user_id, "role": role})


class FakeBroker:
    """In-memory stand-in for the Socket.IO server, built on the real SessionRegistry."""

    def __init__(self):
        self.registry = SessionRegistry()
        self.transports: Dict[str, "FakeTransport"] = {}
        self.messages: Dict[str, List[ChatMessageOut]] = {}
        self.received: List[tuple] = []
        self.fail_connects = 0
        self.refuse_all = False
        # join_request handling: refused conversation IDs, or park joins until release_joins()
        self.refuse_joins: set = set()
        self.hold_joins = False
        self.held_joins: List[tuple] = []
        # conversationID -> (message, code) for send_message rejections
        self.reject_sends: Dict[str, tuple] = {}
        self.clock = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._sids = itertools.count(1)
        self._message_ids = itertools.count(1)

    async def connect(self, transport: "FakeTransport", token: str) -> str:
        if self.fail_connects:
            self.fail_connects -= 1
            raise TransportError("Could not reach live channel: connection refused")
        if self.refuse_all:
            raise AuthError("Live channel rejected the token")
        try:
            user = user_from_token(token)
        except AuthError:
            raise AuthError("Live channel rejected the token")
        sid = f"sid-{next(self._sids)}"
        self.registry.register(sid, user.user_id, user.role)
        self.transports[sid] = transport
        return sid

    def disconnect(self, sid: str) -> None:
        self.transports.pop(sid, None)
        self.registry.unregister(sid)

    def store(self, conversation_id: str, sender_id: str, receiver_id: str, text: str) -> ChatMessageOut:
        self.clock += timedelta(seconds=1)
        message = ChatMessageOut(
            messageID=f"m{next(self._message_ids):04d}",
            conversationID=conversation_id,
            senderID=sender_id,
            receiverID=receiver_id,
            messageText=text,
            sentAt=self.clock,
        )
        self.messages.setdefault(conversation_id, []).append(message)
        return message

    async def handle(self, sid: str, event: str, data) -> None:
        info = self.registry.user_of(sid)
        self.received.append((info.user_id if info else None, event, data))
        if event == LiveEvent.JOIN_REQUEST:
            conversation_id = str(data)
            if conversation_id in self.refuse_joins:
                await self.send_error(sid, "Access denied. You are not part of this conversation.", "E403",
                                      event, conversation_id)
            elif self.hold_joins:
                self.held_joins.append((sid, conversation_id))
            else:
                await self._join(sid, conversation_id)
        elif event == LiveEvent.LEAVE_REQUEST:
            self.registry.leave(sid, str(data))
        elif event == LiveEvent.SEND_MESSAGE:
            if data["conversationID"] in self.reject_sends:
                text, code = self.reject_sends[data["conversationID"]]
                await self.send_error(sid, text, code, event, data["conversationID"])
                return
            message = self.store(data["conversationID"], info.user_id, data["receiverID"], data["messageText"])
            await self.broadcast(message.conversationID, LiveEvent.NEW_MESSAGE, message.model_dump(mode="json"))
        elif event in (LiveEvent.TYPING, LiveEvent.STOP_TYPING):
            relayed = LiveEvent.USER_TYPING if event == LiveEvent.TYPING else LiveEvent.USER_STOP_TYPING
            conversation_id = data["conversationID"]
            await self.broadcast(
                conversation_id, relayed,
                {"conversationID": conversation_id, "userID": info.user_id},
                skip_sid=sid,
            )

    async def _join(self, sid: str, conversation_id: str) -> None:
        self.registry.join(sid, conversation_id)
        await self.send(sid, LiveEvent.JOINED_CONVERSATION, {"conversationID": conversation_id})

    async def release_joins(self) -> None:
        """Apply parked joins and send their acks."""
        held, self.held_joins = self.held_joins, []
        for sid, conversation_id in held:
            if sid in self.transports:
                await self._join(sid, conversation_id)

    async def send_error(self, sid: str, message: str, code: str, event: str, conversation_id: str) -> None:
        await self.send(sid, LiveEvent.ERROR, {
            "message": message, "code": code, "event": event, "conversationID": conversation_id,
        })

    async def send(self, sid: str, event: str, data) -> None:
        transport = self.transports.get(sid)
        if transport is not None:
            await transport.deliver(event, data)

    async def broadcast(self, conversation_id: str, event: str, data, skip_sid: str | None = None) -> None:
        for sid in sorted(self.registry.members(conversation_id)):
            if sid != skip_sid:
                await self.send(sid, event, data)

    async def push_to_user(self, user_id: str, event: str, data) -> None:
        for sid in sorted(self.registry.sessions_for(user_id)):
            await self.send(sid, event, data)

    async def drop_user(self, user_id: str) -> None:
        """Server-side loss of every connection of a user."""
        for sid in sorted(self.registry.sessions_for(user_id)):
            transport = self.transports.get(sid)
            self.disconnect(sid)
            if transport is not None:
                await transport.drop()

    def sent_by(self, user_id: str, event: str) -> list:
        return [data for uid, ev, data in self.received if uid == user_id and ev == event]


class FakeTransport(Transport):
    def __init__(self, broker: FakeBroker):
        self.broker = broker
        self.sid = None
        self.user_id = None
        self.sid_history: List[str] = []
        self._on_event = None
        self._on_drop = None

    def bind(self, on_event, on_drop) -> None:
        self._on_event = on_event
        self._on_drop = on_drop

    @property
    def connected(self) -> bool:
        return self.sid is not None

    async def connect(self, token: str) -> None:
        self.sid = await self.broker.connect(self, token)
        self.user_id = self.broker.registry.user_of(self.sid).user_id
        self.sid_history.append(self.sid)

    async def emit(self, event: str, data) -> None:
        if self.sid is None:
            raise TransportError()
        await self.broker.handle(self.sid, event, data)

    async def close(self) -> None:
        if self.sid is not None:
            self.broker.disconnect(self.sid)
            self.sid = None

    async def deliver(self, event: str, data) -> None:
        if self._on_event is not None:
            await self._on_event(event, data)

    async def drop(self) -> None:
        self.sid = None
        if self._on_drop is not None:
            await self._on_drop()


class FakeHistory:
    """REST fallback backed by the broker's message store."""

    def __init__(self, broker: FakeBroker):
        self.broker = broker
        self.notifications: Dict[str, List[NotificationOut]] = {}
        self.user_id = None
        self.fail = False
        self.calls: List[tuple] = []

    def _check(self, name: str, *args) -> None:
        self.calls.append((name,) + args)
        if self.fail:
            raise RestError(f"Failed to {name}", status_code=503)

    async def get_messages(self, conversation_id, limit=None, before=None) -> List[ChatMessageOut]:
        self._check("get_messages", str(conversation_id))
        messages = [m.model_copy() for m in self.broker.messages.get(str(conversation_id), [])]
        return sorted(messages, key=ChatMessageOut.sort_key)

    async def mark_read(self, conversation_id) -> MarkReadOut:
        self._check("mark_read", str(conversation_id))
        updated = 0
        last = None
        for m in self.broker.messages.get(str(conversation_id), []):
            if m.receiverID == self.user_id and not m.isRead:
                m.isRead = True
                updated += 1
            last = m.messageID
        return MarkReadOut(updatedCount=updated, lastReadMessageID=last)

    def add_notification(self, user_id: str, **fields) -> NotificationOut:
        notification = NotificationOut(userID=user_id, **fields)
        self.notifications.setdefault(user_id, []).insert(0, notification)
        return notification

    def _mine(self) -> List[NotificationOut]:
        return self.notifications.setdefault(self.user_id, [])

    async def list_notifications(self, unread_only: bool = False) -> List[NotificationOut]:
        self._check("list_notifications")
        items = [n.model_copy() for n in self._mine()]
        return [n for n in items if not n.readStatus] if unread_only else items

    async def get_notification_unread_count(self) -> int:
        self._check("get_notification_unread_count")
        return sum(1 for n in self._mine() if not n.readStatus)

    async def mark_notification_read(self, notification_id) -> None:
        self._check("mark_notification_read", notification_id)
        for n in self._mine():
            if n.notificationID == notification_id:
                n.readStatus = True

    async def mark_all_notifications_read(self) -> int:
        self._check("mark_all_notifications_read")
        unread = [n for n in self._mine() if not n.readStatus]
        for n in unread:
            n.readStatus = True
        return len(unread)

    async def delete_notification(self, notification_id) -> None:
        self._check("delete_notification", notification_id)
        self.notifications[self.user_id] = [n for n in self._mine() if n.notificationID != notification_id]

    async def delete_all_read_notifications(self) -> int:
        self._check("delete_all_read_notifications")
        before = len(self._mine())
        self.notifications[self.user_id] = [n for n in self._mine() if not n.readStatus]
        return before - len(self._mine())


class FakeSleep:
    """Records backoff delays and returns at once."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class OneShotSleep:
    """First call returns immediately, later calls block until cancelled."""

    def __init__(self):
        self.calls = 0

    async def __call__(self, delay: float) -> None:
        self.calls += 1
        if self.calls > 1:
            await asyncio.Event().wait()


def build_stack(broker: FakeBroker, *, typing_ttl: float = 0.05, poll_interval: float = 3600.0, feed_sleep=None):
    """One client session: connection, rooms, message channel and notification feed."""
    sleep = FakeSleep()
    connection = ConnectionManager(lambda: FakeTransport(broker), sleep=sleep)
    rooms = RoomRouter(connection)
    history = FakeHistory(broker)
    channel = MessageChannel(connection, rooms, history, typing_ttl=typing_ttl)
    feed_kwargs = {"sleep": feed_sleep} if feed_sleep is not None else {}
    feed = NotificationFeed(
        connection, history,
        poll_interval=poll_interval,
        open_conversations=channel.open_conversation_ids,
        **feed_kwargs,
    )
    return SimpleNamespace(
        connection=connection, rooms=rooms, history=history,
        channel=channel, feed=feed, sleep=sleep,
    )


async def connect_stack(stack, user_id: str, role: str = "customer"):
    stack.history.user_id = user_id
    return await stack.connection.connect(make_token(user_id, role))


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def token_a():
    return make_token(USER_A, "customer")


@pytest.fixture
def token_b():
    return make_token(USER_B, "provider")
