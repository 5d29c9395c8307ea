"""
Notification Fan-out, client side.

One `new_notification` listener on the shared connection, multiplexed by
`notificationType` into typed listeners. The REST unread count is the source
of truth; live pushes only bump it optimistically until the next refresh.
While the live channel is down, polling keeps the feed working.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from app.config import get_settings
from app.constants import LiveEvent, NotificationType
from app.errors import RestError
from app.schemas import NotificationOut
from app.utils.logger import get_logger
from app.client.connection import ConnectionManager
from app.client.events import DedupCache, ListenerRegistry
from app.client.history import HistoryClient

settings = get_settings()
logger = get_logger("client.notifications")

_ANY = "*"
_UNREAD = "unread_count"

# subscribe() keyword -> notificationType it listens to
HANDLER_TYPES: Dict[str, NotificationType] = {
    "on_new_message_elsewhere": NotificationType.MESSAGE,
    "on_review_received": NotificationType.REVIEW_RECEIVED,
    "on_review_reply": NotificationType.REVIEW_REPLY,
    "on_content_moderated": NotificationType.CONTENT_MODERATED,
    "on_content_flagged": NotificationType.CONTENT_FLAGGED,
    "on_request_accepted": NotificationType.REQUEST_ACCEPTED,
}


class Subscription:
    """Handle over several typed listeners. Calling it removes them all;
    `remove(name)` removes one.
    """

    def __init__(self, unsubscribers: Dict[str, Callable[[], None]]):
        self._unsubscribers = dict(unsubscribers)

    @property
    def names(self) -> List[str]:
        return list(self._unsubscribers)

    @property
    def active(self) -> bool:
        return bool(self._unsubscribers)

    def remove(self, name: str) -> bool:
        unsubscribe = self._unsubscribers.pop(name, None)
        if unsubscribe is None:
            return False
        unsubscribe()
        return True

    def __call__(self) -> None:
        for name in list(self._unsubscribers):
            self.remove(name)


class NotificationFeed:
    def __init__(
        self,
        connection: ConnectionManager,
        history: HistoryClient,
        *,
        poll_interval: float | None = None,
        dedup_size: int | None = None,
        open_conversations: Callable[[], Iterable[str]] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._connection = connection
        self._history = history
        self.poll_interval = poll_interval if poll_interval is not None else settings.NOTIFICATION_POLL_SECONDS
        self._open_conversations = open_conversations or (lambda: ())
        self._sleep = sleep

        self.notifications: List[NotificationOut] = []
        self.unread_count = 0
        self._seen = DedupCache(dedup_size or settings.DEDUP_CACHE_SIZE)
        self._listeners = ListenerRegistry("notifications")
        self._detach: List[Callable[[], None]] = []
        self._poll_task: Optional[asyncio.Task] = None

    @property
    def started(self) -> bool:
        return bool(self._detach)

    # ---------------- lifecycle ----------------

    async def start(self) -> None:
        """Attach the push handler, load the feed and start polling."""
        if self.started:
            return
        self._connection.acquire()
        self._detach = [
            self._connection.on(LiveEvent.NEW_NOTIFICATION, self._on_push),
            self._connection.on_reconnect(self._refresh_quietly),
        ]
        await self._refresh_quietly()
        self._poll_task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        if not self.started:
            return
        for unsubscribe in self._detach:
            unsubscribe()
        self._detach = []
        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._connection.release()

    # ---------------- listeners ----------------

    def subscribe(
        self,
        *,
        on_new_message_elsewhere: Callable | None = None,
        on_review_received: Callable | None = None,
        on_review_reply: Callable | None = None,
        on_content_moderated: Callable | None = None,
        on_content_flagged: Callable | None = None,
        on_request_accepted: Callable | None = None,
        on_any: Callable | None = None,
    ) -> Subscription:
        handlers = {
            "on_new_message_elsewhere": on_new_message_elsewhere,
            "on_review_received": on_review_received,
            "on_review_reply": on_review_reply,
            "on_content_moderated": on_content_moderated,
            "on_content_flagged": on_content_flagged,
            "on_request_accepted": on_request_accepted,
        }
        unsubscribers = {
            name: self._listeners.add(HANDLER_TYPES[name].value, handler)
            for name, handler in handlers.items()
            if handler is not None
        }
        if on_any is not None:
            unsubscribers["on_any"] = self._listeners.add(_ANY, on_any)
        return Subscription(unsubscribers)

    def on_unread_count(self, handler: Callable) -> Callable[[], None]:
        """handler(count) whenever the cached unread count changes."""
        return self._listeners.add(_UNREAD, handler)

    async def _set_unread(self, count: int) -> None:
        count = max(0, int(count))
        if count != self.unread_count:
            self.unread_count = count
            await self._listeners.dispatch(_UNREAD, count)

    # ---------------- inbound ----------------

    async def _on_push(self, data) -> None:
        try:
            notification = NotificationOut.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Dropping malformed new_notification: {e.errors()}")
            return
        await self._deliver(notification, optimistic=True)

    async def _deliver(self, notification: NotificationOut, optimistic: bool) -> bool:
        key = notification.notificationID
        if key and self._seen.seen(key):
            logger.debug(f"Duplicate notification {key} dropped")
            return False

        if key:
            self.notifications.insert(0, notification)
        if optimistic and not notification.readStatus:
            await self._set_unread(self.unread_count + 1)

        await self._dispatch_only(notification)
        return True

    # ---------------- REST reconciliation ----------------

    async def refresh(self, deliver_new: bool = False) -> List[NotificationOut]:
        """Replace the cached list and unread count with the server's.
        Pushes that landed while the request was in flight are kept on top.
        With `deliver_new`, notifications not seen yet are dispatched (oldest first).
        """
        cached_ids = {n.notificationID for n in self.notifications}
        notifications = await self._history.list_notifications()
        count = await self._history.get_notification_unread_count()

        fresh = [n for n in notifications if n.notificationID and n.notificationID not in self._seen]
        for n in notifications:
            if n.notificationID:
                self._seen.add(n.notificationID)
        self.notifications = self._merge_live(notifications, cached_ids)
        await self._set_unread(count)

        if deliver_new and fresh:
            logger.info(f"Polling recovered {len(fresh)} notification(s)")
            for n in reversed(fresh):
                await self._dispatch_only(n)
        return self.notifications

    def _merge_live(self, notifications: List[NotificationOut], cached_ids: set) -> List[NotificationOut]:
        server_ids = {n.notificationID for n in notifications}
        live = [
            n for n in self.notifications
            if n.notificationID not in cached_ids and n.notificationID not in server_ids
        ]
        return live + list(notifications)

    async def _dispatch_only(self, notification: NotificationOut) -> None:
        """A message for a conversation open in this client is not 'elsewhere'."""
        kind = notification.notificationType
        open_here = kind == NotificationType.MESSAGE and notification.requestID in set(self._open_conversations())
        if not open_here:
            await self._listeners.dispatch(kind.value, notification)
        await self._listeners.dispatch(_ANY, notification)

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh()
        except RestError as e:
            logger.warning(f"Notification refresh failed: {e.message}")

    async def _poll_loop(self) -> None:
        while True:
            await self._sleep(self.poll_interval)
            try:
                await self.refresh(deliver_new=True)
            except RestError as e:
                logger.warning(f"Notification poll failed ({self._connection.state.value}): {e.message}")

    async def poll_once(self) -> List[NotificationOut]:
        return await self.refresh(deliver_new=True)

    # ---------------- REST operations ----------------

    async def list_notifications(self, unread_only: bool = False) -> List[NotificationOut]:
        notifications = await self._history.list_notifications(unread_only)
        for n in notifications:
            if n.notificationID:
                self._seen.add(n.notificationID)
        if not unread_only:
            self.notifications = list(notifications)
        return notifications

    async def get_unread_count(self) -> int:
        count = await self._history.get_notification_unread_count()
        await self._set_unread(count)
        return self.unread_count

    async def mark_as_read(self, notification_id) -> int:
        notification_id = str(notification_id)
        await self._history.mark_notification_read(notification_id)
        for n in self.notifications:
            if n.notificationID == notification_id:
                n.readStatus = True
        return await self.get_unread_count()

    async def mark_all_as_read(self) -> int:
        updated = await self._history.mark_all_notifications_read()
        for n in self.notifications:
            n.readStatus = True
        await self._set_unread(0)
        return updated

    async def delete(self, notification_id) -> None:
        notification_id = str(notification_id)
        await self._history.delete_notification(notification_id)
        removed = [n for n in self.notifications if n.notificationID == notification_id]
        self.notifications = [n for n in self.notifications if n.notificationID != notification_id]
        if any(not n.readStatus for n in removed):
            await self._set_unread(self.unread_count - 1)

    async def delete_all_read(self) -> int:
        deleted = await self._history.delete_all_read_notifications()
        self.notifications = [n for n in self.notifications if not n.readStatus]
        return deleted
