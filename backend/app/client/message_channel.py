"""
Message Channel: chat send/receive, typing signals and read state per conversation.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from app.config import get_settings
from app.constants import ConnectionState, LiveEvent, ViewStatus
from app.errors import BrokerError, LiveChannelError, RestError, TransportError, UnresolvedRecipientError
from app.schemas import ChatMessageOut, MarkReadOut, TypingEvent
from app.utils.logger import get_logger
from app.client.connection import ConnectionManager
from app.client.events import DedupCache, ListenerRegistry
from app.client.history import HistoryClient
from app.client.presence import TypingTracker
from app.client.rooms import RoomRouter

settings = get_settings()
logger = get_logger("client.message_channel")

_MESSAGE = "message"
_ERROR = "error"


@dataclass
class ConversationView:
    """Client-visible state of one open conversation.
    `disconnected` overlays `ready`: history stays, composing is disabled.
    """
    conversation_id: str
    peer_id: Optional[str] = None
    status: ViewStatus = ViewStatus.LOADING
    disconnected: bool = False
    messages: List[ChatMessageOut] = field(default_factory=list)
    unread_count: int = 0
    typing_users: Set[str] = field(default_factory=set)
    error: Optional[str] = None
    message_ids: Set[str] = field(default_factory=set, repr=False)
    # history load failed (error came from REST, not the broker)
    load_failed: bool = field(default=False, repr=False)
    # room ack arrived while the first load was in flight
    stale: bool = field(default=False, repr=False)

    @property
    def can_compose(self) -> bool:
        return self.status == ViewStatus.READY and not self.disconnected

    @property
    def last_message(self) -> Optional[ChatMessageOut]:
        return self.messages[-1] if self.messages else None

    def texts(self) -> List[str]:
        return [m.messageText for m in self.messages]

    def insert(self, message: ChatMessageOut) -> bool:
        """Add once per messageID, keeping (sentAt, messageID) order."""
        if message.messageID in self.message_ids:
            return False
        self.message_ids.add(message.messageID)
        self.messages.append(message)
        if len(self.messages) > 1 and self.messages[-2].sort_key() > message.sort_key():
            self.messages.sort(key=ChatMessageOut.sort_key)
        return True


class MessageChannel:
    def __init__(
        self,
        connection: ConnectionManager,
        rooms: RoomRouter,
        history: HistoryClient,
        typing: TypingTracker | None = None,
        *,
        dedup_size: int | None = None,
        typing_ttl: float | None = None,
    ):
        self._connection = connection
        self._rooms = rooms
        self._history = history
        self.typing = typing or TypingTracker(typing_ttl)
        self.typing_ttl = typing_ttl if typing_ttl is not None else self.typing.ttl

        self._views: Dict[str, ConversationView] = {}
        self._seen = DedupCache(dedup_size or settings.DEDUP_CACHE_SIZE)
        self._listeners = ListenerRegistry("messages")
        self._outbound_typing: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._started = False

        self._detach = [
            connection.on(LiveEvent.NEW_MESSAGE, self._on_new_message),
            connection.on(LiveEvent.USER_TYPING, self._on_user_typing),
            connection.on(LiveEvent.USER_STOP_TYPING, self._on_user_stop_typing),
            connection.on(LiveEvent.JOINED_CONVERSATION, self._on_joined),
            connection.on(LiveEvent.ERROR, self._on_error),
            connection.on_state_change(self._on_state_change),
            self.typing.on_change(self._on_typing_change),
        ]

    @property
    def user_id(self) -> Optional[str]:
        return self._connection.user_id

    # ---------------- lifecycle ----------------

    def start(self) -> None:
        """Become a consumer of the shared connection."""
        if not self._started:
            self._started = True
            self._connection.acquire()

    async def stop(self) -> None:
        for conversation_id in list(self._views):
            await self.close(conversation_id)
        for task in list(self._tasks):
            task.cancel()
        if self._started:
            self._started = False
            await self._connection.release()

    def detach(self) -> None:
        for unsubscribe in self._detach:
            unsubscribe()
        self._detach = []

    # ---------------- views ----------------

    def view(self, conversation_id) -> Optional[ConversationView]:
        return self._views.get(str(conversation_id))

    def open_conversation_ids(self) -> Set[str]:
        return set(self._views)

    async def open(self, conversation_id, peer_id=None) -> ConversationView:
        """Join the room and load history; the view goes loading -> ready.
        Re-opening returns the same view (and retries a failed load).
        """
        conversation_id = str(conversation_id)
        view = self._views.get(conversation_id)
        if view is None:
            view = ConversationView(
                conversation_id=conversation_id,
                peer_id=str(peer_id) if peer_id is not None else None,
                disconnected=not self._connection.connected,
            )
            self._views[conversation_id] = view
            await self._rooms.join(conversation_id)
        elif peer_id is not None:
            view.peer_id = str(peer_id)

        if view.status == ViewStatus.LOADING:
            view.stale = False
            try:
                messages = await self._history.get_messages(conversation_id)
            except RestError as e:
                view.error = e.message
                view.load_failed = True
                raise
            for message in messages:
                await self._apply(message, notify=False)
            raced = view.stale
            self._mark_loaded(view)
            if raced:
                # the room ack raced the load; fetch once more now that we are routed
                await self._fill(conversation_id)
        return view

    def _mark_loaded(self, view: ConversationView) -> None:
        view.status = ViewStatus.READY
        view.stale = False
        if view.load_failed:
            view.load_failed = False
            view.error = None
        self._recount(view)

    async def close(self, conversation_id) -> None:
        conversation_id = str(conversation_id)
        self._cancel_outbound_typing(conversation_id)
        if self._views.pop(conversation_id, None) is not None:
            await self._rooms.leave(conversation_id)

    def on_message(self, handler: Callable) -> Callable[[], None]:
        """handler(message) once per distinct messageID; returns unsubscribe."""
        return self._listeners.add(_MESSAGE, handler)

    def on_error(self, handler: Callable) -> Callable[[], None]:
        """handler(BrokerError) for every request the broker rejects; returns unsubscribe."""
        return self._listeners.add(_ERROR, handler)

    # ---------------- sending ----------------

    def resolve_recipient(self, conversation_id, receiver_id=None) -> str:
        """Explicit receiver, then the view's peer, then the other party of the
        most recent message. The current user is never a valid receiver.
        """
        conversation_id = str(conversation_id)
        me = self.user_id
        view = self._views.get(conversation_id)

        inferred = None
        if view:
            for message in reversed(view.messages):
                other = message.receiverID if message.senderID == me else message.senderID
                if other and other != me:
                    inferred = other
                    break

        explicit = receiver_id if receiver_id is not None else (view.peer_id if view else None)
        if explicit is not None and str(explicit) not in ("", me):
            explicit = str(explicit)
            if inferred and inferred != explicit:
                logger.warning(
                    f"⚠️ Receiver mismatch in conversation {conversation_id}: "
                    f"explicit {explicit}, history says {inferred}. Using explicit."
                )
            return explicit
        if inferred:
            return inferred
        raise UnresolvedRecipientError(conversation_id)

    async def send(self, conversation_id, text: str, receiver_id=None) -> None:
        """Fire-and-forget; the room echo (deduped) is the confirmation."""
        conversation_id = str(conversation_id)
        if not text or not text.strip():
            raise LiveChannelError("Message text is required")
        receiver = self.resolve_recipient(conversation_id, receiver_id)
        if not self._connection.connected:
            raise TransportError("Not connected; message not sent")

        await self._connection.emit(LiveEvent.SEND_MESSAGE, {
            'conversationID': conversation_id,
            'receiverID': receiver,
            'messageText': text,
        })
        await self.typing_stop(conversation_id)

    async def mark_read(self, conversation_id) -> MarkReadOut:
        """Idempotent; recomputes the conversation's unread badge."""
        conversation_id = str(conversation_id)
        result = await self._history.mark_read(conversation_id)
        view = self._views.get(conversation_id)
        if view:
            for message in view.messages:
                if message.receiverID == self.user_id:
                    message.isRead = True
            self._recount(view)
        return result

    # ---------------- typing (outbound) ----------------

    async def typing_start(self, conversation_id) -> None:
        """Per keystroke: emit `typing` and re-arm the auto `stop_typing`."""
        conversation_id = str(conversation_id)
        if not self._connection.connected:
            return
        self._cancel_outbound_typing(conversation_id)
        try:
            await self._connection.emit(LiveEvent.TYPING, {'conversationID': conversation_id})
        except TransportError as e:
            logger.debug(f"typing not sent for {conversation_id}: {e.message}")
            return
        loop = asyncio.get_running_loop()
        self._outbound_typing[conversation_id] = loop.call_later(
            self.typing_ttl, self._auto_stop, conversation_id
        )

    def _auto_stop(self, conversation_id: str) -> None:
        self._outbound_typing.pop(conversation_id, None)
        task = asyncio.ensure_future(self.typing_stop(conversation_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def typing_stop(self, conversation_id) -> None:
        conversation_id = str(conversation_id)
        self._cancel_outbound_typing(conversation_id)
        if not self._connection.connected:
            return
        try:
            await self._connection.emit(LiveEvent.STOP_TYPING, {'conversationID': conversation_id})
        except TransportError as e:
            logger.debug(f"stop_typing not sent for {conversation_id}: {e.message}")

    def _cancel_outbound_typing(self, conversation_id: str) -> None:
        timer = self._outbound_typing.pop(conversation_id, None)
        if timer is not None:
            timer.cancel()

    def typing_users(self, conversation_id) -> Set[str]:
        return self.typing.typing_users(conversation_id)

    # ---------------- inbound ----------------

    async def _on_new_message(self, data) -> None:
        try:
            message = ChatMessageOut.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Dropping malformed new_message: {e.errors()}")
            return
        await self._apply(message)

    async def _apply(self, message: ChatMessageOut, notify: bool = True) -> bool:
        """Single entry point for live events, initial loads and gap-fill."""
        first_time = not self._seen.seen(message.messageID)
        view = self._views.get(message.conversationID)
        inserted = view.insert(message) if view else False
        if not first_time and not inserted:
            logger.debug(f"Duplicate message {message.messageID} dropped")
            return False

        if message.senderID != self.user_id:
            self.typing.stop(message.conversationID, message.senderID)
        if view and inserted:
            self._recount(view)
        if first_time and notify:
            await self._listeners.dispatch(_MESSAGE, message)
        return True

    def _on_user_typing(self, data) -> None:
        event = self._typing_event(data)
        if event and event.userID != self.user_id:
            self.typing.touch(event.conversationID, event.userID)

    def _on_user_stop_typing(self, data) -> None:
        event = self._typing_event(data)
        if event:
            self.typing.stop(event.conversationID, event.userID)

    @staticmethod
    def _typing_event(data) -> Optional[TypingEvent]:
        try:
            return TypingEvent.model_validate(data)
        except ValidationError:
            logger.debug(f"Ignoring malformed typing event: {data!r}")
            return None

    def _on_typing_change(self, conversation_id: str, user_id: str, is_typing: bool) -> None:
        view = self._views.get(conversation_id)
        if view is None:
            return
        if is_typing:
            view.typing_users.add(user_id)
        else:
            view.typing_users.discard(user_id)

    # ---------------- connection state ----------------

    def _on_state_change(self, state: ConnectionState, previous: ConnectionState) -> None:
        connected = state == ConnectionState.CONNECTED
        for view in self._views.values():
            view.disconnected = not connected
        if state in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
            self.typing.reset()
            for conversation_id in list(self._outbound_typing):
                self._cancel_outbound_typing(conversation_id)

    async def _on_joined(self, data) -> None:
        """The broker routes the room to us from now on; fetch whatever it missed.
        Runs on every (re)join, so reconnects are gap-filled room by room.
        """
        conversation_id = data.get('conversationID') if isinstance(data, dict) else data
        view = self._views.get(str(conversation_id)) if conversation_id is not None else None
        if view is None:
            return
        if view.status == ViewStatus.LOADING and not view.load_failed:
            view.stale = True
            return
        await self._fill(view.conversation_id)

    async def _on_error(self, data) -> None:
        error = BrokerError.from_payload(data)
        view = self._views.get(error.conversation_id) if error.conversation_id else None
        if view is not None:
            view.error = error.message
        logger.warning(
            f"Live channel rejected {error.event or 'request'} "
            f"({error.code}, conversation {error.conversation_id}): {error.message}"
        )
        await self._listeners.dispatch(_ERROR, error)

    async def _fill(self, conversation_id: str) -> int:
        """Merge the conversation's history through the dedup path; returns how many were new."""
        try:
            messages = await self._history.get_messages(conversation_id)
        except RestError as e:
            logger.warning(f"Gap-fill for conversation {conversation_id} failed: {e.message}")
            return 0
        added = 0
        for message in messages:
            if await self._apply(message):
                added += 1
        view = self._views.get(conversation_id)
        if view and view.status == ViewStatus.LOADING:
            self._mark_loaded(view)
        if added:
            logger.info(f"Gap-fill recovered {added} message(s) in conversation {conversation_id}")
        return added

    def _recount(self, view: ConversationView) -> None:
        me = self.user_id
        view.unread_count = sum(1 for m in view.messages if m.receiverID == me and not m.isRead)
