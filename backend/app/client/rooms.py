"""
Room Router, client side: which conversations this session wants to be in.
"""
from typing import Dict, FrozenSet

from app.constants import LiveEvent
from app.errors import BrokerError, TransportError
from app.utils.logger import get_logger
from app.client.connection import ConnectionManager

logger = get_logger("client.rooms")

# broker codes that mean the join will never succeed
_REFUSED = ("E403", "E404")


class RoomRouter:
    """Tracks joined conversations and keeps the broker in sync with them.

    Requests issued while disconnected are buffered. On every (re)connect all
    joined rooms are requested again, because the broker sees a new session,
    then buffered leaves are replayed. A join the broker refuses is forgotten.
    """

    def __init__(self, connection: ConnectionManager):
        self._connection = connection
        self._joined: set[str] = set()
        # conversationID -> buffered request event, in issue order
        self._pending: Dict[str, str] = {}
        self._detach = [
            connection.on(LiveEvent.CONNECT, self._replay),
            connection.on(LiveEvent.ERROR, self._on_error),
        ]

    @property
    def joined(self) -> FrozenSet[str]:
        return frozenset(self._joined)

    @property
    def pending(self) -> Dict[str, str]:
        return dict(self._pending)

    def is_joined(self, conversation_id) -> bool:
        return str(conversation_id) in self._joined

    async def join(self, conversation_id) -> bool:
        """Join a conversation; no-op (False) if already joined."""
        conversation_id = str(conversation_id)
        if conversation_id in self._joined:
            return False
        self._joined.add(conversation_id)
        await self._request(LiveEvent.JOIN_REQUEST, conversation_id)
        return True

    async def leave(self, conversation_id) -> bool:
        """Leave a conversation; safe (False) on a room never joined."""
        conversation_id = str(conversation_id)
        if conversation_id not in self._joined:
            return False
        self._joined.discard(conversation_id)
        await self._request(LiveEvent.LEAVE_REQUEST, conversation_id)
        return True

    async def _request(self, event: str, conversation_id: str) -> None:
        if self._connection.connected:
            try:
                await self._connection.emit(event, conversation_id)
                return
            except TransportError as e:
                logger.warning(f"{event} for {conversation_id} failed, buffering: {e.message}")
        # last request wins, and moves to the end of the replay order
        self._pending.pop(conversation_id, None)
        self._pending[conversation_id] = event
        logger.debug(f"Buffered {event} for conversation {conversation_id}")

    async def _replay(self, session=None) -> None:
        pending, self._pending = self._pending, {}
        for conversation_id in sorted(self._joined):
            await self._emit_quietly(LiveEvent.JOIN_REQUEST, conversation_id)
        for conversation_id, event in pending.items():
            if event == LiveEvent.LEAVE_REQUEST and conversation_id not in self._joined:
                await self._emit_quietly(LiveEvent.LEAVE_REQUEST, conversation_id)
        if self._joined:
            logger.info(f"Rejoined {len(self._joined)} conversation(s) after connect")

    async def _emit_quietly(self, event: str, conversation_id: str) -> None:
        try:
            await self._connection.emit(event, conversation_id)
        except TransportError as e:
            # dropped again mid-replay; the next connect replays everything
            logger.warning(f"Replay of {event} for {conversation_id} failed: {e.message}")
            if event == LiveEvent.LEAVE_REQUEST:
                self._pending[conversation_id] = event

    def _on_error(self, data) -> None:
        error = BrokerError.from_payload(data)
        if error.event != LiveEvent.JOIN_REQUEST or error.code not in _REFUSED:
            return
        conversation_id = error.conversation_id
        if conversation_id in self._joined:
            self._joined.discard(conversation_id)
            self._pending.pop(conversation_id, None)
            logger.warning(f"Join of conversation {conversation_id} refused ({error.code}): {error.message}")

    def reset(self) -> None:
        """Forget all membership (the session is being closed for good)."""
        self._joined.clear()
        self._pending.clear()

    def detach(self) -> None:
        for unsubscribe in self._detach:
            unsubscribe()
        self._detach = []
