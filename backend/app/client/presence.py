"""
Presence/Typing Tracker: ephemeral "is typing" flags keyed by (conversationID, userID).
Never persisted; cleared on disconnect so nothing stale survives a reconnect.
"""
import asyncio
from typing import Callable, Dict, Set, Tuple

from app.config import get_settings
from app.utils.logger import get_logger
from app.client.events import ListenerRegistry

settings = get_settings()
logger = get_logger("client.typing")

_CHANGE = "change"

TypingKey = Tuple[str, str]


class TypingTracker:
    def __init__(self, ttl: float | None = None):
        self.ttl = ttl if ttl is not None else settings.TYPING_TTL_SECONDS
        self._timers: Dict[TypingKey, asyncio.TimerHandle] = {}
        self._listeners = ListenerRegistry("typing")

    def on_change(self, handler: Callable) -> Callable[[], None]:
        """handler(conversation_id, user_id, is_typing)."""
        return self._listeners.add(_CHANGE, handler)

    def touch(self, conversation_id, user_id) -> None:
        """A typing signal: mark typing and restart the expiry timer."""
        key = (str(conversation_id), str(user_id))
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.ttl, self._expire, key)
        if timer is None:
            self._listeners.notify(_CHANGE, key[0], key[1], True)

    def stop(self, conversation_id, user_id) -> bool:
        """Explicit stop (or a message from that user). False if not typing."""
        key = (str(conversation_id), str(user_id))
        timer = self._timers.pop(key, None)
        if timer is None:
            return False
        timer.cancel()
        self._listeners.notify(_CHANGE, key[0], key[1], False)
        return True

    def _expire(self, key: TypingKey) -> None:
        if self._timers.pop(key, None) is not None:
            logger.debug(f"Typing expired: user {key[1]} in {key[0]}")
            self._listeners.notify(_CHANGE, key[0], key[1], False)

    def is_typing(self, conversation_id, user_id) -> bool:
        return (str(conversation_id), str(user_id)) in self._timers

    def typing_users(self, conversation_id) -> Set[str]:
        conversation_id = str(conversation_id)
        return {uid for (cid, uid) in self._timers if cid == conversation_id}

    def reset(self) -> None:
        """Drop every flag without replay."""
        timers, self._timers = self._timers, {}
        for (conversation_id, user_id), timer in timers.items():
            timer.cancel()
            self._listeners.notify(_CHANGE, conversation_id, user_id, False)
