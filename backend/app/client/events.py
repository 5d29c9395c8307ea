"""
Event plumbing shared by the client components: listener lists and the dedup cache.
"""
import asyncio
import inspect
from collections import OrderedDict
from typing import Any, Callable, Dict, Hashable, List

from app.utils.logger import get_logger

logger = get_logger("client.events")

# Default bound on remembered event IDs
MAX_SEEN_IDS = 10000


class _Listener:
    __slots__ = ("handler", "active")

    def __init__(self, handler: Callable):
        self.handler = handler
        self.active = True


class ListenerRegistry:
    """Named listener lists on top of one `add`/`remove` primitive.

    Dispatch iterates over a snapshot, so a listener may unsubscribe itself
    (or any other listener) from inside its own callback. A removed listener
    is never invoked again, even later in the same dispatch round.
    Handlers may be plain functions or coroutines.
    """

    def __init__(self, name: str = "listeners"):
        self.name = name
        self._listeners: Dict[str, List[_Listener]] = {}

    def add(self, event: str, handler: Callable) -> Callable[[], None]:
        entry = _Listener(handler)
        self._listeners.setdefault(event, []).append(entry)

        def unsubscribe() -> None:
            self._remove(event, entry)

        return unsubscribe

    def _remove(self, event: str, entry: _Listener) -> None:
        entry.active = False
        entries = self._listeners.get(event)
        if entries and entry in entries:
            entries.remove(entry)
            if not entries:
                del self._listeners[event]

    def remove(self, event: str, handler: Callable) -> None:
        """Remove every registration of `handler` for `event`."""
        for entry in list(self._listeners.get(event, [])):
            if entry.handler is handler:
                self._remove(event, entry)

    def count(self, event: str | None = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, []))
        return sum(len(entries) for entries in self._listeners.values())

    def clear(self) -> None:
        for entries in self._listeners.values():
            for entry in entries:
                entry.active = False
        self._listeners.clear()

    async def dispatch(self, event: str, *args: Any) -> int:
        """Invoke every listener of `event` in registration order; returns how many ran.
        A failing listener is logged and does not stop the others.
        """
        delivered = 0
        for entry in list(self._listeners.get(event, [])):
            if not entry.active:
                continue
            try:
                result = entry.handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"{self.name}: listener for '{event}' failed")
            delivered += 1
        return delivered

    def notify(self, event: str, *args: Any) -> int:
        """Synchronous dispatch for timer callbacks; coroutine results are scheduled."""
        delivered = 0
        for entry in list(self._listeners.get(event, [])):
            if not entry.active:
                continue
            try:
                result = entry.handler(*args)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception:
                logger.exception(f"{self.name}: listener for '{event}' failed")
            delivered += 1
        return delivered


class DedupCache:
    """Bounded set of already-applied event IDs (OrderedDict used as an LRU)."""

    def __init__(self, maxsize: int = MAX_SEEN_IDS):
        if maxsize < 1:
            raise ValueError("maxsize must be positive")
        self.maxsize = maxsize
        self._seen: "OrderedDict[Hashable, None]" = OrderedDict()

    def seen(self, key: Hashable) -> bool:
        """Record `key`; True when it had already been recorded."""
        if key in self._seen:
            self._seen.move_to_end(key)
            return True
        self._seen[key] = None
        if len(self._seen) > self.maxsize:
            self._seen.popitem(last=False)
        return False

    def add(self, key: Hashable) -> None:
        self.seen(key)

    def discard(self, key: Hashable) -> None:
        self._seen.pop(key, None)

    def clear(self) -> None:
        self._seen.clear()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._seen

    def __len__(self) -> int:
        return len(self._seen)
