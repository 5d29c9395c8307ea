"""
Live channel transport: one python-socketio AsyncClient per connection attempt.

The ConnectionManager owns reconnection, so the socket.io client runs with
its own reconnection disabled.
"""
from typing import Any, Awaitable, Callable, Optional

import socketio

from app.config import get_settings
from app.constants import LiveEvent
from app.errors import AuthError, TransportError
from app.utils.logger import get_logger

settings = get_settings()
logger = get_logger("client.transport")

EventCallback = Callable[[str, Any], Awaitable[None]]
DropCallback = Callable[[], Awaitable[None]]


class Transport:
    """Interface the ConnectionManager drives. `bind` is called before `connect`."""

    def bind(self, on_event: EventCallback, on_drop: DropCallback) -> None:
        raise NotImplementedError

    async def connect(self, token: str) -> None:
        raise NotImplementedError

    async def emit(self, event: str, data: Any) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    @property
    def connected(self) -> bool:
        raise NotImplementedError


class SocketIOTransport(Transport):
    def __init__(self, url: str | None = None, path: str | None = None, wait_timeout: float | None = None):
        self.url = url or settings.LIVE_BASE_URL
        self.path = path or settings.SOCKETIO_PATH
        self.wait_timeout = wait_timeout or settings.REST_TIMEOUT_SECONDS
        self._client = socketio.AsyncClient(
            reconnection=False,
            logger=settings.APP_DEBUG,
            engineio_logger=settings.APP_DEBUG,
        )
        self._on_event: Optional[EventCallback] = None
        self._on_drop: Optional[DropCallback] = None
        self._refusal: Optional[str] = None
        self._closing = False

        self._client.on(LiveEvent.CONNECT_ERROR, self._handle_connect_error)
        self._client.on(LiveEvent.DISCONNECT, self._handle_disconnect)
        self._client.on('*', self._handle_any)

    def bind(self, on_event: EventCallback, on_drop: DropCallback) -> None:
        self._on_event = on_event
        self._on_drop = on_drop

    @property
    def connected(self) -> bool:
        return self._client.connected

    async def connect(self, token: str) -> None:
        self._refusal = None
        try:
            await self._client.connect(
                self.url,
                auth={'token': token},
                socketio_path=self.path,
                wait_timeout=self.wait_timeout,
            )
        except socketio.exceptions.ConnectionError as e:
            reason = self._refusal or str(e)
            if 'unauthorized' in reason.lower():
                raise AuthError("Live channel rejected the token") from e
            raise TransportError(f"Could not reach live channel: {reason}") from e

    async def emit(self, event: str, data: Any) -> None:
        if not self._client.connected:
            raise TransportError()
        try:
            await self._client.emit(event, data)
        except socketio.exceptions.SocketIOError as e:
            raise TransportError(str(e) or None) from e

    async def close(self) -> None:
        self._closing = True
        if self._client.connected:
            await self._client.disconnect()

    async def _handle_connect_error(self, data=None):
        if isinstance(data, dict):
            self._refusal = str(data.get('message') or '')
        else:
            self._refusal = str(data or '')
        logger.warning(f"Live channel connect_error: {self._refusal}")
        if self._on_event:
            await self._on_event(LiveEvent.CONNECT_ERROR, data)

    async def _handle_disconnect(self, *args):
        if self._closing:
            return
        logger.warning(f"Live channel dropped ({args[0] if args else 'unknown reason'})")
        if self._on_drop:
            await self._on_drop()

    async def _handle_any(self, event, *args):
        if self._on_event:
            await self._on_event(event, args[0] if args else None)
