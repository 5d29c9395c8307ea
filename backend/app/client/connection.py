"""
Connection Manager: one live connection per client session.

State machine: connecting -> connected -> disconnected -> connecting -> connected | failed.
Listeners registered with `on()` are bound to the manager, not to a transport,
so they survive every reconnect.
"""
import asyncio
import uuid
from functools import partial
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from app.config import get_settings
from app.constants import ConnectionState, LiveEvent
from app.errors import AuthError, TransportError
from app.security import read_unverified_claims
from app.utils.logger import get_logger
from app.client.events import ListenerRegistry
from app.client.transport import SocketIOTransport, Transport

settings = get_settings()
logger = get_logger("client.connection")

_STATE = "state"
_RECONNECT = "reconnect"


@dataclass
class Session:
    """One open connection; a user may hold several (multi-tab)."""
    session_id: str
    user_id: str
    token: str
    role: Optional[str] = None
    state: ConnectionState = ConnectionState.CONNECTING


class ConnectionManager:
    def __init__(
        self,
        transport_factory: Callable[[], Transport] | None = None,
        *,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._transport_factory = transport_factory or SocketIOTransport
        self.max_attempts = max_attempts if max_attempts is not None else settings.RECONNECT_ATTEMPTS
        self.base_delay = base_delay if base_delay is not None else settings.RECONNECT_DELAY_SECONDS
        self.max_delay = max_delay if max_delay is not None else settings.RECONNECT_DELAY_MAX_SECONDS
        self._sleep = sleep

        self._events = ListenerRegistry("connection")
        self._hooks = ListenerRegistry("connection-hooks")
        self._transport: Optional[Transport] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closing = False
        self._consumers = 0

        self.session: Optional[Session] = None
        self._state = ConnectionState.DISCONNECTED

    # ---------------- state ----------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def user_id(self) -> Optional[str]:
        return self.session.user_id if self.session else None

    @property
    def consumers(self) -> int:
        return self._consumers

    def backoff_delay(self, attempt: int) -> float:
        """Linear growth capped at max_delay: 1s, 2s, 3s, ... with the defaults."""
        return min(self.base_delay * attempt, self.max_delay)

    async def _set_state(self, state: ConnectionState) -> None:
        previous = self._state
        if state == previous:
            return
        self._state = state
        if self.session:
            self.session.state = state
        logger.info(f"🔌 Live connection: {previous.value} -> {state.value}")
        await self._hooks.dispatch(_STATE, state, previous)

    # ---------------- listeners ----------------

    def on(self, event: str, handler: Callable) -> Callable[[], None]:
        """Listen to a live channel event; returns the unsubscribe function."""
        return self._events.add(event, handler)

    def off(self, event: str, handler: Callable) -> None:
        self._events.remove(event, handler)

    def on_state_change(self, handler: Callable) -> Callable[[], None]:
        """handler(state, previous) on every transition."""
        return self._hooks.add(_STATE, handler)

    def on_reconnect(self, handler: Callable) -> Callable[[], None]:
        """handler() after every successful reconnect (not the first connect)."""
        return self._hooks.add(_RECONNECT, handler)

    # ---------------- lifecycle ----------------

    async def connect(self, token: str | None) -> Session:
        """Open the live connection for `token`.
        Raises AuthError for a missing/unreadable token or a server refusal,
        TransportError when the broker cannot be reached.
        """
        if self.session and self.connected and self.session.token == token:
            return self.session
        claims = read_unverified_claims(token)

        await self._cancel_reconnect()
        if self._transport is not None:
            await self._close_transport()
        self._closing = False
        self.session = Session(
            session_id=uuid.uuid4().hex,
            user_id=str(claims["sub"]),
            token=token,
            role=claims.get("role"),
        )
        await self._set_state(ConnectionState.CONNECTING)
        try:
            await self._open(token)
        except (AuthError, TransportError) as e:
            logger.warning(f"Live connection failed for user {self.session.user_id}: {e.message}")
            self.session = None
            await self._set_state(ConnectionState.DISCONNECTED)
            raise

        await self._set_state(ConnectionState.CONNECTED)
        await self._events.dispatch(LiveEvent.CONNECT, self.session)
        return self.session

    async def _open(self, token: str) -> None:
        transport = self._transport_factory()
        transport.bind(self._dispatch, partial(self._handle_drop, transport))
        await transport.connect(token)
        self._transport = transport

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except TransportError as e:
                logger.debug(f"Ignoring error while closing transport: {e.message}")

    async def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _dispatch(self, event: str, data: Any) -> None:
        await self._events.dispatch(event, data)

    async def _handle_drop(self, transport: Transport) -> None:
        """Unexpected loss of the transport: go through the reconnect policy."""
        if self._closing or self.session is None or transport is not self._transport:
            return
        self._transport = None
        await self._set_state(ConnectionState.DISCONNECTED)
        await self._events.dispatch(LiveEvent.DISCONNECT, None)
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        for attempt in range(1, self.max_attempts + 1):
            delay = self.backoff_delay(attempt)
            logger.info(f"🔄 Reconnect attempt {attempt}/{self.max_attempts} in {delay:.1f}s")
            await self._sleep(delay)
            if self._closing or self.session is None:
                return

            await self._set_state(ConnectionState.CONNECTING)
            try:
                await self._open(self.session.token)
            except AuthError as e:
                # A refused credential will not get better by retrying
                logger.error(f"Reconnect refused: {e.message}")
                await self._set_state(ConnectionState.FAILED)
                await self._events.dispatch(LiveEvent.CONNECT_ERROR, {"message": e.message})
                return
            except TransportError as e:
                logger.warning(f"Reconnect attempt {attempt} failed: {e.message}")
                if attempt < self.max_attempts:
                    await self._set_state(ConnectionState.DISCONNECTED)
                continue

            await self._set_state(ConnectionState.CONNECTED)
            await self._events.dispatch(LiveEvent.CONNECT, self.session)
            await self._hooks.dispatch(_RECONNECT)
            return

        logger.error(f"❌ Live connection failed after {self.max_attempts} attempts")
        await self._set_state(ConnectionState.FAILED)

    async def wait_reconnect(self) -> ConnectionState:
        """Wait for a running reconnect cycle to end; returns the resulting state."""
        task = self._reconnect_task
        if task is not None and not task.done():
            await task
        return self._state

    async def emit(self, event: str, data: Any) -> None:
        """Send over the live connection; TransportError when it is down."""
        if not self.connected or self._transport is None:
            raise TransportError("Not connected to the live channel")
        await self._transport.emit(event, data)

    async def disconnect(self) -> None:
        """Release the session. Idempotent; listeners stay registered."""
        self._closing = True
        await self._cancel_reconnect()
        await self._close_transport()
        if self.session is not None:
            logger.info(f"Session {self.session.session_id} closed for user {self.session.user_id}")
        self.session = None
        self._consumers = 0
        await self._set_state(ConnectionState.DISCONNECTED)

    # ---------------- consumers ----------------

    def acquire(self) -> int:
        """Register an active consumer of the shared connection."""
        self._consumers += 1
        return self._consumers

    async def release(self) -> int:
        """Drop a consumer; the connection is torn down with the last one."""
        if self._consumers == 0:
            return 0
        self._consumers -= 1
        if self._consumers == 0:
            await self.disconnect()
        return self._consumers
