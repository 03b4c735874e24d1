"""WebSocket connection manager for office messaging.

Maintains one live, authenticated connection to the messaging server per
user session, with heartbeat and auto-reconnect using exponential backoff.
Incoming frames are parsed into typed events and dispatched, in arrival
order, to the handlers registered with ``on()`` / ``subscribe()``.

The manager is constructed explicitly and passed to whoever needs it;
``connect_factory`` can be replaced with a fake for tests.
"""

import asyncio
import logging
import time
import urllib.parse
from typing import Any, Awaitable, Callable, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

from .. import config
from ..errors import (
    ConfigurationError,
    ProtocolError,
    TerminalConnectionError,
    TransientConnectionError,
)
from ..timers import Timer
from .events import EventBus
from .protocol import CONTROL_FRAME_TYPES, parse_frame, ping_frame, typing_frame
from .types import ConnectionState, EventKind, User

logger = logging.getLogger("office_messaging")


def backoff_delay(attempt: int, base: float, ceiling: float = 30.0) -> float:
    """Delay before reconnect attempt ``attempt`` (1-based):
    base, 2*base, 4*base, ... capped at ``ceiling``."""
    attempt = max(1, attempt)
    return min(base * 2 ** (attempt - 1), ceiling)


def build_url(base_url: str, user: User) -> str:
    """Add the handshake identification to the WebSocket URL."""
    query = urllib.parse.urlencode({"userId": user.id, "userType": user.role.value})
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}{query}"


def _socket_open(ws: Any) -> bool:
    return ws is not None and getattr(ws, "state", None) is State.OPEN


class ConnectionManager:
    """WebSocket client for the messaging server.

    Manages the socket lifecycle (connect, heartbeat, receive, close) and
    the reconnection policy. Failures inside the connection never raise into
    caller code; they are reported through the ``on_error`` handler and the
    connection state.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        reconnect_interval: Optional[float] = None,
        max_reconnect_attempts: Optional[int] = None,
        heartbeat_interval: Optional[float] = None,
        max_reconnect_delay: Optional[float] = None,
        connect_factory: Optional[Callable[[str], Awaitable[Any]]] = None,
        offline_detector=None,
        clock: Callable[[], float] = time.time,
    ):
        self.url = url or config.WS_URL
        self.reconnect_interval = (
            reconnect_interval if reconnect_interval is not None else config.RECONNECT_INTERVAL
        )
        self.max_reconnect_attempts = (
            max_reconnect_attempts if max_reconnect_attempts is not None
            else config.MAX_RECONNECT_ATTEMPTS
        )
        self.heartbeat_interval = (
            heartbeat_interval if heartbeat_interval is not None else config.HEARTBEAT_INTERVAL
        )
        self.max_reconnect_delay = (
            max_reconnect_delay if max_reconnect_delay is not None else config.MAX_RECONNECT_DELAY
        )
        self.offline_detector = offline_detector
        self.clock = clock
        self.last_heartbeat_at: Optional[float] = None

        self._connect_factory = connect_factory or ws_connect
        self._events = EventBus()
        self._state = ConnectionState.DISCONNECTED
        self._ws = None
        self._socket_task: Optional[asyncio.Task] = None
        self._reconnect_timer: Optional[Timer] = None
        self._heartbeat_timer: Optional[Timer] = None
        self._reconnect_attempts = 0
        self._intentional_disconnect = False
        self._current_user: Optional[User] = None
        self._network_unsubscribe: Optional[Callable[[], None]] = None

    # -- public API --------------------------------------------------------

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    def get_connection_state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and _socket_open(self._ws)

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def current_user(self) -> Optional[User]:
        return self._current_user

    def set_current_user(self, user: User) -> None:
        """Bind the identity sent in the connection handshake."""
        self._current_user = user

    def on(self, **handlers) -> None:
        """Register handlers by name, e.g. ``on(on_message=..., on_error=...)``.

        Keys: on_message, on_message_status, on_typing_indicator, on_reaction,
        on_message_pinned, on_connection_state_change, on_error.
        """
        self._events.on(**handlers)

    def subscribe(self, kind: EventKind, callback: Callable[[Any], None]) -> Callable[[], None]:
        """Add a listener for one event kind. Returns an unsubscribe function."""
        return self._events.subscribe(kind, callback)

    async def connect(self) -> None:
        """Open the connection in the background.

        Idempotent: does nothing while a socket is open or being opened.
        Raises ConfigurationError if no user has been set.
        """
        if self._socket_task is not None and not self._socket_task.done():
            logger.debug("WebSocket already connected or connecting")
            return

        if self._current_user is None:
            raise ConfigurationError(
                "User not set. Call set_current_user() before connecting."
            )

        self._intentional_disconnect = False
        self._cancel_reconnect_timer()
        self._stop_waiting_for_network()
        self._set_state(ConnectionState.CONNECTING)

        url = build_url(self.url, self._current_user)
        self._socket_task = asyncio.create_task(self._run_socket(url), name="messaging-socket")

    async def disconnect(self) -> None:
        """Close the connection. Never followed by a reconnect."""
        self._intentional_disconnect = True
        await self._cleanup()
        self._set_state(ConnectionState.DISCONNECTED)

    async def reconnect(self) -> None:
        """Tear down and reconnect with a fresh retry budget."""
        await self.disconnect()
        self._reconnect_attempts = 0
        await self.connect()

    async def send_typing_indicator(self, conversation_id: str) -> None:
        if not self.is_connected or self._current_user is None:
            return
        await self._send(typing_frame(conversation_id, self._current_user, True))

    async def stop_typing_indicator(self, conversation_id: str) -> None:
        if not self.is_connected or self._current_user is None:
            return
        await self._send(typing_frame(conversation_id, self._current_user, False))

    def get_status_text(self) -> str:
        """Formatted status text for the CLI."""
        lines = [f"Messaging connection ({self.url}):"]
        lines.append(f"  State: {self._state.value}")
        if self._current_user:
            lines.append(
                f"  User: {self._current_user.name or self._current_user.id} "
                f"({self._current_user.role.value})"
            )
        if self._state == ConnectionState.RECONNECTING:
            lines.append(
                f"  Reconnect attempt: {self._reconnect_attempts}/{self.max_reconnect_attempts}"
            )
        if self.last_heartbeat_at:
            ago = int(self.clock() - self.last_heartbeat_at)
            lines.append(f"  Last heartbeat: {ago}s ago")
        return "\n".join(lines)

    # -- socket lifecycle --------------------------------------------------

    async def _run_socket(self, url: str) -> None:
        """Open one socket, read frames until it closes, then decide what next."""
        try:
            ws = await self._connect_factory(url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Failed to create WebSocket connection: {e}")
            self._report_error(TransientConnectionError(f"Failed to create WebSocket connection: {e}"))
            self._handle_close(None, str(e))
            return

        self._ws = ws
        self._handle_open()

        code: Optional[int] = None
        reason = ""
        try:
            async for raw in ws:
                self._handle_frame(raw)
            code = getattr(ws, "close_code", None)
            reason = getattr(ws, "close_reason", None) or ""
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as e:
            if e.rcvd is not None:
                code, reason = e.rcvd.code, e.rcvd.reason
        except Exception as e:
            logger.error(f"WebSocket error: {e}")
            self._report_error(TransientConnectionError(f"WebSocket connection error: {e}"))

        await self._close_socket(ws)
        self._handle_close(code, reason)

    def _handle_open(self) -> None:
        logger.info("WebSocket connected")
        self._reconnect_attempts = 0
        self.last_heartbeat_at = self.clock()
        self._set_state(ConnectionState.CONNECTED)
        self._start_heartbeat()

    def _handle_frame(self, raw: Any) -> None:
        try:
            frame_type, kind, event = parse_frame(raw, self.clock())
        except ProtocolError as e:
            logger.warning(f"Dropping malformed WebSocket frame: {e}")
            return

        if kind is None:
            if frame_type == "pong":
                self.last_heartbeat_at = self.clock()
            elif frame_type not in CONTROL_FRAME_TYPES:
                logger.warning(f"Unknown WebSocket message type: {frame_type}")
            return

        self._events.emit(kind, event)

    def _handle_close(self, code: Optional[int], reason: str) -> None:
        logger.info(f"WebSocket closed: {code} {reason}".rstrip())
        self._stop_heartbeat()
        self._ws = None

        if self._intentional_disconnect:
            self._set_state(ConnectionState.DISCONNECTED)
            return

        if self.offline_detector is not None and not self.offline_detector.is_online:
            self._wait_for_network()
            return

        if self._reconnect_attempts < self.max_reconnect_attempts:
            self._schedule_reconnect()
        else:
            logger.error("Max reconnection attempts reached")
            self._set_state(ConnectionState.DISCONNECTED)
            self._report_error(TerminalConnectionError(
                "Failed to reconnect after maximum attempts",
                attempts=self._reconnect_attempts,
            ))

    async def _cleanup(self) -> None:
        self._stop_heartbeat()
        self._cancel_reconnect_timer()
        self._stop_waiting_for_network()

        ws, self._ws = self._ws, None
        task, self._socket_task = self._socket_task, None

        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if ws is not None:
            await self._close_socket(ws)

    @staticmethod
    async def _close_socket(ws: Any) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"Error while closing WebSocket: {e}")

    # -- reconnection ------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        self._reconnect_attempts += 1
        delay = backoff_delay(
            self._reconnect_attempts, self.reconnect_interval, self.max_reconnect_delay
        )
        logger.info(
            f"Attempting to reconnect in {delay:.1f}s "
            f"(attempt {self._reconnect_attempts}/{self.max_reconnect_attempts})"
        )
        self._cancel_reconnect_timer()
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_timer = Timer(delay, self._fire_reconnect, name="reconnect")

    async def _fire_reconnect(self) -> None:
        self._reconnect_timer = None
        if self._intentional_disconnect:
            return
        try:
            await self.connect()
        except ConfigurationError as e:
            logger.error(f"Cannot reconnect: {e}")
            self._set_state(ConnectionState.DISCONNECTED)
            self._report_error(e)

    def _cancel_reconnect_timer(self) -> None:
        if self._reconnect_timer:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _wait_for_network(self) -> None:
        """Hold off reconnecting until the offline detector reports online.

        Waiting does not use up reconnect attempts.
        """
        logger.info("Network is offline, waiting for it to return before reconnecting")
        self._set_state(ConnectionState.RECONNECTING)
        if self._network_unsubscribe is None:
            self._network_unsubscribe = self.offline_detector.subscribe(self._on_network_change)

    def _on_network_change(self, state) -> None:
        if not state.is_online or self._intentional_disconnect:
            return
        self._stop_waiting_for_network()
        self._cancel_reconnect_timer()
        self._reconnect_timer = Timer(0, self._fire_reconnect, name="reconnect")

    def _stop_waiting_for_network(self) -> None:
        if self._network_unsubscribe is not None:
            self._network_unsubscribe()
            self._network_unsubscribe = None

    # -- heartbeat ---------------------------------------------------------

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._heartbeat_timer = Timer(
            self.heartbeat_interval, self._send_heartbeat, repeat=True, name="heartbeat"
        )

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_timer:
            self._heartbeat_timer.cancel()
            self._heartbeat_timer = None

    async def _send_heartbeat(self) -> None:
        if self.is_connected and await self._send(ping_frame(self.clock())):
            self.last_heartbeat_at = self.clock()

    # -- helpers -----------------------------------------------------------

    async def _send(self, frame: str) -> bool:
        ws = self._ws
        if not _socket_open(ws):
            logger.warning("WebSocket not connected, cannot send message")
            return False
        try:
            await ws.send(frame)
            return True
        except Exception as e:
            logger.error(f"Failed to send WebSocket message: {e}")
            return False

    def _set_state(self, state: ConnectionState) -> None:
        if self._state == state:
            return
        logger.debug(f"Connection state: {self._state.value} -> {state.value}")
        self._state = state
        self._events.emit(EventKind.CONNECTION_STATE_CHANGE, state)

    def _report_error(self, error: Exception) -> None:
        self._events.emit(EventKind.ERROR, error)


def create_connection_manager(**overrides) -> ConnectionManager:
    """Build a ConnectionManager from configuration, with keyword overrides."""
    return ConnectionManager(**overrides)
