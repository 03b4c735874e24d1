"""Tests for the messaging WebSocket connection manager."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from websockets.exceptions import ConnectionClosedError
from websockets.frames import Close
from websockets.protocol import State

from office_messaging import config
from office_messaging.errors import (
    ConfigurationError,
    TerminalConnectionError,
    TransientConnectionError,
)
from office_messaging.offline import OfflineDetector
from office_messaging.realtime.client import (
    ConnectionManager,
    backoff_delay,
    build_url,
    create_connection_manager,
)
from office_messaging.realtime.types import (
    ConnectionState,
    EventKind,
    NewMessageEvent,
    ReactionEvent,
    User,
    UserRole,
)
from office_messaging.storage import MemoryStore


def frame(frame_type, payload):
    return json.dumps({"type": frame_type, "payload": payload})


def new_message_frame(message_id="m1", sender="Alice", conversation="C1"):
    return frame("new_message", {"message": {
        "id": message_id,
        "conversationId": conversation,
        "senderId": "s-" + sender.lower(),
        "senderName": sender,
        "content": f"Hello from {sender}",
        "timestamp": "2026-03-10T09:00:00Z",
    }})


class ManualTimer:
    """Timer replacement that never fires on its own."""

    def __init__(self, delay, callback, repeat=False, name=None):
        self.delay = delay
        self.callback = callback
        self.repeat = repeat
        self.name = name
        self.cancelled = False

    @property
    def active(self):
        return not self.cancelled

    def cancel(self):
        self.cancelled = True


@pytest.fixture
def manual_timers(monkeypatch):
    created = []

    def factory(*args, **kwargs):
        timer = ManualTimer(*args, **kwargs)
        created.append(timer)
        return timer

    monkeypatch.setattr("office_messaging.realtime.client.Timer", factory)
    return created


@pytest.fixture
def manager(connector, office_user):
    m = ConnectionManager(
        url="ws://test.local/ws",
        reconnect_interval=0.01,
        heartbeat_interval=60,
        connect_factory=connector,
    )
    m.set_current_user(office_user)
    yield m


def reconnect_timers(timers):
    return [t for t in timers if t.name == "reconnect"]


class TestBackoffDelay:
    def test_doubles_up_to_ceiling(self):
        delays = [backoff_delay(n, 3.0, 30.0) for n in range(1, 8)]
        assert delays == [3.0, 6.0, 12.0, 24.0, 30.0, 30.0, 30.0]

    def test_attempt_below_one_uses_base(self):
        assert backoff_delay(0, 3.0) == 3.0

    def test_custom_ceiling(self):
        assert backoff_delay(10, 1.0, ceiling=5.0) == 5.0


class TestBuildUrl:
    def test_adds_user_identity(self):
        user = User(id="u 1", name="Ann", role=UserRole.TEACHER)
        assert build_url("ws://h/ws", user) == "ws://h/ws?userId=u+1&userType=teacher"

    def test_appends_to_existing_query(self):
        user = User(id="u1", name="Ann", role=UserRole.STUDENT)
        assert build_url("ws://h/ws?v=2", user) == "ws://h/ws?v=2&userId=u1&userType=student"


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_without_user_raises(self, connector):
        m = ConnectionManager(url="ws://test.local/ws", connect_factory=connector)
        with pytest.raises(ConfigurationError):
            await m.connect()
        assert m.connection_state == ConnectionState.DISCONNECTED
        assert connector.urls == []

    @pytest.mark.asyncio
    async def test_connect_opens_socket(self, manager, connector, wait_until):
        await manager.connect()
        await wait_until(lambda: manager.is_connected)

        assert len(connector.sockets) == 1
        assert connector.urls[0] == "ws://test.local/ws?userId=office-1&userType=office"
        assert manager.get_connection_state() == ConnectionState.CONNECTED
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_connect_idempotent(self, manager, connector, wait_until):
        await manager.connect()
        await manager.connect()
        await wait_until(lambda: manager.is_connected)
        await manager.connect()
        await asyncio.sleep(0.01)

        assert len(connector.urls) == 1
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_state_changes_fire_once_per_transition(self, manager, wait_until):
        states = []
        manager.on(on_connection_state_change=states.append)

        await manager.connect()
        await wait_until(lambda: manager.is_connected)
        await manager.disconnect()
        await manager.disconnect()

        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ]

    @pytest.mark.asyncio
    async def test_is_connected_requires_open_socket(self, manager, connector, wait_until):
        await manager.connect()
        await wait_until(lambda: manager.is_connected)

        connector.latest.state = State.CLOSING
        assert manager.connection_state == ConnectionState.CONNECTED
        assert manager.is_connected is False
        await manager.disconnect()

    def test_create_connection_manager_reads_config(self, monkeypatch):
        monkeypatch.setattr(config, "WS_URL", "ws://configured/ws")
        monkeypatch.setattr(config, "MAX_RECONNECT_ATTEMPTS", 4)
        m = create_connection_manager(heartbeat_interval=5)
        assert m.url == "ws://configured/ws"
        assert m.max_reconnect_attempts == 4
        assert m.heartbeat_interval == 5


class TestDispatch:
    @pytest.mark.asyncio
    async def test_new_message_reaches_handler(self, manager, connector, wait_until):
        received = []
        manager.on(on_message=received.append)
        await manager.connect()
        await wait_until(lambda: manager.is_connected)

        connector.latest.push(new_message_frame())
        await wait_until(lambda: received)

        assert len(received) == 1
        event = received[0]
        assert isinstance(event, NewMessageEvent)
        assert event.message.sender_name == "Alice"
        assert event.message.conversation_id == "C1"
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_reaction_frames(self, manager, connector, wait_until):
        reactions = []
        manager.on(on_reaction=reactions.append)
        await manager.connect()
        await wait_until(lambda: manager.is_connected)

        payload = {"messageId": "m1", "reaction": {"type": "👍", "userId": "u2"}}
        connector.latest.push(frame("reaction_added", payload))
        connector.latest.push(frame("reaction_removed", payload))
        await wait_until(lambda: len(reactions) == 2)

        assert all(isinstance(r, ReactionEvent) for r in reactions)
        assert [r.action for r in reactions] == ["added", "removed"]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_unknown_and_malformed_frames_are_dropped(self, manager, connector, wait_until):
        received = []
        errors = []
        manager.on(on_message=received.append, on_error=errors.append)
        await manager.connect()
        await wait_until(lambda: manager.is_connected)

        ws = connector.latest
        ws.push(frame("brand_new_feature", {"x": 1}))
        ws.push("{not json")
        ws.push(frame("new_message", {"message": {"id": "broken"}}))
        ws.push(json.dumps({"type": "pong"}))
        ws.push(new_message_frame("m2"))
        await wait_until(lambda: received)

        assert [e.message.id for e in received] == ["m2"]
        assert errors == []
        assert manager.is_connected
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_stop_stream(self, manager, connector, wait_until):
        seen = []

        def broken(event):
            raise RuntimeError("handler bug")

        manager.on(on_message=broken)
        manager.subscribe(EventKind.MESSAGE, seen.append)
        await manager.connect()
        await wait_until(lambda: manager.is_connected)

        connector.latest.push(new_message_frame("m1"))
        connector.latest.push(new_message_frame("m2"))
        await wait_until(lambda: len(seen) == 2)

        assert manager.is_connected
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_on_merges_handlers(self, manager, connector, wait_until):
        first, second = [], []
        manager.on(on_message=first.append)
        manager.on(on_message=second.append)
        manager.on(on_error=lambda e: None)
        await manager.connect()
        await wait_until(lambda: manager.is_connected)

        connector.latest.push(new_message_frame())
        await wait_until(lambda: second)

        assert first == []
        assert len(second) == 1
        await manager.disconnect()

    def test_unknown_handler_key_rejected(self, manager):
        with pytest.raises(TypeError):
            manager.on(on_everything=print)

    @pytest.mark.asyncio
    async def test_unsubscribe(self, manager, connector, wait_until):
        seen = []
        unsubscribe = manager.subscribe(EventKind.MESSAGE, seen.append)
        marker = []
        manager.on(on_message=marker.append)
        unsubscribe()

        await manager.connect()
        await wait_until(lambda: manager.is_connected)
        connector.latest.push(new_message_frame())
        await wait_until(lambda: marker)

        assert seen == []
        await manager.disconnect()


class TestReconnect:
    @pytest.mark.asyncio
    async def test_unexpected_close_schedules_reconnect(
        self, manager, connector, manual_timers, wait_until
    ):
        manager.reconnect_interval = 3.0
        await manager.connect()
        await wait_until(lambda: manager.is_connected)

        connector.latest.drop(1006)
        await wait_until(lambda: manager.connection_state == ConnectionState.RECONNECTING)

        timers = reconnect_timers(manual_timers)
        assert len(timers) == 1
        assert timers[0].delay == 3.0
        assert manager.reconnect_attempts == 1
        heartbeat = [t for t in manual_timers if t.name == "heartbeat"][0]
        assert heartbeat.cancelled
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_reconnects_and_resets_attempts(self, manager, connector, wait_until):
        await manager.connect()
        await wait_until(lambda: manager.is_connected)

        connector.latest.drop(1006)
        await wait_until(lambda: len(connector.sockets) == 2 and manager.is_connected)

        assert manager.reconnect_attempts == 0
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_backoff_sequence(self, manager, connector, manual_timers, wait_until):
        manager.reconnect_interval = 3.0
        manager.max_reconnect_delay = 30.0
        connector.always_fail = True

        await manager.connect()
        delays = []
        for attempt in range(1, 7):
            await wait_until(lambda: len(reconnect_timers(manual_timers)) == attempt)
            timer = reconnect_timers(manual_timers)[-1]
            delays.append(timer.delay)
            await timer.callback()

        assert delays == [3.0, 6.0, 12.0, 24.0, 30.0, 30.0]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, connector, office_user, manual_timers, wait_until):
        errors = []
        m = ConnectionManager(
            url="ws://test.local/ws",
            max_reconnect_attempts=2,
            connect_factory=connector,
        )
        m.set_current_user(office_user)
        m.on(on_error=errors.append)
        connector.always_fail = True

        await m.connect()
        for attempt in (1, 2):
            await wait_until(lambda: len(reconnect_timers(manual_timers)) == attempt)
            await reconnect_timers(manual_timers)[-1].callback()
        await wait_until(lambda: any(isinstance(e, TerminalConnectionError) for e in errors))

        assert m.connection_state == ConnectionState.DISCONNECTED
        assert len(connector.urls) == 3
        assert len(reconnect_timers(manual_timers)) == 2
        terminal = [e for e in errors if isinstance(e, TerminalConnectionError)]
        assert terminal[0].attempts == 2
        assert sum(isinstance(e, TransientConnectionError) for e in errors) == 3

    @pytest.mark.asyncio
    async def test_no_reconnect_after_intentional_disconnect(self, manager, connector, wait_until):
        states = []
        await manager.connect()
        await wait_until(lambda: manager.is_connected)
        manager.on(on_connection_state_change=states.append)
        ws = connector.latest

        await manager.disconnect()
        # A close event arriving late must not revive the connection
        manager._handle_close(1006, "")
        await asyncio.sleep(0.05)

        assert ws.closed_by_client
        assert manager.connection_state == ConnectionState.DISCONNECTED
        assert manager._reconnect_timer is None
        assert len(connector.sockets) == 1
        assert states == [ConnectionState.DISCONNECTED]

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_reconnect(
        self, manager, connector, manual_timers, wait_until
    ):
        await manager.connect()
        await wait_until(lambda: manager.is_connected)
        connector.latest.drop(1006)
        await wait_until(lambda: manager.connection_state == ConnectionState.RECONNECTING)

        await manager.disconnect()

        assert reconnect_timers(manual_timers)[0].cancelled
        assert manager.connection_state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_reconnect_resets_attempt_counter(self, manager, connector, wait_until):
        await manager.connect()
        await wait_until(lambda: manager.is_connected)
        manager._reconnect_attempts = 5

        await manager.reconnect()
        await wait_until(lambda: len(connector.sockets) == 2 and manager.is_connected)

        assert manager.reconnect_attempts == 0
        assert connector.sockets[0].closed_by_client
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_socket_error_reported_then_reconnects(
        self, manager, connector, manual_timers, wait_until
    ):
        errors = []
        manager.on(on_error=errors.append)
        await manager.connect()
        await wait_until(lambda: manager.is_connected)

        connector.latest.fail(ConnectionResetError("reset by peer"))
        await wait_until(lambda: manager.connection_state == ConnectionState.RECONNECTING)

        assert len(errors) == 1
        assert isinstance(errors[0], TransientConnectionError)
        assert len(reconnect_timers(manual_timers)) == 1
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_connection_closed_exception_is_a_close(
        self, manager, connector, manual_timers, wait_until
    ):
        errors = []
        manager.on(on_error=errors.append)
        await manager.connect()
        await wait_until(lambda: manager.is_connected)

        connector.latest.fail(ConnectionClosedError(Close(1011, "internal error"), None))
        await wait_until(lambda: manager.connection_state == ConnectionState.RECONNECTING)

        assert errors == []
        await manager.disconnect()


class TestOfflineDeferral:
    @pytest.mark.asyncio
    async def test_waits_for_network_without_using_attempts(
        self, connector, office_user, wait_until
    ):
        detector = OfflineDetector(store=MemoryStore(), probe=AsyncMock(return_value=True))
        m = ConnectionManager(
            url="ws://test.local/ws",
            reconnect_interval=0.01,
            connect_factory=connector,
            offline_detector=detector,
        )
        m.set_current_user(office_user)
        await m.connect()
        await wait_until(lambda: m.is_connected)

        detector.set_offline()
        connector.latest.drop(1006)
        await wait_until(lambda: m.connection_state == ConnectionState.RECONNECTING)
        await asyncio.sleep(0.05)

        assert m.reconnect_attempts == 0
        assert m._reconnect_timer is None
        assert len(connector.sockets) == 1

        detector.set_online()
        await wait_until(lambda: len(connector.sockets) == 2 and m.is_connected)
        assert m.reconnect_attempts == 0
        await m.disconnect()


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_sends_ping_while_open(self, manager, connector, wait_until):
        manager.heartbeat_interval = 0.01
        await manager.connect()
        await wait_until(lambda: manager.is_connected)
        ws = connector.latest

        await wait_until(lambda: any(json.loads(f)["type"] == "ping" for f in ws.sent))

        ping = next(json.loads(f) for f in ws.sent if json.loads(f)["type"] == "ping")
        assert isinstance(ping["payload"]["timestamp"], int)
        await manager.disconnect()
        assert manager._heartbeat_timer is None

    @pytest.mark.asyncio
    async def test_heartbeat_stops_on_close(self, manager, connector, manual_timers, wait_until):
        await manager.connect()
        await wait_until(lambda: manager.is_connected)
        heartbeat = [t for t in manual_timers if t.name == "heartbeat"][0]
        assert heartbeat.delay == 60
        assert heartbeat.repeat

        connector.latest.drop(1001)
        await wait_until(lambda: manager.connection_state == ConnectionState.RECONNECTING)
        assert heartbeat.cancelled
        await manager.disconnect()


class TestTypingIndicator:
    @pytest.mark.asyncio
    async def test_sends_typing_frames(self, manager, connector, wait_until):
        await manager.connect()
        await wait_until(lambda: manager.is_connected)

        await manager.send_typing_indicator("C1")
        await manager.stop_typing_indicator("C1")

        frames = [json.loads(f) for f in connector.latest.sent]
        assert frames == [
            {"type": "typing_indicator", "payload": {
                "conversationId": "C1", "userId": "office-1",
                "userName": "Front Office", "isTyping": True,
            }},
            {"type": "typing_indicator", "payload": {
                "conversationId": "C1", "userId": "office-1",
                "userName": "Front Office", "isTyping": False,
            }},
        ]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_noop_when_not_connected(self, manager, connector):
        await manager.send_typing_indicator("C1")
        await manager.stop_typing_indicator("C1")
        assert connector.urls == []

    @pytest.mark.asyncio
    async def test_send_failure_is_swallowed(self, manager, connector, wait_until):
        await manager.connect()
        await wait_until(lambda: manager.is_connected)
        connector.latest.send = AsyncMock(side_effect=RuntimeError("broken pipe"))

        await manager.send_typing_indicator("C1")
        await manager.disconnect()


class TestStatusText:
    def test_disconnected(self, manager):
        text = manager.get_status_text()
        assert "State: disconnected" in text
        assert "Front Office (office)" in text
