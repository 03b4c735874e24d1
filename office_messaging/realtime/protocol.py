"""Wire format for the messaging WebSocket.

Every frame is a JSON object ``{"type": ..., "payload": {...}}``.

Server -> client: new_message, message_status, typing_indicator,
reaction_added, reaction_removed, message_pinned, message_unpinned.
Client -> server: typing_indicator, ping.
"""

import json
import time
from typing import Any, Callable, Optional

from ..errors import ProtocolError
from .types import (
    DeliveryStatus,
    EventKind,
    Message,
    MessagePinnedEvent,
    MessageStatusEvent,
    NewMessageEvent,
    Reaction,
    ReactionEvent,
    TypingIndicatorEvent,
    User,
    parse_timestamp,
)

# Frames the server may send that carry nothing for handlers
CONTROL_FRAME_TYPES = frozenset({"pong", "ack", "connected"})


def _new_message(payload: dict, received_at: float) -> NewMessageEvent:
    # Accept {message: {...}} as well as a bare message object
    data = payload.get("message", payload)
    return NewMessageEvent(message=Message.from_dict(data), received_at=received_at)


def _message_status(payload: dict, received_at: float) -> MessageStatusEvent:
    return MessageStatusEvent(
        message_id=str(payload["messageId"]),
        status=DeliveryStatus(payload["status"]),
        timestamp=parse_timestamp(payload.get("timestamp")),
        received_at=received_at,
    )


def _typing_indicator(payload: dict, received_at: float) -> TypingIndicatorEvent:
    return TypingIndicatorEvent(
        conversation_id=str(payload["conversationId"]),
        user_id=str(payload["userId"]),
        user_name=payload.get("userName", ""),
        is_typing=bool(payload.get("isTyping", False)),
        received_at=received_at,
    )


def _reaction(action: str) -> Callable[[dict, float], ReactionEvent]:
    def parse(payload: dict, received_at: float) -> ReactionEvent:
        return ReactionEvent(
            message_id=str(payload["messageId"]),
            reaction=Reaction.from_dict(payload["reaction"]),
            action=payload.get("action", action),
            received_at=received_at,
        )
    return parse


def _pinned(is_pinned: bool) -> Callable[[dict, float], MessagePinnedEvent]:
    def parse(payload: dict, received_at: float) -> MessagePinnedEvent:
        return MessagePinnedEvent(
            message_id=str(payload["messageId"]),
            conversation_id=str(payload["conversationId"]),
            is_pinned=bool(payload.get("isPinned", is_pinned)),
            received_at=received_at,
        )
    return parse


_PARSERS: dict[str, tuple[EventKind, Callable[[dict, float], Any]]] = {
    "new_message": (EventKind.MESSAGE, _new_message),
    "message_status": (EventKind.MESSAGE_STATUS, _message_status),
    "typing_indicator": (EventKind.TYPING_INDICATOR, _typing_indicator),
    "reaction_added": (EventKind.REACTION, _reaction("added")),
    "reaction_removed": (EventKind.REACTION, _reaction("removed")),
    "message_pinned": (EventKind.MESSAGE_PINNED, _pinned(True)),
    "message_unpinned": (EventKind.MESSAGE_PINNED, _pinned(False)),
}


def parse_frame(
    raw: str | bytes, received_at: Optional[float] = None
) -> tuple[str, Optional[EventKind], Any]:
    """Parse one frame into (frame type, event kind, event).

    Kind and event are None for control frames and for types this client
    does not know. Raises ProtocolError for malformed frames.
    """
    if received_at is None:
        received_at = time.time()

    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"frame is not UTF-8: {e}") from e

    try:
        frame = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"invalid JSON: {e}", frame=raw[:100]) from e

    if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
        raise ProtocolError("frame has no type", frame=raw[:100])

    frame_type = frame["type"]
    entry = _PARSERS.get(frame_type)
    if entry is None:
        return frame_type, None, None

    payload = frame.get("payload")
    if not isinstance(payload, dict):
        raise ProtocolError(f"{frame_type} frame has no payload object", frame=raw[:100])

    kind, parser = entry
    try:
        event = parser(payload, received_at)
    except (KeyError, ValueError, TypeError) as e:
        raise ProtocolError(f"malformed {frame_type} payload: {e}", frame=raw[:100]) from e
    return frame_type, kind, event


def encode_frame(frame_type: str, payload: dict) -> str:
    return json.dumps({"type": frame_type, "payload": payload})


def typing_frame(conversation_id: str, user: User, is_typing: bool) -> str:
    return encode_frame("typing_indicator", {
        "conversationId": conversation_id,
        "userId": user.id,
        "userName": user.name,
        "isTyping": is_typing,
    })


def ping_frame(now: Optional[float] = None) -> str:
    now = time.time() if now is None else now
    return encode_frame("ping", {"timestamp": int(now * 1000)})
