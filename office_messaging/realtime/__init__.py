"""Real-time messaging: WebSocket connection, wire protocol, typed events."""

from .client import ConnectionManager, backoff_delay, create_connection_manager
from .events import EventBus
from .types import (
    ConnectionState,
    DeliveryStatus,
    EventKind,
    Message,
    MessagePinnedEvent,
    MessageStatusEvent,
    NewMessageEvent,
    Priority,
    Reaction,
    ReactionEvent,
    TypingIndicatorEvent,
    User,
    UserRole,
)

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "DeliveryStatus",
    "EventBus",
    "EventKind",
    "Message",
    "MessagePinnedEvent",
    "MessageStatusEvent",
    "NewMessageEvent",
    "Priority",
    "Reaction",
    "ReactionEvent",
    "TypingIndicatorEvent",
    "User",
    "UserRole",
    "backoff_delay",
    "create_connection_manager",
]
