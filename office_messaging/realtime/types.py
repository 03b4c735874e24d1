"""Shared types for the real-time messaging layer."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class ConnectionState(Enum):
    """WebSocket connection state."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class UserRole(Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    OFFICE = "office"


class DeliveryStatus(Enum):
    """Lifecycle of a message: sending -> sent -> delivered -> read, or failed."""
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_final(self) -> bool:
        return self in (DeliveryStatus.READ, DeliveryStatus.FAILED)

    def can_become(self, status: "DeliveryStatus") -> bool:
        """Statuses only move forward, and read and failed are final."""
        return not self.is_final and status.rank > self.rank


_STATUS_RANK = {
    DeliveryStatus.SENDING: 0,
    DeliveryStatus.SENT: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.READ: 3,
    DeliveryStatus.FAILED: 3,
}


class Priority(Enum):
    NORMAL = "normal"
    IMPORTANT = "important"
    URGENT = "urgent"

    @property
    def level(self) -> int:
        return _PRIORITY_LEVEL[self]


_PRIORITY_LEVEL = {Priority.NORMAL: 0, Priority.IMPORTANT: 1, Priority.URGENT: 2}


class EventKind(Enum):
    """Kinds of events the connection manager dispatches."""
    MESSAGE = "message"
    MESSAGE_STATUS = "message_status"
    TYPING_INDICATOR = "typing_indicator"
    REACTION = "reaction"
    MESSAGE_PINNED = "message_pinned"
    CONNECTION_STATE_CHANGE = "connection_state_change"
    ERROR = "error"


def parse_timestamp(value: Any) -> Optional[float]:
    """Convert an ISO 8601 string or epoch milliseconds to epoch seconds."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # JS timestamps are ms
        return value / 1000 if value > 1e11 else float(value)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return None
    return None


@dataclass
class User:
    """The authenticated user a connection belongs to."""
    id: str
    name: str
    role: UserRole = UserRole.OFFICE

    @classmethod
    def from_dict(cls, data: dict) -> "User":
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            role=UserRole(data.get("role", "office")),
        )


@dataclass
class Reaction:
    type: str
    user_id: str
    user_name: str = ""
    timestamp: Optional[float] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Reaction":
        return cls(
            type=data["type"],
            user_id=str(data["userId"]),
            user_name=data.get("userName", ""),
            timestamp=parse_timestamp(data.get("timestamp")),
        )


@dataclass
class Message:
    """A chat message as pushed by the server."""
    id: str
    conversation_id: str
    sender_id: str
    sender_name: str = ""
    sender_role: Optional[str] = None
    content: str = ""
    category: str = "general"
    priority: Priority = Priority.NORMAL
    status: DeliveryStatus = DeliveryStatus.SENT
    attachments: list = field(default_factory=list)
    reactions: list[Reaction] = field(default_factory=list)
    is_pinned: bool = False
    reply_to: Optional[str] = None
    timestamp: Optional[float] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        """Create from a camelCase message object from the server."""
        return cls(
            id=str(data["id"]),
            conversation_id=str(data["conversationId"]),
            sender_id=str(data["senderId"]),
            sender_name=data.get("senderName", ""),
            sender_role=data.get("senderRole"),
            content=data.get("content", ""),
            category=data.get("category", "general"),
            priority=Priority(data.get("priority", "normal")),
            status=DeliveryStatus(data.get("status", "sent")),
            attachments=list(data.get("attachments") or []),
            reactions=[Reaction.from_dict(r) for r in data.get("reactions") or []],
            is_pinned=bool(data.get("isPinned", False)),
            reply_to=data.get("replyTo"),
            timestamp=parse_timestamp(data.get("timestamp")),
        )


@dataclass
class NewMessageEvent:
    message: Message
    received_at: float = 0


@dataclass
class MessageStatusEvent:
    message_id: str
    status: DeliveryStatus
    timestamp: Optional[float] = None
    received_at: float = 0


@dataclass
class TypingIndicatorEvent:
    conversation_id: str
    user_id: str
    user_name: str
    is_typing: bool
    received_at: float = 0


@dataclass
class ReactionEvent:
    message_id: str
    reaction: Reaction
    action: str            # "added" or "removed"
    received_at: float = 0


@dataclass
class MessagePinnedEvent:
    message_id: str
    conversation_id: str
    is_pinned: bool
    received_at: float = 0
