"""Per-user messaging session state.

Ties the connection manager to the notification scheduler and keeps what a
UI needs to render: messages per conversation, delivery status per message,
who is typing where, and unread counts. UI code registers with
``subscribe()`` and re-reads whatever changed.
"""

import logging
import time
from typing import Callable, Optional

from . import config
from .errors import ApiError
from .notifications.scheduler import NotificationScheduler
from .notifications.settings import NotificationSettings
from .realtime.client import ConnectionManager
from .realtime.types import (
    ConnectionState,
    DeliveryStatus,
    Message,
    MessagePinnedEvent,
    MessageStatusEvent,
    NewMessageEvent,
    ReactionEvent,
    TypingIndicatorEvent,
    User,
)
from .timers import Timer

logger = logging.getLogger("office_messaging")

# Change kinds passed to session listeners
MESSAGES = "messages"
STATUS = "status"
TYPING = "typing"
UNREAD = "unread"
CONNECTION = "connection"
ERROR = "error"

ChangeListener = Callable[[str, Optional[str]], None]


class MessagingSession:
    """Messaging state for one signed-in user."""

    def __init__(
        self,
        user: User,
        connection: ConnectionManager,
        scheduler: NotificationScheduler,
        api=None,
        typing_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.user = user
        self.connection = connection
        self.scheduler = scheduler
        self.api = api
        self.typing_timeout = typing_timeout if typing_timeout is not None else config.TYPING_TIMEOUT
        self.clock = clock
        self.last_error: Optional[Exception] = None

        self._messages: dict[str, list[Message]] = {}
        self._by_id: dict[str, Message] = {}
        self._delivery: dict[str, DeliveryStatus] = {}
        self._typing: dict[str, dict[str, str]] = {}
        self._typing_timers: dict[tuple[str, str], Timer] = {}
        self._unread: dict[str, int] = {}
        self._listeners: list[ChangeListener] = []
        self._started = False

    async def start(self) -> None:
        """Bind the user, register event handlers and connect."""
        self.connection.set_current_user(self.user)
        if not self._started:
            self.connection.on(
                on_message=self._on_message,
                on_message_status=self._on_message_status,
                on_typing_indicator=self._on_typing,
                on_reaction=self._on_reaction,
                on_message_pinned=self._on_pinned,
                on_connection_state_change=self._on_connection_state,
                on_error=self._on_error,
            )
            self._started = True
        await self.connection.connect()

    async def stop(self) -> None:
        await self.connection.disconnect()
        for timer in self._typing_timers.values():
            timer.cancel()
        self._typing_timers.clear()
        self._typing.clear()

    # -- accessors ---------------------------------------------------------

    @property
    def connection_state(self) -> ConnectionState:
        return self.connection.connection_state

    def messages(self, conversation_id: str) -> list[Message]:
        return list(self._messages.get(conversation_id, []))

    def delivery_status(self, message_id: str) -> Optional[DeliveryStatus]:
        return self._delivery.get(message_id)

    def typing_users(self, conversation_id: str) -> list[str]:
        """Display names of users typing in a conversation."""
        return list(self._typing.get(conversation_id, {}).values())

    def unread_count(self, conversation_id: Optional[str] = None) -> int:
        """Unread messages in one conversation, or across all of them."""
        if conversation_id is None:
            return sum(self._unread.values())
        return self._unread.get(conversation_id, 0)

    def mark_conversation_read(self, conversation_id: str) -> None:
        if self._unread.pop(conversation_id, 0):
            self._notify(UNREAD, conversation_id)

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Call ``listener(kind, conversation_id)`` on every state change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- outgoing ----------------------------------------------------------

    async def typing(self, conversation_id: str) -> None:
        await self.connection.send_typing_indicator(conversation_id)

    async def stop_typing(self, conversation_id: str) -> None:
        await self.connection.stop_typing_indicator(conversation_id)

    async def update_notification_settings(self, settings: NotificationSettings) -> bool:
        """Save settings locally, then to the server if an API client is set.

        Returns whether the local durable write succeeded. While offline the
        server write is queued by the API client; other server failures are
        logged and the local copy stays authoritative.
        """
        persisted = self.scheduler.update_settings(settings)
        if self.api is not None:
            try:
                if not await self.api.save_notification_settings(self.user.id, settings):
                    logger.info("Notification settings will be saved when the network returns")
            except ApiError as e:
                logger.warning(f"Could not save notification settings to server: {e}")
        return persisted

    # -- event handlers ----------------------------------------------------

    def _on_message(self, event: NewMessageEvent) -> None:
        message = event.message
        if message.id in self._by_id:
            logger.debug(f"Ignoring duplicate message {message.id}")
            return

        self._messages.setdefault(message.conversation_id, []).append(message)
        self._by_id[message.id] = message
        # A status frame can arrive before the message itself
        current = self._delivery.get(message.id)
        if current is None or current.can_become(message.status):
            self._delivery[message.id] = message.status
        else:
            message.status = current
        self._clear_typing(message.conversation_id, message.sender_id)
        self._notify(MESSAGES, message.conversation_id)

        if message.sender_id == self.user.id:
            return
        self._unread[message.conversation_id] = self._unread.get(message.conversation_id, 0) + 1
        self._notify(UNREAD, message.conversation_id)
        self.scheduler.notify_message(message)

    def _on_message_status(self, event: MessageStatusEvent) -> None:
        current = self._delivery.get(event.message_id)
        if current is not None and not current.can_become(event.status):
            logger.debug(
                f"Ignoring {event.status.value} for message {event.message_id}, "
                f"already {current.value}"
            )
            return

        self._delivery[event.message_id] = event.status
        message = self._by_id.get(event.message_id)
        conversation_id = message.conversation_id if message else None
        if message is not None:
            message.status = event.status
        self._notify(STATUS, conversation_id)

        if event.status is DeliveryStatus.FAILED:
            self.scheduler.notify_delivery_failed(event.message_id, conversation_id)

    def _on_typing(self, event: TypingIndicatorEvent) -> None:
        if event.user_id == self.user.id:
            return
        if event.is_typing:
            self._typing.setdefault(event.conversation_id, {})[event.user_id] = (
                event.user_name or event.user_id
            )
            self._restart_typing_timer(event.conversation_id, event.user_id)
            self._notify(TYPING, event.conversation_id)
        else:
            self._clear_typing(event.conversation_id, event.user_id)

    def _restart_typing_timer(self, conversation_id: str, user_id: str) -> None:
        key = (conversation_id, user_id)
        timer = self._typing_timers.pop(key, None)
        if timer:
            timer.cancel()
        self._typing_timers[key] = Timer(
            self.typing_timeout,
            lambda: self._clear_typing(conversation_id, user_id),
            name=f"typing-{conversation_id}-{user_id}",
        )

    def _clear_typing(self, conversation_id: str, user_id: str) -> None:
        timer = self._typing_timers.pop((conversation_id, user_id), None)
        if timer:
            timer.cancel()
        users = self._typing.get(conversation_id)
        if not users or user_id not in users:
            return
        del users[user_id]
        if not users:
            del self._typing[conversation_id]
        self._notify(TYPING, conversation_id)

    def _on_reaction(self, event: ReactionEvent) -> None:
        message = self._by_id.get(event.message_id)
        if message is None:
            return
        reaction = event.reaction
        # At most one reaction of a type per user
        message.reactions = [
            r for r in message.reactions
            if not (r.user_id == reaction.user_id and r.type == reaction.type)
        ]
        if event.action == "added":
            message.reactions.append(reaction)
        self._notify(MESSAGES, message.conversation_id)

    def _on_pinned(self, event: MessagePinnedEvent) -> None:
        message = self._by_id.get(event.message_id)
        if message is None:
            return
        message.is_pinned = event.is_pinned
        self._notify(MESSAGES, event.conversation_id)

    def _on_connection_state(self, state: ConnectionState) -> None:
        logger.info(f"Messaging connection {state.value}")
        self._notify(CONNECTION, None)

    def _on_error(self, error: Exception) -> None:
        logger.warning(f"Messaging connection error: {error}")
        self.last_error = error
        self._notify(ERROR, None)

    def _notify(self, kind: str, conversation_id: Optional[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind, conversation_id)
            except Exception:
                logger.exception("Error in session listener")
