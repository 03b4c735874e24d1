"""Notification scheduler.

Decides, for each notification-worthy event, whether to create a new
notification, merge it into a recent one from the same sender, or suppress
it. Suppression rules run in order:

0. notifications disabled, or a notification with the same id already exists
1. conversation muted or snoozed (urgent passes when urgent_overrides_mute)
2. quiet hours (urgent passes)

then grouping. The scheduler also owns the active notification list and the
snooze timers that re-surface notifications later.
"""

import logging
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from .. import config
from ..errors import SettingsPersistenceError
from ..realtime.types import Message, Priority
from ..timers import Timer
from .quiet_hours import is_quiet_time
from .settings import NotificationSettings, NotificationSettingsStore, PreviewLevel, SoundMode

logger = logging.getLogger("office_messaging")

# Seconds
SNOOZE_DURATIONS = {
    "15min": 15 * 60,
    "1hour": 60 * 60,
    "4hours": 4 * 60 * 60,
    "tomorrow": 24 * 60 * 60,
}

GROUP_RETENTION = 60.0


class NotificationType(Enum):
    NEW_MESSAGE = "new_message"
    MESSAGE_READ = "message_read"
    BROADCAST_COMPLETE = "broadcast_complete"
    DELIVERY_FAILED = "delivery_failed"


class Outcome(Enum):
    CREATED = "created"
    GROUPED = "grouped"
    SUPPRESSED = "suppressed"


@dataclass
class Notification:
    id: str
    type: NotificationType
    message: str = ""
    priority: Priority = Priority.NORMAL
    timestamp: float = 0
    is_read: bool = False
    conversation_id: Optional[str] = None
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    group_count: int = 1


@dataclass
class Evaluation:
    outcome: Outcome
    notification: Optional[Notification] = None
    reason: Optional[str] = None    # why it was suppressed


@dataclass
class Alert:
    """What a desktop/browser notification would show."""
    title: str
    body: str
    tag: str
    sound: SoundMode
    require_interaction: bool = False
    conversation_id: Optional[str] = None
    notification_id: Optional[str] = None
    is_grouped: bool = False


def render_alert(
    notification: Notification,
    settings: NotificationSettings,
    unread_count: int,
    grouped: bool = False,
) -> Alert:
    """Render a notification according to the preview level."""
    if grouped:
        title = notification.sender_name or "New Messages"
        body = f"{notification.group_count} new messages"
    elif settings.preview is PreviewLevel.FULL:
        title = notification.sender_name or "New Message"
        body = notification.message
    elif settings.preview is PreviewLevel.SENDER_ONLY:
        title = notification.sender_name or "New Message"
        body = "You have a new message"
    else:
        title = "New Message"
        body = f"You have {unread_count} unread messages"

    # Only the first alert of a group plays a sound
    if settings.sound is SoundMode.SILENT or grouped:
        sound = SoundMode.SILENT
    else:
        sound = settings.sound

    return Alert(
        title=title,
        body=body,
        tag=f"grouped-{notification.sender_id}" if grouped else notification.id,
        sound=sound,
        require_interaction=notification.priority is Priority.URGENT,
        conversation_id=notification.conversation_id,
        notification_id=notification.id,
        is_grouped=grouped,
    )


@dataclass
class _Group:
    notification_id: str
    last_at: float


@dataclass
class _Snoozed:
    notification: Notification
    timer: Optional[Timer]
    until: float


AlertListener = Callable[[Alert], None]


class NotificationScheduler:
    """Creates, groups, suppresses and tracks notifications."""

    def __init__(
        self,
        settings_store: Optional[NotificationSettingsStore] = None,
        settings: Optional[NotificationSettings] = None,
        clock: Callable[[], float] = time.time,
        grouping_window: Optional[float] = None,
    ):
        self.settings_store = settings_store or NotificationSettingsStore()
        self.settings = settings if settings is not None else self.settings_store.load()
        self.clock = clock
        self.grouping_window = (
            grouping_window if grouping_window is not None else config.GROUPING_WINDOW
        )
        self._active: list[Notification] = []
        self._history: list[Notification] = []
        self._snoozed: dict[str, _Snoozed] = {}
        self._groups: dict[str, _Group] = {}
        self._alert_listeners: list[AlertListener] = []

    # -- views -------------------------------------------------------------

    @property
    def notifications(self) -> list[Notification]:
        """Active notifications, newest first."""
        return list(self._active)

    @property
    def history(self) -> list[Notification]:
        """Every notification ever created, newest first."""
        return list(self._history)

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self._active if not n.is_read)

    @property
    def snoozed(self) -> list[Notification]:
        return [entry.notification for entry in self._snoozed.values()]

    def get(self, notification_id: str) -> Optional[Notification]:
        for notification in self._active:
            if notification.id == notification_id:
                return notification
        entry = self._snoozed.get(notification_id)
        return entry.notification if entry else None

    def is_quiet_hours_active(self) -> bool:
        return is_quiet_time(self.settings.quiet_hours, datetime.fromtimestamp(self.clock()))

    def on_alert(self, listener: AlertListener) -> Callable[[], None]:
        """Register a listener for rendered alerts. Returns an unsubscribe function."""
        self._alert_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._alert_listeners:
                self._alert_listeners.remove(listener)

        return unsubscribe

    # -- evaluation --------------------------------------------------------

    def evaluate(
        self, candidate: Notification, settings: Optional[NotificationSettings] = None
    ) -> Evaluation:
        """Create, group or suppress a candidate notification."""
        settings = settings or self.settings
        now = self.clock()

        if candidate.id and self.get(candidate.id) is not None:
            logger.debug(f"Notification {candidate.id} already exists")
            return Evaluation(Outcome.SUPPRESSED, None, "duplicate")

        reason = self._suppression_reason(candidate, settings, now)
        if reason:
            logger.debug(f"Suppressed {candidate.type.value} notification: {reason}")
            return Evaluation(Outcome.SUPPRESSED, None, reason)

        grouping = (
            settings.grouping
            and candidate.type is NotificationType.NEW_MESSAGE
            and candidate.sender_id is not None
        )
        if grouping:
            merged = self._merge_into_group(candidate, now)
            if merged is not None:
                self._alert(merged, settings, grouped=True)
                return Evaluation(Outcome.GROUPED, merged)

        notification = replace(
            candidate,
            id=candidate.id or f"notif_{uuid.uuid4().hex[:12]}",
            timestamp=candidate.timestamp or now,
            is_read=False,
            group_count=1,
        )
        self._active.insert(0, notification)
        self._history.insert(0, notification)
        if grouping:
            self._groups[notification.sender_id] = _Group(notification.id, now)
        self._alert(notification, settings, grouped=False)
        return Evaluation(Outcome.CREATED, notification)

    def notify_message(self, message: Message) -> Evaluation:
        return self.evaluate(Notification(
            id="",
            type=NotificationType.NEW_MESSAGE,
            message=message.content,
            priority=message.priority,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            sender_name=message.sender_name or None,
        ))

    def notify_delivery_failed(
        self, message_id: str, conversation_id: Optional[str] = None, reason: Optional[str] = None
    ) -> Evaluation:
        text = "Message failed to deliver"
        if reason:
            text = f"{text}: {reason}"
        return self.evaluate(Notification(
            id=f"failed_{message_id}",
            type=NotificationType.DELIVERY_FAILED,
            message=text,
            priority=Priority.IMPORTANT,
            conversation_id=conversation_id,
        ))

    def _suppression_reason(
        self, notification: Notification, settings: NotificationSettings, now: float
    ) -> Optional[str]:
        if not settings.enabled:
            return "disabled"

        urgent = notification.priority is Priority.URGENT
        override = settings.override_for(notification.conversation_id)
        if override and (override.muted or override.is_snoozed(now)):
            if not (urgent and settings.urgent_overrides_mute):
                return "muted" if override.muted else "snoozed"

        if not urgent and is_quiet_time(settings.quiet_hours, datetime.fromtimestamp(now)):
            return "quiet_hours"
        return None

    def _merge_into_group(self, candidate: Notification, now: float) -> Optional[Notification]:
        self._purge_groups(now)
        group = self._groups.get(candidate.sender_id)
        if group is None or now - group.last_at >= self.grouping_window:
            return None

        existing = next((n for n in self._active if n.id == group.notification_id), None)
        if existing is None or existing.is_read:
            return None

        existing.group_count += 1
        sender = candidate.sender_name or existing.sender_name or candidate.sender_id
        existing.message = f"{existing.group_count} new messages from {sender}"
        if candidate.priority.level > existing.priority.level:
            existing.priority = candidate.priority
        existing.timestamp = now
        existing.conversation_id = candidate.conversation_id or existing.conversation_id
        group.last_at = now

        self._active.remove(existing)
        self._active.insert(0, existing)
        return existing

    def _purge_groups(self, now: float) -> None:
        stale = [s for s, g in self._groups.items() if now - g.last_at > GROUP_RETENTION]
        for sender_id in stale:
            del self._groups[sender_id]

    def _alert(self, notification: Notification, settings: NotificationSettings, grouped: bool) -> None:
        if not settings.browser_notifications or not self._alert_listeners:
            return
        alert = render_alert(notification, settings, self.unread_count, grouped)
        for listener in list(self._alert_listeners):
            try:
                listener(alert)
            except Exception:
                logger.exception("Error in notification alert listener")

    # -- lifecycle ---------------------------------------------------------

    def snooze(self, notification_id: str, duration: float) -> bool:
        """Hide a notification and bring it back after ``duration`` seconds.

        Must be called with an event loop running.
        """
        notification = self._take_active(notification_id)
        if notification is None:
            logger.warning(f"Cannot snooze unknown notification {notification_id}")
            return False
        self._cancel_snooze(notification_id)
        timer = Timer(duration, lambda: self.resurface(notification_id), name=f"snooze-{notification_id}")
        self._snoozed[notification_id] = _Snoozed(notification, timer, self.clock() + duration)
        logger.debug(f"Snoozed notification {notification_id} for {duration}s")
        return True

    def resurface(self, notification_id: str) -> Optional[Evaluation]:
        """Bring a snoozed notification back, unread, re-checking suppression
        against the current settings and time."""
        entry = self._snoozed.pop(notification_id, None)
        if entry is None:
            return None
        if entry.timer:
            entry.timer.cancel()

        notification = entry.notification
        notification.is_read = False
        reason = self._suppression_reason(notification, self.settings, self.clock())
        if reason:
            logger.info(f"Snoozed notification {notification_id} stays hidden: {reason}")
            return Evaluation(Outcome.SUPPRESSED, notification, reason)

        self._active.insert(0, notification)
        self._alert(notification, self.settings, grouped=False)
        return Evaluation(Outcome.CREATED, notification)

    def dismiss(self, notification_id: str) -> bool:
        removed = self._take_active(notification_id) is not None
        removed = self._cancel_snooze(notification_id) or removed
        for sender_id in [s for s, g in self._groups.items() if g.notification_id == notification_id]:
            del self._groups[sender_id]
        return removed

    def clear_all(self) -> None:
        for notification_id in list(self._snoozed):
            self._cancel_snooze(notification_id)
        self._active.clear()
        self._groups.clear()

    def mark_as_read(self, notification_id: str) -> bool:
        for notification in self._active:
            if notification.id == notification_id:
                notification.is_read = True
                return True
        entry = self._snoozed.get(notification_id)
        if entry is not None:
            entry.notification.is_read = True
            self._cancel_snooze(notification_id)
            return True
        return False

    def mark_all_as_read(self) -> int:
        count = 0
        for notification in self._active:
            if not notification.is_read:
                notification.is_read = True
                count += 1
        return count

    def _take_active(self, notification_id: str) -> Optional[Notification]:
        for index, notification in enumerate(self._active):
            if notification.id == notification_id:
                return self._active.pop(index)
        return None

    def _cancel_snooze(self, notification_id: str) -> bool:
        entry = self._snoozed.pop(notification_id, None)
        if entry is None:
            return False
        if entry.timer:
            entry.timer.cancel()
        return True

    # -- settings ----------------------------------------------------------

    def update_settings(self, settings: NotificationSettings) -> bool:
        """Persist settings, then apply them. Returns False if the durable
        write failed (the settings still apply for this process)."""
        persisted = True
        try:
            self.settings_store.save(settings)
        except SettingsPersistenceError as e:
            logger.error(f"{e}; applying settings in memory only")
            persisted = False
        self.settings = settings
        return persisted

    def mute_conversation(self, conversation_id: str) -> bool:
        return self.update_settings(self.settings.with_override(conversation_id, muted=True))

    def unmute_conversation(self, conversation_id: str) -> bool:
        return self.update_settings(
            self.settings.with_override(conversation_id, muted=False, snoozed_until=None)
        )

    def snooze_conversation(self, conversation_id: str, duration: float) -> bool:
        return self.update_settings(
            self.settings.with_override(conversation_id, snoozed_until=self.clock() + duration)
        )
