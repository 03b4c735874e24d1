"""Notification scheduling, quiet hours and notification settings."""

from .quiet_hours import is_quiet_time, parse_time
from .scheduler import (
    SNOOZE_DURATIONS,
    Alert,
    Evaluation,
    Notification,
    NotificationScheduler,
    NotificationType,
    Outcome,
    render_alert,
)
from .settings import (
    ConversationOverride,
    NotificationSettings,
    NotificationSettingsStore,
    PreviewLevel,
    QuietHours,
    SoundMode,
)

__all__ = [
    "Alert",
    "ConversationOverride",
    "Evaluation",
    "Notification",
    "NotificationScheduler",
    "NotificationSettings",
    "NotificationSettingsStore",
    "NotificationType",
    "Outcome",
    "PreviewLevel",
    "QuietHours",
    "SNOOZE_DURATIONS",
    "SoundMode",
    "is_quiet_time",
    "parse_time",
    "render_alert",
]
