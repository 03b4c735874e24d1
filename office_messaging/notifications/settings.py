"""Notification settings and their persistence.

Settings are stored as camelCase JSON (the same shape the server's
notification-settings endpoint accepts) under one key of a KeyValueStore.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from .. import config
from ..errors import SettingsPersistenceError
from ..storage import KeyValueStore, get_store

logger = logging.getLogger("office_messaging")


class SoundMode(Enum):
    DEFAULT = "default"
    SUBTLE = "subtle"
    SILENT = "silent"


class PreviewLevel(Enum):
    FULL = "full"
    SENDER_ONLY = "sender_only"
    COUNT_ONLY = "count_only"


@dataclass
class QuietHours:
    enabled: bool = False
    start: str = "22:00"
    end: str = "07:00"


@dataclass
class ConversationOverride:
    """Per-conversation mute/snooze. ``snoozed_until`` is epoch seconds."""
    muted: bool = False
    snoozed_until: Optional[float] = None

    def is_snoozed(self, now: float) -> bool:
        return self.snoozed_until is not None and self.snoozed_until > now


@dataclass
class NotificationSettings:
    enabled: bool = True
    browser_notifications: bool = True
    sound: SoundMode = SoundMode.DEFAULT
    preview: PreviewLevel = PreviewLevel.FULL
    quiet_hours: QuietHours = field(default_factory=QuietHours)
    grouping: bool = True
    urgent_overrides_mute: bool = True
    conversations: dict[str, ConversationOverride] = field(default_factory=dict)

    def override_for(self, conversation_id: Optional[str]) -> Optional[ConversationOverride]:
        if conversation_id is None:
            return None
        return self.conversations.get(conversation_id)

    def with_override(self, conversation_id: str, **changes) -> "NotificationSettings":
        """Copy of these settings with one conversation override changed."""
        conversations = dict(self.conversations)
        current = conversations.get(conversation_id, ConversationOverride())
        updated = replace(current, **changes)
        if not updated.muted and updated.snoozed_until is None:
            conversations.pop(conversation_id, None)
        else:
            conversations[conversation_id] = updated
        return replace(self, conversations=conversations)

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "browserNotifications": self.browser_notifications,
            "sound": self.sound.value,
            "preview": self.preview.value,
            "quietHours": {
                "enabled": self.quiet_hours.enabled,
                "start": self.quiet_hours.start,
                "end": self.quiet_hours.end,
            },
            "grouping": self.grouping,
            "urgentOverridesMute": self.urgent_overrides_mute,
            "conversations": {
                conversation_id: {
                    "muted": override.muted,
                    "snoozedUntil": override.snoozed_until,
                }
                for conversation_id, override in self.conversations.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationSettings":
        """Build settings from camelCase JSON; missing fields take defaults."""
        defaults = cls()
        quiet = data.get("quietHours") or {}
        return cls(
            enabled=bool(data.get("enabled", defaults.enabled)),
            browser_notifications=bool(
                data.get("browserNotifications", defaults.browser_notifications)
            ),
            sound=SoundMode(data.get("sound", defaults.sound.value)),
            preview=PreviewLevel(data.get("preview", defaults.preview.value)),
            quiet_hours=QuietHours(
                enabled=bool(quiet.get("enabled", False)),
                start=quiet.get("start", defaults.quiet_hours.start),
                end=quiet.get("end", defaults.quiet_hours.end),
            ),
            grouping=bool(data.get("grouping", defaults.grouping)),
            urgent_overrides_mute=bool(
                data.get("urgentOverridesMute", defaults.urgent_overrides_mute)
            ),
            conversations={
                str(conversation_id): ConversationOverride(
                    muted=bool(entry.get("muted", False)),
                    snoozed_until=entry.get("snoozedUntil"),
                )
                for conversation_id, entry in (data.get("conversations") or {}).items()
            },
        )


class NotificationSettingsStore:
    """Load and save NotificationSettings in a KeyValueStore."""

    def __init__(self, store: Optional[KeyValueStore] = None, key: Optional[str] = None):
        self.store = store if store is not None else get_store()
        self.key = key or config.NOTIFICATION_SETTINGS_KEY

    def load(self) -> NotificationSettings:
        """Stored settings, or defaults when missing or unreadable."""
        raw = self.store.get(self.key)
        if raw is None:
            return NotificationSettings()
        try:
            return NotificationSettings.from_dict(json.loads(raw))
        except (ValueError, AttributeError, TypeError) as e:
            logger.warning(f"Ignoring unreadable notification settings: {e}")
            return NotificationSettings()

    def save(self, settings: NotificationSettings) -> None:
        """Write settings durably. Raises SettingsPersistenceError on failure."""
        try:
            self.store.set(self.key, json.dumps(settings.to_dict()))
        except OSError as e:
            raise SettingsPersistenceError(f"Failed to save notification settings: {e}") from e
