"""
office-messaging - Real-time messaging core for the office dashboard

This package provides the client side of the school office messaging system:
- WebSocket connection with heartbeat and exponential-backoff reconnect
- Notification scheduling with quiet hours, muting, grouping and snooze
- A bounded, versioned client cache and offline detection
- A persisted queue that replays API writes made while offline
"""

from .version import __version__

from .cache import CachedQuery, CacheJanitor, CacheKeys, CacheTTL, ClientCacheManager
from .errors import (
    ApiError,
    ConfigurationError,
    MessagingError,
    ProtocolError,
    SettingsPersistenceError,
    TerminalConnectionError,
    TransientConnectionError,
)
from .notifications import NotificationScheduler, NotificationSettings
from .offline import OfflineDetector, OfflineState
from .realtime import ConnectionManager, ConnectionState, User, UserRole, create_connection_manager
from .session import MessagingSession
from .storage import FileStore, KeyValueStore, MemoryStore, get_store
from .sync import SyncOperation, SyncPriority, SyncQueue

__all__ = [
    "__version__",
    "ApiError",
    "CacheJanitor",
    "CacheKeys",
    "CacheTTL",
    "CachedQuery",
    "ClientCacheManager",
    "ConfigurationError",
    "ConnectionManager",
    "ConnectionState",
    "FileStore",
    "KeyValueStore",
    "MemoryStore",
    "MessagingError",
    "MessagingSession",
    "NotificationScheduler",
    "NotificationSettings",
    "OfflineDetector",
    "OfflineState",
    "ProtocolError",
    "SettingsPersistenceError",
    "TerminalConnectionError",
    "SyncOperation",
    "SyncPriority",
    "SyncQueue",
    "TransientConnectionError",
    "User",
    "UserRole",
    "create_connection_manager",
    "get_store",
]
