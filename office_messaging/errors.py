"""Exception types for office-messaging."""

from typing import Optional


class MessagingError(Exception):
    """Base class for office-messaging errors."""
    pass


class ConfigurationError(MessagingError):
    """Raised when the caller has not set something up, e.g. no user bound
    before connect(). Not retried automatically."""
    pass


class TransientConnectionError(MessagingError):
    """Socket-level error or unexpected close. Recovered by reconnecting."""
    pass


class TerminalConnectionError(MessagingError):
    """Reconnect attempts exhausted. Needs an explicit reconnect()."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class ProtocolError(MessagingError):
    """Malformed frame or payload from the server."""

    def __init__(self, message: str, frame: Optional[str] = None):
        super().__init__(message)
        self.frame = frame


class SettingsPersistenceError(MessagingError):
    """Notification settings could not be written to durable storage."""
    pass


class ApiError(MessagingError):
    """The REST collaborator returned an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.args[0]} (HTTP {self.status_code})"
        return self.args[0]
