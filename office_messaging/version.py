"""Version information for office-messaging."""

__version__ = "0.1.0"
