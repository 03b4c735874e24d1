"""Configuration for office-messaging.

Values come from environment variables prefixed with ``OFFICE_MESSAGING_``.
An optional env file (``~/.office-messaging/office-messaging.env``) is loaded
first; variables already present in the environment take precedence.

Other modules read these constants at call time (``config.WS_URL``) so tests
can monkeypatch them.
"""

import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger("office_messaging")

ENV_PREFIX = "OFFICE_MESSAGING_"

_TRUE_VALUES = ("true", "1", "yes", "on")


def parse_env_file(text: str) -> dict[str, str]:
    """Parse KEY=VALUE lines.

    Blank lines and ``#`` comments are skipped. Values may be wrapped in
    single or double quotes, and a quoted value may span several lines.
    """
    values: dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i].strip()

        if not line or line.startswith("#") or "=" not in line:
            i += 1
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()

        if value and value[0] in ('"', "'"):
            quote_char = value[0]
            if len(value) > 1 and value[-1] == quote_char:
                value = value[1:-1]
            else:
                # Collect lines until the closing quote
                value_parts = [value[1:]]
                i += 1
                while i < len(lines):
                    next_line = lines[i].rstrip("\n")
                    if next_line.endswith(quote_char):
                        value_parts.append(next_line[:-1])
                        break
                    value_parts.append(next_line)
                    i += 1
                value = "\n".join(value_parts)

        values[key] = value
        i += 1
    return values


def load_env_file(path: Optional[Path] = None) -> dict[str, str]:
    """Load an env file into ``os.environ`` without overriding set variables.

    Returns the values that were read from the file.
    """
    env_path = path or Path(
        os.environ.get(
            f"{ENV_PREFIX}ENV_FILE",
            str(Path.home() / ".office-messaging" / "office-messaging.env"),
        )
    ).expanduser()
    if not env_path.exists():
        return {}

    try:
        values = parse_env_file(env_path.read_text())
    except OSError as e:
        logger.warning(f"Could not read config file {env_path}: {e}")
        return {}

    for key, value in values.items():
        os.environ.setdefault(key, value)
    return values


def _env(name: str, default: str) -> str:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(f"{ENV_PREFIX}{name}")
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE_VALUES


def env_float(name: str, default: float) -> float:
    raw = os.environ.get(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid value for {ENV_PREFIX}{name}: {raw!r}, using {default}")
        return default


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid value for {ENV_PREFIX}{name}: {raw!r}, using {default}")
        return default


load_env_file()

# Debug / logging
DEBUG = env_bool("DEBUG", False)
LOG_LEVEL = _env("LOG_LEVEL", "DEBUG" if DEBUG else "INFO").upper()

# Storage
DATA_DIR = Path(_env("DATA_DIR", str(Path.home() / ".office-messaging"))).expanduser()
STORE_DIR = DATA_DIR / "store"
LOGS_DIR = DATA_DIR / "logs"

# Real-time connection
WS_URL = _env("WS_URL", "ws://localhost:3000/ws")
RECONNECT_INTERVAL = env_float("RECONNECT_INTERVAL", 3.0)
MAX_RECONNECT_ATTEMPTS = env_int("MAX_RECONNECT_ATTEMPTS", 10)
MAX_RECONNECT_DELAY = env_float("MAX_RECONNECT_DELAY", 30.0)
HEARTBEAT_INTERVAL = env_float("HEARTBEAT_INTERVAL", 30.0)
TYPING_TIMEOUT = env_float("TYPING_TIMEOUT", 5.0)

# REST collaborator
API_BASE_URL = _env("API_BASE_URL", "http://localhost:3000").rstrip("/")
API_TIMEOUT = env_float("API_TIMEOUT", 10.0)

# Offline detection
REACHABILITY_URL = _env("REACHABILITY_URL", f"{API_BASE_URL}/api/health")
OFFLINE_POLL_INTERVAL = env_float("OFFLINE_POLL_INTERVAL", 5.0)
OFFLINE_STATE_KEY = "offline-detector-state"

# Offline write queue
SYNC_QUEUE_KEY = "sync-queue"
SYNC_MAX_RETRIES = env_int("SYNC_MAX_RETRIES", 3)
SYNC_INTERVAL = env_float("SYNC_INTERVAL", 30.0)

# Client cache
CACHE_PREFIX = _env("CACHE_PREFIX", "office-messaging-cache:")
CACHE_VERSION = _env("CACHE_VERSION", "1.0.0")
CACHE_MAX_SIZE = env_int("CACHE_MAX_SIZE", 5 * 1024 * 1024)
CACHE_DEFAULT_TTL = env_float("CACHE_DEFAULT_TTL", 24 * 60 * 60)
CACHE_MAINTENANCE_INTERVAL = env_float("CACHE_MAINTENANCE_INTERVAL", 5 * 60)

# Notifications
NOTIFICATION_SETTINGS_KEY = "notification-settings"
GROUPING_WINDOW = env_float("GROUPING_WINDOW", 30.0)


def configure_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> logging.Logger:
    """Configure the package logger.

    Args:
        level: Level name; defaults to LOG_LEVEL (DEBUG when debug is on).
        log_file: Optional file to also write logs to. Relative names are
            placed under LOGS_DIR.
    """
    pkg_logger = logging.getLogger("office_messaging")
    pkg_logger.setLevel((level or LOG_LEVEL).upper())

    if not pkg_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        pkg_logger.addHandler(handler)

    if log_file is not None:
        path = log_file if log_file.is_absolute() else LOGS_DIR / log_file
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        pkg_logger.addHandler(file_handler)

    return pkg_logger
