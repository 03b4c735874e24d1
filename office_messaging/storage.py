"""
Persistent key/value storage for office-messaging.

Plays the role browser local storage plays for a web client: string values
under string keys, shared by the cache, the offline detector and the
notification settings. Provides FileStore (one file per key under the data
directory) and MemoryStore (process-local, used in tests and for
``OFFICE_MESSAGING_STORE=memory``).

Default: file
Opt-in: OFFICE_MESSAGING_STORE=memory
"""

import logging
import os
import tempfile
import urllib.parse
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from . import config

logger = logging.getLogger("office_messaging")


class KeyValueStore(ABC):
    """Abstract base class for string key/value storage."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if the key is absent."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a value. Raises OSError if the write fails."""

    @abstractmethod
    def remove(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""

    @abstractmethod
    def keys(self) -> list[str]:
        """All keys currently stored."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name of the store backend."""


class MemoryStore(KeyValueStore):
    """Keep values in a dict for the life of the process."""

    def __init__(self, initial: Optional[dict[str, str]] = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self) -> list[str]:
        return list(self._data)

    @property
    def name(self) -> str:
        return "memory"


class FileStore(KeyValueStore):
    """Store each key as a file under a directory.

    Keys are percent-encoded into file names. Writes go to a temporary file
    that is then renamed over the target, so readers never see a partial
    value. Concurrent writers are not coordinated; the last write wins.
    """

    def __init__(self, directory: Optional[Path] = None):
        self.directory = Path(directory) if directory else config.STORE_DIR

    def _path(self, key: str) -> Path:
        return self.directory / urllib.parse.quote(key, safe="")

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read stored value for {key}: {e}")
            return None

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp_name, self._path(key))
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def remove(self, key: str) -> bool:
        try:
            self._path(key).unlink()
            return True
        except FileNotFoundError:
            return False

    def keys(self) -> list[str]:
        if not self.directory.exists():
            return []
        return [
            urllib.parse.unquote(p.name)
            for p in sorted(self.directory.iterdir())
            if p.is_file() and not p.name.startswith(".tmp-")
        ]

    @property
    def name(self) -> str:
        return "file"


_default_store: Optional[KeyValueStore] = None


def get_store() -> KeyValueStore:
    """Get the shared store selected by OFFICE_MESSAGING_STORE."""
    global _default_store
    if _default_store is not None:
        return _default_store

    store_type = os.getenv(f"{config.ENV_PREFIX}STORE", "file").lower()
    if store_type == "memory":
        _default_store = MemoryStore()
    else:
        if store_type != "file":
            logger.warning(f"Unknown store type {store_type!r}, using file storage")
        _default_store = FileStore()
    return _default_store
