"""Client-side cache over the persistent key/value store.

Entries are JSON envelopes ``{data, timestamp, expiresAt, version}`` stored
under ``<prefix><key>``. Every read validates expiry and schema version: an
expired, mismatched or unparsable entry is purged and reported as a miss.
The total size of the prefix is bounded; writes evict the oldest entries
first when they would exceed it.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from . import config
from .storage import KeyValueStore, get_store
from .timers import Timer

logger = logging.getLogger("office_messaging")


class CacheTTL:
    """TTLs in seconds for dashboard data."""
    STUDENT_METRICS = 5 * 60
    WEEKLY_ATTENDANCE = 2 * 60
    ATTENDANCE_HISTORY = 10 * 60
    CLASS_INFO = 30 * 60
    ACADEMIC_STATUS = 5 * 60
    NOTIFICATIONS = 60
    CLASSES = 10 * 60
    ATTENDANCE = 2 * 60
    PROFILE = 30 * 60
    STALENESS_THRESHOLD = 24 * 60 * 60


class CacheKeys:
    """Key builders for dashboard data."""

    @staticmethod
    def student_metrics(student_id: str) -> str:
        return f"metrics:{student_id}"

    @staticmethod
    def weekly_attendance(student_id: str, week_offset: int = 0) -> str:
        return f"attendance:{student_id}:week:{week_offset}"

    @staticmethod
    def attendance_history(student_id: str, filters: Optional[str] = None) -> str:
        return f"attendance-history:{student_id}" + (f":{filters}" if filters else "")

    @staticmethod
    def class_info(student_id: str) -> str:
        return f"class-info:{student_id}"

    @staticmethod
    def academic_status(student_id: str) -> str:
        return f"academic-status:{student_id}"

    @staticmethod
    def notifications(user_id: str) -> str:
        return f"notifications:{user_id}"

    @staticmethod
    def classes() -> str:
        return "classes"

    @staticmethod
    def class_attendance(class_id: str, date: str) -> str:
        return f"class-attendance:{class_id}:{date}"

    @staticmethod
    def student(student_id: str) -> str:
        return f"student:{student_id}"

    @staticmethod
    def teacher(teacher_id: str) -> str:
        return f"teacher:{teacher_id}"


@dataclass
class CacheHit:
    """A valid cache entry and its metadata."""
    data: Any
    timestamp: float
    expires_at: Optional[float] = None
    version: Optional[str] = None


@dataclass
class CacheStats:
    total_entries: int = 0
    total_size: int = 0                     # bytes, approximate
    oldest_entry: Optional[float] = None    # timestamp of the oldest entry
    newest_entry: Optional[float] = None


def _size(value: str) -> int:
    return len(value.encode("utf-8"))


class ClientCacheManager:
    """Bounded, versioned, TTL-aware cache.

    Args:
        store: Backing store. Defaults to the shared store.
        prefix: Namespace for this manager's keys.
        default_ttl: TTL in seconds when set() gets none; <= 0 never expires.
        version: Current schema version. Entries tagged otherwise are stale.
        max_size: Ceiling in bytes for all entries under the prefix.
        max_entry_size: Ceiling in bytes for a single entry.
        clock: Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        prefix: Optional[str] = None,
        default_ttl: Optional[float] = None,
        version: Optional[str] = None,
        max_size: Optional[int] = None,
        max_entry_size: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store if store is not None else get_store()
        self.prefix = prefix if prefix is not None else config.CACHE_PREFIX
        self.default_ttl = default_ttl if default_ttl is not None else config.CACHE_DEFAULT_TTL
        self.version = version or config.CACHE_VERSION
        self.max_size = max_size if max_size is not None else config.CACHE_MAX_SIZE
        self.max_entry_size = max_entry_size if max_entry_size is not None else self.max_size
        self.clock = clock

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _own_keys(self) -> list[str]:
        return [k for k in self.store.keys() if k.startswith(self.prefix)]

    @staticmethod
    def _parse(raw: str) -> dict:
        entry = json.loads(raw)
        if not isinstance(entry, dict) or "data" not in entry or "timestamp" not in entry:
            raise ValueError("not a cache entry")
        return entry

    def _read_valid(self, key: str) -> Optional[dict]:
        """Return the raw entry if present and valid, purging it otherwise."""
        full_key = self._key(key)
        raw = self.store.get(full_key)
        if raw is None:
            return None

        try:
            entry = self._parse(raw)
        except (ValueError, TypeError) as e:
            logger.warning(f"Removing corrupted cache entry {key}: {e}")
            self.store.remove(full_key)
            return None

        expires_at = entry.get("expiresAt")
        if expires_at is not None and self.clock() > expires_at:
            logger.debug(f"Cache entry expired: {key}")
            self.store.remove(full_key)
            return None

        if entry.get("version") != self.version:
            logger.debug(
                f"Cache entry {key} has version {entry.get('version')!r}, "
                f"expected {self.version!r}"
            )
            self.store.remove(full_key)
            return None

        return entry

    def set(
        self,
        key: str,
        data: Any,
        ttl: Optional[float] = None,
        version: Optional[str] = None,
    ) -> bool:
        """Store ``data`` under ``key``. Returns False if it was not stored."""
        now = self.clock()
        ttl = self.default_ttl if ttl is None else ttl
        entry = {
            "data": data,
            "timestamp": now,
            "expiresAt": now + ttl if ttl > 0 else None,
            "version": version or self.version,
        }

        try:
            serialized = json.dumps(entry)
        except (TypeError, ValueError) as e:
            logger.error(f"Cannot serialize cache entry {key}: {e}")
            return False

        size = _size(serialized)
        if size > self.max_entry_size:
            logger.warning(f"Cache entry too large: {key} is {size} bytes")
            return False

        full_key = self._key(key)
        self.cleanup_expired()

        total = self.get_stats().total_size
        previous = self.store.get(full_key)
        if previous is not None:
            total -= _size(previous)
        if total + size > self.max_size:
            self.evict_oldest(total + size - self.max_size, exclude=full_key)

        try:
            self.store.set(full_key, serialized)
        except OSError as e:
            logger.error(f"Failed to write cache entry {key}: {e}")
            return False
        return True

    def get(self, key: str) -> Any:
        """Return cached data, or None when absent, expired or stale-versioned."""
        entry = self._read_valid(key)
        return entry["data"] if entry is not None else None

    def get_with_metadata(self, key: str) -> Optional[CacheHit]:
        entry = self._read_valid(key)
        if entry is None:
            return None
        return CacheHit(
            data=entry["data"],
            timestamp=entry["timestamp"],
            expires_at=entry.get("expiresAt"),
            version=entry.get("version"),
        )

    def has(self, key: str) -> bool:
        return self._read_valid(key) is not None

    def get_age(self, key: str) -> Optional[float]:
        """Seconds since the entry was written, or None if absent."""
        hit = self.get_with_metadata(key)
        if hit is None:
            return None
        return self.clock() - hit.timestamp

    def is_stale(self, key: str, threshold: Optional[float] = None) -> bool:
        """True if the entry is absent or older than ``threshold`` seconds.

        Separate from TTL expiry, so callers can refresh softly while still
        showing the cached value.
        """
        threshold = self.default_ttl if threshold is None else threshold
        age = self.get_age(key)
        if age is None:
            return True
        return age > threshold

    def remove(self, key: str) -> bool:
        try:
            return self.store.remove(self._key(key))
        except OSError as e:
            logger.error(f"Failed to remove cache entry {key}: {e}")
            return False

    def clear(self) -> int:
        """Remove every entry under this prefix. Returns the number removed."""
        removed = 0
        for full_key in self._own_keys():
            try:
                if self.store.remove(full_key):
                    removed += 1
            except OSError as e:
                logger.error(f"Failed to remove cache entry {full_key}: {e}")
        return removed

    def keys(self) -> list[str]:
        return [k[len(self.prefix):] for k in self._own_keys()]

    def cleanup_expired(self) -> int:
        """Purge expired and corrupted entries. Returns the number removed."""
        removed = 0
        now = self.clock()
        for full_key in self._own_keys():
            raw = self.store.get(full_key)
            if raw is None:
                continue
            try:
                entry = self._parse(raw)
            except (ValueError, TypeError):
                self.store.remove(full_key)
                removed += 1
                continue
            expires_at = entry.get("expiresAt")
            if expires_at is not None and now > expires_at:
                self.store.remove(full_key)
                removed += 1
        if removed:
            logger.debug(f"Cache cleanup removed {removed} entries")
        return removed

    def evict_oldest(self, required_bytes: int, exclude: Optional[str] = None) -> int:
        """Remove entries oldest-first until ``required_bytes`` are freed.

        Returns the number of entries removed.
        """
        entries = []
        evicted = 0
        for full_key in self._own_keys():
            if full_key == exclude:
                continue
            raw = self.store.get(full_key)
            if raw is None:
                continue
            try:
                entry = self._parse(raw)
            except (ValueError, TypeError):
                self.store.remove(full_key)
                evicted += 1
                continue
            entries.append((entry["timestamp"], full_key, _size(raw)))

        entries.sort()
        freed = 0
        for _, full_key, size in entries:
            if freed >= required_bytes:
                break
            self.store.remove(full_key)
            freed += size
            evicted += 1

        if evicted:
            logger.info(f"Cache evicted {evicted} entries ({freed} bytes)")
        return evicted

    def get_stats(self) -> CacheStats:
        stats = CacheStats()
        for full_key in self._own_keys():
            raw = self.store.get(full_key)
            if raw is None:
                continue
            try:
                entry = self._parse(raw)
            except (ValueError, TypeError):
                continue
            stats.total_entries += 1
            stats.total_size += _size(raw)
            ts = entry["timestamp"]
            if stats.oldest_entry is None or ts < stats.oldest_entry:
                stats.oldest_entry = ts
            if stats.newest_entry is None or ts > stats.newest_entry:
                stats.newest_entry = ts
        return stats

    def run_maintenance(self) -> tuple[int, int]:
        """Purge expired entries and trim the cache when it is above 80% of
        its ceiling. Returns (expired, evicted)."""
        expired = self.cleanup_expired()
        evicted = 0
        if self.get_stats().total_size > self.max_size * 0.8:
            evicted = self.evict_oldest(int(self.max_size * 0.2))
        return expired, evicted


class CacheJanitor:
    """Runs ClientCacheManager.run_maintenance() on a repeating timer."""

    def __init__(self, cache: ClientCacheManager, interval: Optional[float] = None):
        self.cache = cache
        self.interval = interval if interval is not None else config.CACHE_MAINTENANCE_INTERVAL
        self._timer: Optional[Timer] = None

    @property
    def running(self) -> bool:
        return self._timer is not None and self._timer.active

    def start(self) -> None:
        if self.running:
            return
        self._run()
        self._timer = Timer(self.interval, self._run, repeat=True, name="cache-maintenance")

    def stop(self) -> None:
        if self._timer:
            self._timer.cancel()
            self._timer = None

    def _run(self) -> None:
        try:
            self.cache.run_maintenance()
        except OSError as e:
            logger.error(f"Cache maintenance failed: {e}")


class CachedQuery:
    """Load-through cache for one key.

    ``fetch()`` returns cached data while it is fresh, otherwise calls the
    loader and caches the result. If the loader fails and a cached value
    exists it is returned and the failure kept in ``error``. While the
    offline detector reports offline, cached data is served without loading.
    When connectivity comes back and the entry is stale it is refetched.
    """

    def __init__(
        self,
        cache: ClientCacheManager,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
        stale_threshold: float = CacheTTL.STALENESS_THRESHOLD,
        offline_detector=None,
        refetch_on_reconnect: bool = True,
    ):
        self.cache = cache
        self.key = key
        self.loader = loader
        self.ttl = ttl
        self.stale_threshold = stale_threshold
        self.offline_detector = offline_detector
        self.error: Optional[Exception] = None
        self._inflight: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._unsubscribe = None
        if offline_detector is not None and refetch_on_reconnect:
            self._unsubscribe = offline_detector.subscribe(self._on_connectivity)

    @property
    def data(self) -> Any:
        return self.cache.get(self.key)

    @property
    def is_stale(self) -> bool:
        return self.cache.is_stale(self.key, self.stale_threshold)

    @property
    def is_fetching(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def fetch(self, force: bool = False) -> Any:
        hit = self.cache.get_with_metadata(self.key)
        if hit is not None:
            fresh = (self.cache.clock() - hit.timestamp) <= self.stale_threshold
            if fresh and not force:
                return hit.data
            if self.offline_detector is not None and not self.offline_detector.is_online:
                logger.debug(f"Offline, serving cached {self.key}")
                return hit.data

        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self.loader())
        try:
            result = await self._inflight
        except Exception as e:
            self.error = e
            logger.warning(f"Failed to load {self.key}: {e}")
            if hit is not None:
                return hit.data
            raise

        self.error = None
        self.cache.set(self.key, result, ttl=self.ttl)
        return result

    def _on_connectivity(self, state) -> None:
        if not (state.is_online and state.was_offline and self.is_stale):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, skipping refetch of {self.key}")
            return
        self._refresh_task = loop.create_task(self._refresh())

    async def _refresh(self) -> None:
        try:
            await self.fetch(force=True)
        except Exception as e:
            logger.debug(f"Background refresh of {self.key} failed: {e}")

    def close(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._refresh_task and not self._refresh_task.done():
            self._refresh_task.cancel()
