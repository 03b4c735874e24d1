"""Queue of API writes made while the server was unreachable.

Operations are persisted in the store so a restart keeps them, and replayed
highest priority first once the offline detector reports the network is
back (and every SYNC_INTERVAL seconds while anything is queued). A failed
replay counts against the operation's retry limit; an operation that runs
out of retries is dropped.
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from . import config
from .storage import KeyValueStore, get_store
from .timers import Timer

logger = logging.getLogger("office_messaging")


class SyncPriority(Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 3, "normal": 2, "low": 1}[self.value]


@dataclass
class SyncOperation:
    id: str
    method: str
    path: str
    body: Any = None
    params: Optional[dict] = None
    priority: SyncPriority = SyncPriority.NORMAL
    timestamp: float = 0
    retry_count: int = 0
    max_retries: int = 3

    def matches(self, method: str, path: str, params: Optional[dict]) -> bool:
        return self.method == method and self.path == path and (self.params or {}) == (params or {})

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "method": self.method,
            "path": self.path,
            "body": self.body,
            "params": self.params,
            "priority": self.priority.value,
            "timestamp": self.timestamp,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SyncOperation":
        return cls(
            id=str(data["id"]),
            method=str(data["method"]),
            path=str(data["path"]),
            body=data.get("body"),
            params=data.get("params"),
            priority=SyncPriority(data.get("priority", "normal")),
            timestamp=data.get("timestamp", 0),
            retry_count=int(data.get("retryCount", 0)),
            max_retries=int(data.get("maxRetries", config.SYNC_MAX_RETRIES)),
        )


@dataclass
class SyncStats:
    total_operations: int = 0           # queued during this run
    successful_operations: int = 0
    failed_operations: int = 0          # dropped after running out of retries
    last_sync_time: Optional[float] = None
    queue_size: int = 0


Sender = Callable[[SyncOperation], Awaitable[Any]]
Listener = Callable[[SyncStats], None]


class SyncQueue:
    """Persisted queue of operations replayed through ``send``.

    Args:
        send: Coroutine function that performs one operation and raises if
            it did not go through.
        store: Where the queue is persisted. Defaults to the shared store.
        offline_detector: When given, replays are skipped while offline and
            start as soon as the network comes back.
    """

    def __init__(
        self,
        send: Sender,
        store: Optional[KeyValueStore] = None,
        offline_detector=None,
        clock: Callable[[], float] = time.time,
        max_retries: Optional[int] = None,
        interval: Optional[float] = None,
        key: Optional[str] = None,
    ):
        self.send = send
        self.store = store if store is not None else get_store()
        self.offline_detector = offline_detector
        self.clock = clock
        self.max_retries = max_retries if max_retries is not None else config.SYNC_MAX_RETRIES
        self.interval = interval if interval is not None else config.SYNC_INTERVAL
        self.key = key or config.SYNC_QUEUE_KEY
        self._stats = SyncStats()
        self._listeners: list[Listener] = []
        self._processing = False
        self._process_task: Optional[asyncio.Task] = None
        self._timer: Optional[Timer] = None
        self._operations = self._load()
        self._unsubscribe = None
        if offline_detector is not None:
            self._unsubscribe = offline_detector.subscribe(self._on_connectivity)

    @property
    def operations(self) -> list[SyncOperation]:
        return list(self._operations)

    @property
    def stats(self) -> SyncStats:
        self._stats.queue_size = len(self._operations)
        return SyncStats(**vars(self._stats))

    def __len__(self) -> int:
        return len(self._operations)

    @property
    def is_online(self) -> bool:
        return self.offline_detector is None or self.offline_detector.is_online

    # -- queueing ----------------------------------------------------------

    def add(
        self,
        method: str,
        path: str,
        body: Any = None,
        params: Optional[dict] = None,
        priority: SyncPriority = SyncPriority.NORMAL,
        max_retries: Optional[int] = None,
        replace: bool = False,
    ) -> str:
        """Queue an operation and return its id.

        With ``replace`` set, queued operations for the same method, path
        and params are dropped first, so only the latest write is replayed.
        """
        if replace:
            self._operations = [op for op in self._operations if not op.matches(method, path, params)]

        operation = SyncOperation(
            id=f"sync-{uuid.uuid4().hex[:12]}",
            method=method.upper(),
            path=path,
            body=body,
            params=params,
            priority=priority,
            timestamp=self.clock(),
            max_retries=max_retries if max_retries is not None else self.max_retries,
        )
        index = next(
            (i for i, op in enumerate(self._operations) if op.priority.rank < priority.rank),
            len(self._operations),
        )
        self._operations.insert(index, operation)
        self._stats.total_operations += 1
        logger.info(f"Queued {operation.method} {path} for sync ({len(self._operations)} pending)")
        self._save()

        if self.is_online:
            self._schedule_processing()
        return operation.id

    def remove(self, operation_id: str) -> bool:
        before = len(self._operations)
        self._operations = [op for op in self._operations if op.id != operation_id]
        if len(self._operations) == before:
            return False
        self._save()
        return True

    def clear(self) -> None:
        self._operations = []
        self._save()

    # -- replay ------------------------------------------------------------

    async def process(self) -> int:
        """Replay queued operations in order. Returns how many went through.

        Stops early when the network is lost partway.
        """
        if self._processing or not self._operations or not self.is_online:
            return 0

        self._processing = True
        done = 0
        logger.info(f"Processing {len(self._operations)} queued operations")
        try:
            for operation in list(self._operations):
                try:
                    await self.send(operation)
                except Exception as e:
                    self._record_failure(operation, e)
                    if not self.is_online:
                        logger.info("Network lost, pausing sync")
                        break
                    continue

                self._drop(operation)
                self._stats.successful_operations += 1
                done += 1
                logger.debug(f"Synced {operation.method} {operation.path}")
            self._stats.last_sync_time = self.clock()
        finally:
            self._processing = False
        self._notify_listeners()
        return done

    def _record_failure(self, operation: SyncOperation, error: Exception) -> None:
        operation.retry_count += 1
        if operation.retry_count >= operation.max_retries:
            logger.error(
                f"Giving up on {operation.method} {operation.path} after "
                f"{operation.retry_count} attempts: {error}"
            )
            self._drop(operation)
            self._stats.failed_operations += 1
        else:
            logger.warning(
                f"Retry {operation.retry_count}/{operation.max_retries} for "
                f"{operation.method} {operation.path}: {error}"
            )
            self._save()

    def _drop(self, operation: SyncOperation) -> None:
        if operation in self._operations:
            self._operations.remove(operation)
            self._save()

    def _on_connectivity(self, state) -> None:
        if state.is_online and self._operations:
            logger.info("Connection restored, processing sync queue")
            self._schedule_processing()

    def _schedule_processing(self) -> None:
        if self._process_task is not None and not self._process_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, sync deferred")
            return
        self._process_task = loop.create_task(self.process())

    def start(self) -> None:
        """Retry queued operations every ``interval`` seconds."""
        if self._timer is not None and self._timer.active:
            return
        self._timer = Timer(self.interval, self.process, repeat=True, name="sync-queue")

    def stop(self) -> None:
        if self._timer:
            self._timer.cancel()
            self._timer = None

    def close(self) -> None:
        self.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # -- subscribers -------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener(stats)`` whenever the queue changes."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify_listeners(self) -> None:
        stats = self.stats
        for listener in list(self._listeners):
            try:
                listener(stats)
            except Exception:
                logger.exception("Error in sync queue listener")

    # -- persistence -------------------------------------------------------

    def _load(self) -> list[SyncOperation]:
        raw = self.store.get(self.key)
        if raw is None:
            return []
        try:
            return [SyncOperation.from_dict(item) for item in json.loads(raw)]
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.error(f"Failed to load sync queue: {e}")
            return []

    def _save(self) -> None:
        try:
            self.store.set(self.key, json.dumps([op.to_dict() for op in self._operations]))
        except OSError as e:
            logger.error(f"Failed to save sync queue: {e}")
        self._notify_listeners()
