"""HTTP client for the dashboard REST API.

Read calls go through the client cache so the dashboard keeps working on
flaky connections. Entries are kept for a day but refetched once older than
their per-endpoint TTL; a failed refetch falls back to the cached value.
Writes that cannot reach the server are queued and replayed when the
network returns.
"""

import logging
from typing import Any, Optional

import httpx

from . import config
from .cache import CachedQuery, CacheKeys, CacheTTL, ClientCacheManager
from .errors import ApiError
from .notifications.settings import NotificationSettings
from .sync import SyncOperation, SyncPriority, SyncQueue

logger = logging.getLogger("office_messaging")


class DashboardApi:
    """Async client for the dashboard API.

    Args:
        base_url: API root, defaults to OFFICE_MESSAGING_API_BASE_URL.
        cache: Cache for read calls. Defaults to a ClientCacheManager on the
            shared store.
        offline_detector: When given, failed requests mark the network
            offline, cached data is served while offline, and writes that
            cannot reach the server go to ``sync_queue``.
        transport: httpx transport override, used by tests.
        sync_queue: Queue for offline writes. Defaults to one on the cache's
            store when an offline detector is given.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        cache: Optional[ClientCacheManager] = None,
        offline_detector=None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sync_queue: Optional[SyncQueue] = None,
    ):
        self.base_url = (base_url or config.API_BASE_URL).rstrip("/")
        self.cache = cache if cache is not None else ClientCacheManager()
        self.offline_detector = offline_detector
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout or config.API_TIMEOUT, connect=5.0),
            transport=transport,
        )
        if sync_queue is None and offline_detector is not None:
            sync_queue = SyncQueue(
                self.replay,
                store=self.cache.store,
                offline_detector=offline_detector,
                clock=self.cache.clock,
            )
        self.sync_queue = sync_queue

    async def __aenter__(self) -> "DashboardApi":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self.sync_queue is not None:
            self.sync_queue.close()
        await self._client.aclose()

    # -- requests ----------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            logger.error(f"{method} {path} failed: {e}")
            if self.offline_detector is not None:
                self.offline_detector.set_offline()
            raise ApiError(f"Could not reach {self.base_url} ({e})") from e

        if self.offline_detector is not None:
            self.offline_detector.set_online()

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            message = f"{method} {path} failed"
            if isinstance(body, dict) and body.get("error"):
                message = str(body["error"])
            logger.error(f"{method} {path}: HTTP {response.status_code} - {message}")
            raise ApiError(message, status_code=response.status_code)

        if isinstance(body, dict):
            if body.get("error"):
                raise ApiError(str(body["error"]), status_code=response.status_code)
            if "data" in body:
                return body["data"]
        return body

    async def _cached_get(self, key: str, path: str, ttl: float, params: Optional[dict] = None) -> Any:
        query = CachedQuery(
            self.cache,
            key,
            lambda: self._request("GET", path, params=params),
            ttl=CacheTTL.STALENESS_THRESHOLD,
            stale_threshold=ttl,
            offline_detector=self.offline_detector,
            refetch_on_reconnect=False,
        )
        return await query.fetch()

    async def replay(self, operation: SyncOperation) -> Any:
        """Send a queued operation."""
        return await self._request(
            operation.method, operation.path, params=operation.params, json=operation.body
        )

    # -- endpoints ---------------------------------------------------------

    async def get_classes(self) -> Any:
        return await self._cached_get(CacheKeys.classes(), "/api/classes", CacheTTL.CLASSES)

    async def get_attendance(self, class_id: str, date: str) -> Any:
        """Attendance records for a class on a date (YYYY-MM-DD)."""
        return await self._cached_get(
            CacheKeys.class_attendance(class_id, date),
            "/api/attendance",
            CacheTTL.ATTENDANCE,
            params={"classId": class_id, "date": date},
        )

    async def get_student(self, student_id: str) -> Any:
        return await self._cached_get(
            CacheKeys.student(student_id), f"/api/students/{student_id}", CacheTTL.PROFILE
        )

    async def get_teacher(self, teacher_id: str) -> Any:
        return await self._cached_get(
            CacheKeys.teacher(teacher_id), f"/api/teachers/{teacher_id}", CacheTTL.PROFILE
        )

    async def get_notification_settings(self, user_id: str) -> NotificationSettings:
        data = await self._cached_get(
            CacheKeys.notifications(user_id),
            "/api/notifications/preferences",
            CacheTTL.NOTIFICATIONS,
            params={"userId": user_id},
        )
        return NotificationSettings.from_dict(data if isinstance(data, dict) else {})

    async def save_notification_settings(self, user_id: str, settings: NotificationSettings) -> bool:
        """Save settings on the server.

        Returns False if the server was unreachable and the write was queued
        for later. HTTP errors are raised, not queued.
        """
        path = "/api/notifications/preferences"
        params = {"userId": user_id}
        payload = settings.to_dict()
        sent = True
        try:
            await self._request("PUT", path, params=params, json=payload)
        except ApiError as e:
            if e.status_code is not None or self.sync_queue is None:
                raise
            self.sync_queue.add(
                "PUT", path, body=payload, params=params, priority=SyncPriority.HIGH, replace=True
            )
            sent = False
        self.cache.set(CacheKeys.notifications(user_id), payload, ttl=CacheTTL.STALENESS_THRESHOLD)
        return sent
