"""Offline detection.

Single source of truth for network reachability. Transitions arrive either
from callers (``set_online()`` / ``set_offline()``, e.g. when a request fails)
or from a reachability probe polled every few seconds, because transition
signals can be missed or arrive late. The last known state and the "was
offline" history are persisted so a restart keeps them.
"""

import copy
import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable, Optional

import httpx

from . import config
from .storage import KeyValueStore, get_store
from .timers import Timer

logger = logging.getLogger("office_messaging")


@dataclass
class OfflineState:
    is_online: bool = True
    was_offline: bool = False             # ever offline, this run or a previous one
    offline_since: Optional[float] = None
    last_online_at: Optional[float] = None


async def http_probe(url: Optional[str] = None, timeout: float = 3.0) -> bool:
    """Return True if the reachability URL answers with a non-5xx status."""
    target = url or config.REACHABILITY_URL
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.head(target)
        return response.status_code < 500
    except httpx.HTTPError as e:
        logger.debug(f"Reachability probe to {target} failed: {e}")
        return False


Listener = Callable[[OfflineState], None]


class OfflineDetector:
    """Tracks online/offline transitions and notifies subscribers."""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        probe: Optional[Callable[[], Awaitable[bool]]] = None,
        poll_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        initially_online: Optional[bool] = None,
    ):
        self.store = store if store is not None else get_store()
        self.probe = probe or http_probe
        self.poll_interval = poll_interval if poll_interval is not None else config.OFFLINE_POLL_INTERVAL
        self.clock = clock
        self._state = OfflineState()
        self._listeners: list[Listener] = []
        self._timer: Optional[Timer] = None
        self._load_persisted_state()
        if initially_online is not None and initially_online != self._state.is_online:
            self._state.is_online = initially_online
            self._state.offline_since = None if initially_online else self.clock()
            self._state.was_offline = self._state.was_offline or not initially_online

    # -- state accessors ---------------------------------------------------

    @property
    def state(self) -> OfflineState:
        return copy.copy(self._state)

    def get_state(self) -> OfflineState:
        return self.state

    @property
    def is_online(self) -> bool:
        return self._state.is_online

    @property
    def was_offline(self) -> bool:
        return self._state.was_offline

    def get_offline_duration(self) -> Optional[float]:
        """Seconds offline so far, or None if not offline."""
        if self._state.offline_since is None:
            return None
        return self.clock() - self._state.offline_since

    def get_time_since_online(self) -> Optional[float]:
        """Seconds since the last transition to online, or None."""
        if self._state.last_online_at is None:
            return None
        return self.clock() - self._state.last_online_at

    # -- transitions -------------------------------------------------------

    def set_online(self) -> bool:
        """Record a transition to online. Returns False if already online."""
        if self._state.is_online:
            return False
        now = self.clock()
        self._state = OfflineState(
            is_online=True,
            was_offline=True,
            offline_since=None,
            last_online_at=now,
        )
        logger.info("Network connection restored")
        self._persist_state()
        self._notify_listeners()
        return True

    def set_offline(self) -> bool:
        """Record a transition to offline. Returns False if already offline."""
        if not self._state.is_online:
            return False
        now = self.clock()
        self._state = OfflineState(
            is_online=False,
            was_offline=True,
            offline_since=now,
            last_online_at=self._state.last_online_at,
        )
        logger.warning("Network connection lost")
        self._persist_state()
        self._notify_listeners()
        return True

    async def check(self) -> bool:
        """Probe reachability once and apply any transition.

        Returns the current online flag.
        """
        try:
            online = bool(await self.probe())
        except Exception as e:
            logger.debug(f"Reachability probe raised: {e}")
            online = False

        if online:
            self.set_online()
        else:
            self.set_offline()
        return self._state.is_online

    def start(self) -> None:
        """Start polling the probe every poll_interval seconds."""
        if self._timer is not None and self._timer.active:
            return
        self._timer = Timer(self.poll_interval, self.check, repeat=True, name="offline-poll")

    def stop(self) -> None:
        if self._timer:
            self._timer.cancel()
            self._timer = None

    def reset(self) -> None:
        """Forget history and assume online."""
        self._state = OfflineState(is_online=True)
        self._persist_state()
        self._notify_listeners()

    # -- subscribers -------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify_listeners(self) -> None:
        state = self.state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Error in offline state listener")

    # -- persistence -------------------------------------------------------

    def _load_persisted_state(self) -> None:
        raw = self.store.get(config.OFFLINE_STATE_KEY)
        if raw is None:
            return
        try:
            persisted = json.loads(raw)
            is_online = bool(persisted.get("isOnline", True))
            self._state = OfflineState(
                is_online=is_online,
                was_offline=bool(persisted.get("wasOffline", False)) or not is_online,
                offline_since=None if is_online else persisted.get("offlineSince"),
                last_online_at=persisted.get("lastOnlineAt"),
            )
        except (ValueError, AttributeError) as e:
            logger.error(f"Failed to load persisted offline state: {e}")

    def _persist_state(self) -> None:
        data = asdict(self._state)
        try:
            self.store.set(
                config.OFFLINE_STATE_KEY,
                json.dumps({
                    "isOnline": data["is_online"],
                    "wasOffline": data["was_offline"],
                    "lastOnlineAt": data["last_online_at"],
                    "offlineSince": data["offline_since"],
                }),
            )
        except OSError as e:
            logger.error(f"Failed to persist offline state: {e}")
