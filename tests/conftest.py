"""Shared test fixtures and configuration for office-messaging tests."""

import asyncio
import os
from datetime import datetime

import pytest
from websockets.protocol import State

from office_messaging import config, storage
from office_messaging.realtime.types import User, UserRole
from office_messaging.storage import MemoryStore


@pytest.fixture(autouse=True)
def isolate_home_directory(tmp_path, monkeypatch):
    """
    Redirect the home and data directories to a temporary directory.

    Keeps tests from writing the store, logs or env file under the real
    home directory, and resets the shared store between tests.
    """
    fake_home = tmp_path / "home"
    data_dir = fake_home / ".office-messaging"
    (data_dir / "store").mkdir(parents=True)
    (data_dir / "logs").mkdir(parents=True)

    monkeypatch.setattr("pathlib.Path.home", lambda: fake_home)

    original_expanduser = os.path.expanduser

    def mock_expanduser(path):
        if path.startswith("~"):
            return str(fake_home) + path[1:]
        return original_expanduser(path)

    monkeypatch.setattr("os.path.expanduser", mock_expanduser)

    monkeypatch.setattr(config, "DATA_DIR", data_dir)
    monkeypatch.setattr(config, "STORE_DIR", data_dir / "store")
    monkeypatch.setattr(config, "LOGS_DIR", data_dir / "logs")
    monkeypatch.delenv("OFFICE_MESSAGING_STORE", raising=False)
    monkeypatch.setattr(storage, "_default_store", None)

    yield fake_home


@pytest.fixture
def store():
    return MemoryStore()


class FakeClock:
    """Callable clock returning epoch seconds that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def set_local(self, hour: int, minute: int = 0) -> None:
        """Jump to a wall-clock time of day (local time) on a fixed date."""
        self.now = datetime(2026, 3, 10, hour, minute).timestamp()


@pytest.fixture
def clock():
    return FakeClock()


_CLOSE = object()


class FakeSocket:
    """Stands in for a websockets client connection.

    Frames pushed with ``push()`` come out of ``async for``; ``drop()``
    ends the stream as if the server closed it, ``fail()`` makes the stream
    raise.
    """

    def __init__(self):
        self.sent: list[str] = []
        self.state = State.OPEN
        self.close_code = None
        self.close_reason = ""
        self.closed_by_client = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    def push(self, frame: str) -> None:
        self._incoming.put_nowait(frame)

    def drop(self, code: int = 1006, reason: str = "") -> None:
        self._incoming.put_nowait((_CLOSE, code, reason))

    def fail(self, error: Exception) -> None:
        self._incoming.put_nowait(error)

    async def send(self, data: str) -> None:
        if self.state is not State.OPEN:
            raise RuntimeError("socket is closed")
        self.sent.append(data)

    async def close(self) -> None:
        if self.state is State.OPEN:
            self.closed_by_client = True
        self.state = State.CLOSED
        self._incoming.put_nowait((_CLOSE, 1000, ""))

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.state is State.CLOSED and self._incoming.empty():
            raise StopAsyncIteration
        item = await self._incoming.get()
        if isinstance(item, tuple) and item[0] is _CLOSE:
            self.state = State.CLOSED
            if self.close_code is None:
                self.close_code, self.close_reason = item[1], item[2]
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    """connect_factory that hands out FakeSockets, or fails on request."""

    def __init__(self):
        self.urls: list[str] = []
        self.sockets: list[FakeSocket] = []
        self.failures = 0
        self.always_fail = False

    async def __call__(self, url: str) -> FakeSocket:
        self.urls.append(url)
        if self.always_fail or self.failures > 0:
            self.failures = max(0, self.failures - 1)
            raise OSError("Connection refused")
        ws = FakeSocket()
        self.sockets.append(ws)
        return ws

    @property
    def latest(self) -> FakeSocket:
        return self.sockets[-1]


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def office_user():
    return User(id="office-1", name="Front Office", role=UserRole.OFFICE)


@pytest.fixture
def wait_until():
    """Await until ``predicate()`` is true, failing after ``timeout`` seconds."""

    async def _wait(predicate, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait
