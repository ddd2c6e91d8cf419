"""
Shared test configuration and fixtures.

Provides an in-memory data source that records every collaborator call, a
scripted stream transport, and a config with short timings so timer-driven
behaviour can be observed in a few tens of milliseconds.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager

import pytest

from martini_realtime.config import RealtimeConfig
from martini_realtime.models import Frame, FrameStatus


class FakeDataSource:
    """Records fetches as ``name:begin`` / ``name:end`` pairs."""

    def __init__(self, frames: list[Frame] | None = None, credential: str | None = "token-1"):
        self.frames: list[Frame] = list(frames or [])
        self.credential = credential
        self.log: list[str] = []
        self.failing: set[str] = set()
        self.delay = 0.0
        self.frame_updates: list[tuple[str, str]] = []
        self.schedule_updates: list[str] = []
        self.credential_reads = 0

    async def _fetch(self, name: str) -> None:
        self.log.append(f"{name}:begin")
        if self.delay:
            await asyncio.sleep(self.delay)
        self.log.append(f"{name}:end")
        if name in self.failing:
            raise RuntimeError(f"{name} unavailable")

    async def fetch_frames(self) -> None:
        await self._fetch("fetch_frames")

    async def fetch_creatives(self) -> None:
        await self._fetch("fetch_creatives")

    async def fetch_project_details(self) -> None:
        await self._fetch("fetch_project_details")

    def current_credential(self) -> str | None:
        self.credential_reads += 1
        return self.credential

    def publish_frame_update(self, frame_id: str, event_name: str) -> None:
        self.frame_updates.append((frame_id, event_name))

    def publish_schedule_update(self, event_name: str) -> None:
        self.schedule_updates.append(event_name)

    @property
    def fetches(self) -> list[str]:
        """Fetch names in the order they started."""
        return [entry.split(":")[0] for entry in self.log if entry.endswith(":begin")]


class FakeStream:
    """One scripted connection; push bytes, an exception, or close it."""

    def __init__(self, url: str, headers: Mapping[str, str]):
        self.url = url
        self.headers = dict(headers)
        self._queue: asyncio.Queue[bytes | Exception | None] = asyncio.Queue()

    def push(self, chunk: bytes) -> None:
        self._queue.put_nowait(chunk)

    def fail(self, error: Exception) -> None:
        self._queue.put_nowait(error)

    def close(self) -> None:
        self._queue.put_nowait(None)

    async def chunks(self) -> AsyncIterator[bytes]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item


class FakeTransport:
    """Transport whose connections are driven by the test."""

    def __init__(self) -> None:
        self.streams: list[FakeStream] = []
        self.open_errors: list[Exception] = []
        self.closed = False

    @asynccontextmanager
    async def open(self, url: str, headers: Mapping[str, str]) -> AsyncIterator[AsyncIterator[bytes]]:
        if self.open_errors:
            raise self.open_errors.pop(0)
        stream = FakeStream(url, headers)
        self.streams.append(stream)
        yield stream.chunks()

    async def close(self) -> None:
        self.closed = True

    @property
    def latest(self) -> FakeStream:
        return self.streams[-1]


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def fast_config() -> RealtimeConfig:
    """Config with millisecond-scale timings."""
    return RealtimeConfig(
        reconnect_delay=0.05,
        ping_interval=0.2,
        ping_timeout=0.1,
        back_online_delay=0.05,
    )


@pytest.fixture
def frames() -> list[Frame]:
    return [
        Frame(id="f1", status=FrameStatus.NONE, creative_id="c1", caption="Wide"),
        Frame(id="f2", status=FrameStatus.NEXT, creative_id="c1"),
        Frame(id="f3", status=FrameStatus.DONE, creative_id="c2"),
    ]


@pytest.fixture
def data_source(frames) -> FakeDataSource:
    return FakeDataSource(frames=frames)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture(name="wait_until")
def wait_until_fixture() -> Callable[..., object]:
    return wait_until
