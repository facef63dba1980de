"""Shared fixtures: a real temporary SQLite store and in-memory subscriber sinks."""

import asyncio

import pytest
import pytest_asyncio

from pricefeed.pairs import PairRegistry
from pricefeed.storage.sqlite import HourlyAverageStore
from pricefeed.streaming.broadcast import BroadcastHub
from pricefeed.streaming.pipeline import IngestionPipeline


class FakeSink:
    """Subscriber sink that records what it was sent."""

    def __init__(self, ready: bool = True, fail: bool = False):
        self.ready = ready
        self.fail = fail
        self.messages: list[str] = []

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise ConnectionResetError("subscriber went away")
        self.messages.append(data)


class StalledSink:
    """Ready subscriber whose sends never complete (a client that stopped reading)."""

    ready = True

    def __init__(self):
        self.attempts = 0

    async def send_text(self, data: str) -> None:
        self.attempts += 1
        await asyncio.Event().wait()


class FakeClock:
    """Controllable millisecond clock."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest_asyncio.fixture
async def store(tmp_path):
    s = HourlyAverageStore(str(tmp_path / "data" / "prices.db"))
    assert await s.init() is True
    return s


@pytest.fixture
def unavailable_store(tmp_path):
    # Parent "directory" is a regular file, so the database can never be opened
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    return HourlyAverageStore(str(blocker / "prices.db"))


@pytest.fixture
def registry():
    return PairRegistry()


@pytest.fixture
def hub():
    return BroadcastHub()


@pytest.fixture
def sink(hub):
    s = FakeSink()
    hub.add(s)
    return s


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pipeline(registry, store, hub, clock):
    return IngestionPipeline(registry, store, hub, clock=clock)
