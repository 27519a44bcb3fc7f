import asyncio
import os
from typing import Dict, List, Optional

import pytest

os.environ.setdefault("DISABLE_TELEMETRY", "true")

from entities import Item, Location, Session  # noqa: E402
from errors import AuthError  # noqa: E402

IDENTITY = "a" * 64


def make_items(*ids, **extra) -> List[Item]:
    return [Item.from_payload({"post_id": str(i), "message": f"post {i}", **extra}) for i in ids]


class ManualTimer:
    """Stands in for CycleTimer; cycles only run when a test calls fire()."""

    def __init__(self):
        self.callback = None
        self.scheduled: List[float] = []
        self.cancelled = 0

    @property
    def pending(self) -> bool:
        return self.callback is not None

    def schedule(self, delay, callback):
        if self.callback is not None:
            raise RuntimeError("timer already pending")
        self.callback = callback
        self.scheduled.append(delay)

    def cancel(self) -> bool:
        if self.callback is None:
            return False
        self.callback = None
        self.cancelled += 1
        return True

    async def fire(self):
        callback, self.callback = self.callback, None
        assert callback is not None, "no cycle scheduled"
        return await callback()


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAuth:
    def __init__(self, clock: FakeClock, ttl: float = 3600, fail: bool = False):
        self.clock = clock
        self.ttl = ttl
        self.fail = fail
        self.calls: List[tuple] = []

    async def request_session(self, identity: str, location: Location) -> Session:
        self.calls.append((identity, location))
        if self.fail:
            raise AuthError("denied", status=401)
        n = len(self.calls)
        return Session(access_token=f"token-{n}", expiration=int(self.clock() + self.ttl))


class FakeFeedClient:
    """Channel name -> items (or an exception to raise)."""

    def __init__(self, channels: Optional[Dict[str, object]] = None, on_fetch=None):
        self.channels = channels or {}
        self.on_fetch = on_fetch
        self.calls: List[tuple] = []

    async def fetch_all(self, token, channel, location):
        self.calls.append((token, channel))
        if self.on_fetch is not None:
            self.on_fetch(channel)
        await asyncio.sleep(0)
        result = self.channels.get(channel, [])
        if isinstance(result, BaseException):
            raise result
        return list(result)


class FakeItemClient:
    def __init__(self, items: Dict[str, Item], error: Optional[BaseException] = None):
        self.items = items
        self.error = error
        self.calls: List[str] = []

    async def fetch_one(self, token, item_id):
        self.calls.append(item_id)
        if self.error is not None:
            raise self.error
        return self.items.get(item_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer():
    return ManualTimer()


@pytest.fixture
def location():
    return Location(latitude=49.79, longitude=9.95, name="Wuerzburg")
