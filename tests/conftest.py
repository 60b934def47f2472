"""
Shared fixtures: an in-memory RegistryStore that can simulate Redis outages.
"""
import asyncio
from typing import Dict, List, Optional

import pytest

from prometheus_sd.exceptions import StoreError
from prometheus_sd.models.service import ServiceEntry
from prometheus_sd.redis_client import ChangeEvent, RegistryStore, Subscription
from prometheus_sd.resilience.retry import ResilientConnector
from prometheus_sd.service_discovery.notifier import ChangeNotifier

_DISCONNECTED = object()


class FakeSubscription(Subscription):

    def __init__(self, store: "FakeRegistryStore", channel: str):
        self.store = store
        self.channel = channel
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def events(self):
        while True:
            item = await self.queue.get()
            if item is _DISCONNECTED:
                raise StoreError("connection reset by peer", operation="listen")
            if item is None:
                return
            yield item

    async def close(self):
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(None)
            if self in self.store.subscriptions:
                self.store.subscriptions.remove(self)


class FakeRegistryStore(RegistryStore):
    """Dict-backed registry; `go_down()` makes every operation fail"""

    def __init__(self):
        self.entries: Dict[str, ServiceEntry] = {}
        self.subscriptions: List[FakeSubscription] = []
        self.published: List[tuple] = []
        self.available = True
        self.fetch_failures = 0
        self.subscribe_calls = 0
        self.fetch_calls = 0
        self.closed = False

    def _check(self, operation: str):
        if not self.available:
            raise StoreError("Connection refused", operation=operation)

    def go_down(self):
        self.available = False
        for subscription in list(self.subscriptions):
            subscription.queue.put_nowait(_DISCONNECTED)
        self.subscriptions.clear()

    def come_up(self):
        self.available = True

    async def ping(self):
        self._check("ping")

    async def upsert(self, entry: ServiceEntry):
        self._check("upsert")
        self.entries[entry.key] = entry

    async def get(self, key: str) -> Optional[ServiceEntry]:
        self._check("get")
        return self.entries.get(key)

    async def remove(self, key: str) -> bool:
        self._check("remove")
        return self.entries.pop(key, None) is not None

    async def fetch_all(self) -> List[ServiceEntry]:
        self.fetch_calls += 1
        self._check("fetch_all")
        if self.fetch_failures:
            self.fetch_failures -= 1
            raise StoreError("Read timed out", operation="fetch_all")
        return list(self.entries.values())

    async def publish(self, channel: str, message: str) -> int:
        self._check("publish")
        self.published.append((channel, message))
        receivers = [s for s in self.subscriptions if s.channel == channel]
        for subscription in receivers:
            subscription.queue.put_nowait(ChangeEvent(channel=channel, data=message))
        return len(receivers)

    async def subscribe(self, channel: str) -> FakeSubscription:
        self.subscribe_calls += 1
        self._check("subscribe")
        subscription = FakeSubscription(self, channel)
        self.subscriptions.append(subscription)
        return subscription

    async def close(self):
        self.closed = True


async def no_wait(_seconds):
    # yield to the loop so retry loops against a down store stay cooperative
    await asyncio.sleep(0)


async def _wait_until(predicate, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def store():
    return FakeRegistryStore()


@pytest.fixture
def connector():
    return ResilientConnector(max_elapsed=60, sleep=no_wait)


@pytest.fixture
def notifier(store):
    return ChangeNotifier(store)


@pytest.fixture
def make_connector():
    """Connector factory whose backoff sleeps return immediately"""
    def factory(**kwargs):
        kwargs.setdefault("sleep", no_wait)
        return ResilientConnector(**kwargs)
    return factory


@pytest.fixture
def wait_until():
    """Poll a predicate until it is truthy or fail the test"""
    return _wait_until
