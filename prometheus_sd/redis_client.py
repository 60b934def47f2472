"""
Registry store client

The registry is a single Redis hash mapping service key -> serialized
ServiceEntry, so an upsert is one HSET (last write wins per key, no merging)
and a snapshot is one HGETALL. Change notifications travel over a plain
pub/sub channel.

RegistryStore is the interface the rest of the package depends on;
RedisRegistryStore is the production implementation. All driver failures
surface as StoreError.
"""
import abc
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from prometheus_sd.exceptions import ConfigurationError, StoreError, ValidationError
from prometheus_sd.logging.logger import get_logger
from prometheus_sd.models.service import ServiceEntry

logger = get_logger(__name__)

DEFAULT_REGISTRY_KEY = "prometheus_sd:services"

# Errors the driver raises for connectivity or protocol problems
STORE_FAILURES = (RedisError, OSError, asyncio.TimeoutError)


@dataclass(frozen=True)
class ChangeEvent:
    """A "registry changed" notification received on a channel"""
    channel: str
    data: str = field(default="")


@asynccontextmanager
async def translate_errors(operation: str):
    """Re-raise driver failures as StoreError"""
    try:
        yield
    except STORE_FAILURES as e:
        raise StoreError(f"Redis {operation} failed: {e}", operation=operation) from e


class Subscription(abc.ABC):
    """An open pub/sub subscription"""

    @abc.abstractmethod
    def events(self) -> AsyncIterator[ChangeEvent]:
        """
        Yield change events until the subscription is closed.

        Raises:
            StoreError: the underlying connection dropped
        """

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the subscription; safe to call more than once"""


class RegistryStore(abc.ABC):
    """Operations the registry needs from the shared key-value store"""

    @abc.abstractmethod
    async def ping(self) -> None:
        ...

    @abc.abstractmethod
    async def upsert(self, entry: ServiceEntry) -> None:
        ...

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[ServiceEntry]:
        ...

    @abc.abstractmethod
    async def remove(self, key: str) -> bool:
        ...

    @abc.abstractmethod
    async def fetch_all(self) -> List[ServiceEntry]:
        ...

    @abc.abstractmethod
    async def publish(self, channel: str, message: str) -> int:
        ...

    @abc.abstractmethod
    async def subscribe(self, channel: str) -> Subscription:
        ...

    async def close(self) -> None:
        pass


class RedisSubscription(Subscription):

    def __init__(self, pubsub: redis.client.PubSub, channel: str):
        self._pubsub = pubsub
        self._channel = channel
        self._closed = False

    async def events(self) -> AsyncIterator[ChangeEvent]:
        async with translate_errors("listen"):
            async for message in self._pubsub.listen():
                if message["type"] != "message":
                    continue
                yield ChangeEvent(channel=self._channel, data=message["data"])
        if not self._closed:
            # listen() returns once the connection is gone
            raise StoreError("Subscription connection closed", operation="listen")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self._channel)
        except STORE_FAILURES as e:
            logger.debug("Unsubscribe failed on a dead connection", channel=self._channel, error=str(e))
        finally:
            await self._pubsub.aclose()


class RedisRegistryStore(RegistryStore):
    """
    Redis-backed registry.

    Usage:
        store = RedisRegistryStore.from_url("redis://localhost:6379/0")
        await store.upsert(entry)
        entries = await store.fetch_all()
        await store.close()

    Construction performs no I/O; connections are opened lazily by the pool.
    """

    def __init__(self, client: redis.Redis, registry_key: str = DEFAULT_REGISTRY_KEY):
        self.redis = client
        self.registry_key = registry_key

    @classmethod
    def from_url(
        cls,
        url: str,
        registry_key: str = DEFAULT_REGISTRY_KEY,
        connect_timeout: float = 30.0,
        health_check_interval: int = 30,
    ) -> "RedisRegistryStore":
        """
        Build a store from a redis://, rediss:// or unix:// URL.

        Raises:
            ConfigurationError: the URL cannot be parsed
        """
        if url.startswith("redis+unix://"):
            url = "unix://" + url[len("redis+unix://"):]
        try:
            client = redis.from_url(
                url,
                decode_responses=True,
                socket_connect_timeout=connect_timeout,
                socket_keepalive=True,
                health_check_interval=health_check_interval,
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid Redis URL '{url}': {e}", "REDIS_URL") from e
        return cls(client, registry_key=registry_key)

    async def ping(self) -> None:
        async with translate_errors("ping"):
            await self.redis.ping()

    async def upsert(self, entry: ServiceEntry) -> None:
        async with translate_errors("upsert"):
            await self.redis.hset(self.registry_key, entry.key, entry.to_json())

    async def get(self, key: str) -> Optional[ServiceEntry]:
        async with translate_errors("get"):
            raw = await self.redis.hget(self.registry_key, key)
        if raw is None:
            return None
        return ServiceEntry.from_json(raw)

    async def remove(self, key: str) -> bool:
        async with translate_errors("remove"):
            removed = await self.redis.hdel(self.registry_key, key)
        return removed > 0

    async def fetch_all(self) -> List[ServiceEntry]:
        async with translate_errors("fetch_all"):
            raw_entries = await self.redis.hgetall(self.registry_key)

        entries = []
        for key, raw in raw_entries.items():
            try:
                entry = ServiceEntry.from_json(raw)
            except ValidationError as e:
                logger.error("Skipping unreadable registry entry", key=key, error=e.message)
                continue
            if entry.key != key:
                logger.warning("Registry entry stored under a foreign key", key=key, entry_key=entry.key)
                entry = entry.model_copy(update={"key": key})
            entries.append(entry)
        return entries

    async def publish(self, channel: str, message: str) -> int:
        async with translate_errors("publish"):
            return await self.redis.publish(channel, message)

    async def subscribe(self, channel: str) -> RedisSubscription:
        pubsub = self.redis.pubsub()
        try:
            async with translate_errors("subscribe"):
                await pubsub.subscribe(channel)
        except StoreError:
            await pubsub.aclose()
            raise
        return RedisSubscription(pubsub, channel)

    async def close(self) -> None:
        await self.redis.aclose()
