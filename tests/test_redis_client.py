"""
RedisRegistryStore against a mocked redis.asyncio client
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from prometheus_sd.exceptions import ConfigurationError, StoreError
from prometheus_sd.models.service import ServiceEntry
from prometheus_sd.redis_client import (
    DEFAULT_REGISTRY_KEY,
    ChangeEvent,
    RedisRegistryStore,
    RedisSubscription,
)


@pytest.fixture
def mock_redis():
    client = AsyncMock()
    client.pubsub = MagicMock()
    return client


@pytest.fixture
def redis_store(mock_redis):
    return RedisRegistryStore(mock_redis)


@pytest.fixture
def entry():
    return ServiceEntry.create("svc-a", host="10.0.0.1", port=9100, labels={"env": "prod"})


@pytest.mark.asyncio
async def test_upsert_writes_hash_field(redis_store, mock_redis, entry):
    await redis_store.upsert(entry)

    mock_redis.hset.assert_awaited_once_with(DEFAULT_REGISTRY_KEY, "svc-a", entry.to_json())


@pytest.mark.asyncio
async def test_get_existing_and_missing(redis_store, mock_redis, entry):
    mock_redis.hget.return_value = entry.to_json()
    assert await redis_store.get("svc-a") == entry

    mock_redis.hget.return_value = None
    assert await redis_store.get("svc-b") is None


@pytest.mark.asyncio
async def test_remove_reports_whether_deleted(redis_store, mock_redis):
    mock_redis.hdel.return_value = 1
    assert await redis_store.remove("svc-a") is True

    mock_redis.hdel.return_value = 0
    assert await redis_store.remove("svc-a") is False
    mock_redis.hdel.assert_awaited_with(DEFAULT_REGISTRY_KEY, "svc-a")


@pytest.mark.asyncio
async def test_fetch_all(redis_store, mock_redis, entry):
    other = ServiceEntry.create("svc-b", host="10.0.0.2", port=8080)
    mock_redis.hgetall.return_value = {"svc-a": entry.to_json(), "svc-b": other.to_json()}

    entries = await redis_store.fetch_all()

    assert sorted(entries, key=lambda e: e.key) == [entry, other]


@pytest.mark.asyncio
async def test_fetch_all_skips_unreadable_entries(redis_store, mock_redis, entry):
    mock_redis.hgetall.return_value = {
        "svc-a": entry.to_json(),
        "broken": "{not json",
        "bad-port": '{"key": "bad-port", "host": "h", "port": 0}',
    }

    assert await redis_store.fetch_all() == [entry]


@pytest.mark.asyncio
async def test_fetch_all_uses_hash_field_as_key(redis_store, mock_redis, entry):
    mock_redis.hgetall.return_value = {"renamed": entry.to_json()}

    entries = await redis_store.fetch_all()

    assert [e.key for e in entries] == ["renamed"]


@pytest.mark.asyncio
async def test_custom_registry_key(mock_redis, entry):
    store = RedisRegistryStore(mock_redis, registry_key="team:services")

    await store.upsert(entry)

    assert mock_redis.hset.await_args.args[0] == "team:services"


@pytest.mark.asyncio
@pytest.mark.parametrize("operation,method,args", [
    ("ping", "ping", ()),
    ("fetch_all", "hgetall", ()),
    ("get", "hget", ("svc-a",)),
    ("remove", "hdel", ("svc-a",)),
])
async def test_driver_errors_become_store_errors(redis_store, mock_redis, operation, method, args):
    getattr(mock_redis, method).side_effect = RedisConnectionError("Connection refused")

    with pytest.raises(StoreError) as exc_info:
        await getattr(redis_store, operation)(*args)

    assert exc_info.value.operation == operation
    assert "Connection refused" in exc_info.value.message


@pytest.mark.asyncio
async def test_os_errors_become_store_errors(redis_store, mock_redis, entry):
    mock_redis.hset.side_effect = OSError("Network is unreachable")

    with pytest.raises(StoreError):
        await redis_store.upsert(entry)


@pytest.mark.asyncio
async def test_publish_returns_receiver_count(redis_store, mock_redis):
    mock_redis.publish.return_value = 2

    assert await redis_store.publish("prometheus_sd:changes", "registry_changed") == 2
    mock_redis.publish.assert_awaited_once_with("prometheus_sd:changes", "registry_changed")


@pytest.mark.asyncio
async def test_subscribe_yields_messages_only(redis_store, mock_redis):
    pubsub = AsyncMock()

    async def listen():
        yield {"type": "subscribe", "channel": "changes", "data": 1}
        yield {"type": "message", "channel": "changes", "data": "registry_changed"}

    pubsub.listen = listen
    mock_redis.pubsub.return_value = pubsub

    subscription = await redis_store.subscribe("changes")
    pubsub.subscribe.assert_awaited_once_with("changes")

    events = []
    with pytest.raises(StoreError):
        # stream ends while still open: the connection went away
        async for event in subscription.events():
            events.append(event)

    assert events == [ChangeEvent(channel="changes", data="registry_changed")]


@pytest.mark.asyncio
async def test_subscribe_failure_closes_pubsub(redis_store, mock_redis):
    pubsub = AsyncMock()
    pubsub.subscribe.side_effect = RedisConnectionError("Connection refused")
    mock_redis.pubsub.return_value = pubsub

    with pytest.raises(StoreError):
        await redis_store.subscribe("changes")

    pubsub.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_subscription_close_is_idempotent_and_tolerates_dead_connection():
    pubsub = AsyncMock()
    pubsub.unsubscribe.side_effect = RedisConnectionError("gone")
    subscription = RedisSubscription(pubsub, "changes")

    await subscription.close()
    await subscription.close()

    pubsub.unsubscribe.assert_awaited_once_with("changes")
    pubsub.aclose.assert_awaited_once()


def test_from_url_passes_connection_options():
    with patch("prometheus_sd.redis_client.redis.from_url") as from_url:
        store = RedisRegistryStore.from_url(
            "redis://localhost:6379/2", registry_key="k", connect_timeout=5, health_check_interval=10
        )

    from_url.assert_called_once_with(
        "redis://localhost:6379/2",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_keepalive=True,
        health_check_interval=10,
    )
    assert store.registry_key == "k"


def test_from_url_accepts_redis_unix_alias():
    with patch("prometheus_sd.redis_client.redis.from_url") as from_url:
        RedisRegistryStore.from_url("redis+unix:///var/run/redis.sock")

    assert from_url.call_args.args[0] == "unix:///var/run/redis.sock"


def test_from_url_rejects_unknown_scheme():
    with pytest.raises(ConfigurationError) as exc_info:
        RedisRegistryStore.from_url("http://localhost:6379")

    assert exc_info.value.error_code == "CONFIG_ERROR"
