"""
Tests for cache, lock and timeline primitives
"""
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from faultline.cache import MemoryTimeline, NullCache, RedisCache


def redis_client():
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.incr = AsyncMock(return_value=1)
    client.expire = AsyncMock(return_value=True)
    client.ping = AsyncMock(return_value=True)
    return client


@pytest.mark.asyncio
async def test_memory_timeline_counts_distinct_members_in_window():
    timeline = MemoryTimeline()
    now = datetime(2024, 1, 15, 12, 0)

    await timeline.record("k", "alice", now - timedelta(minutes=20))
    await timeline.record("k", "bob", now - timedelta(minutes=2))
    await timeline.record("k", "alice", now)

    assert await timeline.count_since("k", now - timedelta(minutes=5)) == 2
    assert await timeline.count_since("k", now - timedelta(hours=1)) == 2
    assert await timeline.count_since("other", now - timedelta(hours=1)) == 0


@pytest.mark.asyncio
async def test_memory_timeline_keeps_latest_timestamp():
    timeline = MemoryTimeline()
    now = datetime(2024, 1, 15, 12, 0)

    await timeline.record("k", "alice", now)
    await timeline.record("k", "alice", now - timedelta(minutes=30))

    assert await timeline.count_since("k", now - timedelta(minutes=1)) == 1


@pytest.mark.asyncio
async def test_null_cache():
    cache = NullCache()

    await cache.set("key", {"a": 1})
    assert await cache.get("key") is None
    assert await cache.incr("counter") is None
    assert (await cache.check_rate_limit("events", 10, 60))["allowed"] is True
    async with cache.lock("key") as held:
        assert held is False


@pytest.mark.asyncio
async def test_redis_cache_round_trips_json():
    client = redis_client()
    client.get = AsyncMock(return_value=b'{"now": 3}')
    cache = RedisCache(client, prefix="test")

    await cache.set("active-users:proj", {"now": 3}, ttl_seconds=30)

    client.set.assert_awaited_once_with("test:active-users:proj", '{"now": 3}', ex=30)
    assert await cache.get("active-users:proj") == {"now": 3}


@pytest.mark.asyncio
async def test_redis_cache_swallows_connection_errors():
    client = redis_client()
    client.get = AsyncMock(side_effect=RedisConnectionError("down"))
    client.incr = AsyncMock(side_effect=RedisConnectionError("down"))
    client.ping = AsyncMock(side_effect=RedisConnectionError("down"))
    cache = RedisCache(client)

    assert await cache.get("key") is None
    assert await cache.incr("counter") is None
    assert await cache.ping() is False
    assert await cache.check_rate_limit("events", 10, 60) == {"allowed": True, "remaining": 10}


@pytest.mark.asyncio
async def test_redis_rate_limit_window():
    client = redis_client()
    client.incr = AsyncMock(side_effect=[1, 2, 3])
    cache = RedisCache(client)

    results = [await cache.check_rate_limit("events:proj", 2, 60) for _ in range(3)]

    assert [r["allowed"] for r in results] == [True, True, False]
    client.expire.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_lock_held_and_released():
    lock = MagicMock()
    lock.acquire = AsyncMock(return_value=True)
    lock.release = AsyncMock()
    client = redis_client()
    client.lock = MagicMock(return_value=lock)
    cache = RedisCache(client, prefix="test")

    async with cache.lock("issue:proj:abc", ttl_seconds=10, wait_seconds=1) as held:
        assert held is True

    client.lock.assert_called_once_with("test:lock:issue:proj:abc", timeout=10, blocking_timeout=1)
    lock.release.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_lock_unavailable_proceeds_without_it():
    lock = MagicMock()
    lock.acquire = AsyncMock(side_effect=RedisConnectionError("down"))
    lock.release = AsyncMock()
    client = redis_client()
    client.lock = MagicMock(return_value=lock)
    cache = RedisCache(client)
    ran = False

    async with cache.lock("issue:proj:abc") as held:
        ran = True
        assert held is False

    assert ran is True
    lock.release.assert_not_awaited()
