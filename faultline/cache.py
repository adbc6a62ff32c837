"""
Cache, advisory lock and time-ordered set primitives.

Redis is optional. Every Redis-backed class has an in-process counterpart with
the same interface, so callers never branch on whether Redis is configured:
- RedisCache / NullCache: get/set, counters, rate limits, advisory locks
- RedisTimeline / MemoryTimeline: record(key, member, ts) / count_since(key, cutoff)
"""
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import LockError, RedisError

from faultline.utils import epoch_ms, utcnow

logger = logging.getLogger(__name__)

TIMELINE_RETENTION = timedelta(days=31)


class RedisCache:
    """Cache and lock primitives on a redis.asyncio client. Errors never propagate."""

    def __init__(self, client: redis.Redis, prefix: str = "faultline"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "faultline") -> "RedisCache":
        return cls(redis.from_url(url, socket_connect_timeout=5), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError) as e:
            logger.warning(f"Redis ping failed: {str(e)}")
            return False

    async def close(self) -> None:
        await self.client.aclose()

    async def get(self, key: str) -> Optional[Any]:
        try:
            value = await self.client.get(self._key(key))
        except (RedisError, OSError) as e:
            logger.debug(f"Cache get failed for {key}: {str(e)}")
            return None
        if value is None:
            return None
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return value

    async def set(self, key: str, value: Any, ttl_seconds: int = 60) -> None:
        try:
            await self.client.set(self._key(key), json.dumps(value, default=str), ex=ttl_seconds)
        except (RedisError, OSError) as e:
            logger.debug(f"Cache set failed for {key}: {str(e)}")

    async def incr(self, key: str) -> Optional[int]:
        """Atomic counter; None when Redis is unreachable."""
        try:
            return int(await self.client.incr(self._key(key)))
        except (RedisError, OSError) as e:
            logger.warning(f"Counter increment failed for {key}: {str(e)}")
            return None

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> Dict[str, Any]:
        """Fixed-window counter. Allows everything when Redis is unreachable."""
        try:
            window = epoch_ms(utcnow()) // 1000 // window_seconds
            window_key = self._key(f"ratelimit:{key}:{window}")
            count = await self.client.incr(window_key)
            if count == 1:
                await self.client.expire(window_key, window_seconds)
            return {"allowed": count <= limit, "remaining": max(0, limit - count)}
        except (RedisError, OSError):
            return {"allowed": True, "remaining": limit}

    @asynccontextmanager
    async def lock(self, key: str, ttl_seconds: int = 10, wait_seconds: float = 2.0) -> AsyncIterator[bool]:
        """
        Best-effort advisory lock with TTL.

        Yields True when the lock is held. Yields False when Redis is
        unreachable or the lock stayed contended for `wait_seconds`; the
        caller proceeds anyway and accepts approximate consistency.
        """
        lock = self.client.lock(self._key(f"lock:{key}"), timeout=ttl_seconds, blocking_timeout=wait_seconds)
        try:
            acquired = await lock.acquire()
        except (RedisError, OSError) as e:
            logger.warning(f"Lock {key} unavailable, proceeding without it: {str(e)}")
            acquired = False
        if not acquired:
            logger.warning(f"Lock {key} not acquired within {wait_seconds}s, proceeding without it")
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await lock.release()
                except (LockError, RedisError, OSError) as e:
                    # TTL expired or Redis went away; the lock is gone either way
                    logger.debug(f"Lock {key} release failed: {str(e)}")


class NullCache:
    """Cache used without Redis: misses everywhere, locks never held."""

    async def ping(self) -> bool:
        return False

    async def close(self) -> None:
        return None

    async def get(self, key: str) -> Optional[Any]:
        return None

    async def set(self, key: str, value: Any, ttl_seconds: int = 60) -> None:
        return None

    async def incr(self, key: str) -> Optional[int]:
        return None

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> Dict[str, Any]:
        return {"allowed": True, "remaining": limit}

    @asynccontextmanager
    async def lock(self, key: str, ttl_seconds: int = 10, wait_seconds: float = 2.0) -> AsyncIterator[bool]:
        yield False


class RedisTimeline:
    """Time-ordered member sets on Redis sorted sets (score = epoch ms)."""

    def __init__(self, client: redis.Redis, prefix: str = "faultline"):
        self.client = client
        self.prefix = prefix

    async def record(self, key: str, member: str, timestamp: datetime) -> None:
        redis_key = f"{self.prefix}:{key}"
        cutoff = epoch_ms(timestamp - TIMELINE_RETENTION)
        try:
            pipe = self.client.pipeline()
            pipe.zadd(redis_key, {member: epoch_ms(timestamp)})
            pipe.zremrangebyscore(redis_key, "-inf", cutoff)
            pipe.expire(redis_key, int(TIMELINE_RETENTION.total_seconds()))
            await pipe.execute()
        except (RedisError, OSError) as e:
            logger.warning(f"Timeline record failed for {key}: {str(e)}")

    async def count_since(self, key: str, cutoff: datetime) -> int:
        try:
            return int(await self.client.zcount(f"{self.prefix}:{key}", epoch_ms(cutoff), "+inf"))
        except (RedisError, OSError) as e:
            logger.warning(f"Timeline count failed for {key}: {str(e)}")
            return 0


class MemoryTimeline:
    """Single-process timeline keeping the latest timestamp per member."""

    def __init__(self):
        self._members: Dict[str, Dict[str, datetime]] = {}

    async def record(self, key: str, member: str, timestamp: datetime) -> None:
        members = self._members.setdefault(key, {})
        previous = members.get(member)
        if previous is None or timestamp > previous:
            members[member] = timestamp
        cutoff = timestamp - TIMELINE_RETENTION
        for stale in [m for m, ts in members.items() if ts < cutoff]:
            del members[stale]

    async def count_since(self, key: str, cutoff: datetime) -> int:
        return sum(1 for ts in self._members.get(key, {}).values() if ts >= cutoff)
