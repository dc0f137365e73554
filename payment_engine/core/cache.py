"""
Cache collaborator.

Read-through, write-invalidate and never authoritative: a cache failure is
logged and treated as a miss. Locks are the exception, they must work or the
caller fails.
"""
from contextlib import AbstractAsyncContextManager
from typing import Optional, Protocol

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = structlog.get_logger(__name__)


def payment_cache_key(payment_id: str) -> str:
    return f"payment:details:{payment_id}"


def idempotency_cache_key(idempotency_key: str) -> str:
    return f"idempotency:{idempotency_key}"


class Cache(Protocol):
    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    def lock(self, name: str, timeout: int) -> AbstractAsyncContextManager:
        ...

    async def ping(self) -> bool:
        ...


class RedisCache:
    """Cache backed by ``redis.asyncio``."""

    def __init__(self, redis: Redis, lock_blocking_timeout: float = 10.0):
        self.redis = redis
        self.lock_blocking_timeout = lock_blocking_timeout

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(Redis.from_url(url, encoding="utf-8", decode_responses=True))

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.redis.get(key)
        except RedisError as e:
            logger.warning("cache_get_failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self.redis.setex(key, ttl_seconds, value)
        except RedisError as e:
            logger.warning("cache_set_failed", key=key, error=str(e))

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(key)
        except RedisError as e:
            logger.warning("cache_delete_failed", key=key, error=str(e))

    def lock(self, name: str, timeout: int) -> AbstractAsyncContextManager:
        """Distributed lock; raises ``redis.exceptions.LockError`` if not acquired."""
        return self.redis.lock(
            f"lock:{name}",
            timeout=timeout,
            blocking_timeout=self.lock_blocking_timeout,
        )

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    async def close(self) -> None:
        await self.redis.aclose()
