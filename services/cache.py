"""Key-value store adapter over Redis used by token, session and rate limit services."""

import json

from typing import Any, List, Optional

import logfire

from redis.asyncio import Redis


class RedisCacheService:
    """JSON serializing wrapper around an asyncio Redis client.

    Connection failures raise ``redis.exceptions.RedisError`` and are left to
    the caller.
    """

    def __init__(self, redis_client: Redis):
        self.redis = redis_client

    async def ping(self) -> bool:
        return await self.redis.ping()

    async def get(self, key: str) -> Optional[Any]:
        """Get a value, decoding JSON when possible.

        Args:
            key (str): Key to read.

        Returns:
            Optional[Any]: The decoded value, the raw string when it is not
            JSON, or None when the key does not exist.
        """
        value = await self.redis.get(key)

        if value is None:
            return None

        try:
            return json.loads(value)
        except ValueError:
            return value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        """Store a value, optionally expiring after ``ttl_seconds``."""
        serialized_value = json.dumps(value)

        if ttl_seconds:
            await self.redis.set(key, serialized_value, ex=max(1, int(ttl_seconds)))
        else:
            await self.redis.set(key, serialized_value)

    async def set_with_expiry(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.set(key, value, ttl_seconds)

    async def delete(self, key: str) -> bool:
        return await self.redis.delete(key) > 0

    async def exists(self, key: str) -> bool:
        return await self.redis.exists(key) == 1

    async def increment(self, key: str, amount: int = 1) -> int:
        if amount == 1:
            return await self.redis.incr(key)
        return await self.redis.incrby(key, amount)

    async def get_keys(self, pattern: str = "*") -> List[str]:
        """Get all keys matching a glob ``pattern`` using non-blocking SCAN."""
        keys = [key async for key in self.redis.scan_iter(match=pattern, count=500)]
        logfire.debug(f"Scanned {len(keys)} keys for pattern {pattern}")
        return keys
