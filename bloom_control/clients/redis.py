"""
Redis Client - thin storage contract over redis.asyncio.

Both the ledger (durable records) and the admission layer (ephemeral
counters) talk to Redis through this wrapper; neither reaches into the
other's keys.
"""

from typing import Dict, List, Mapping, Optional

import redis.asyncio as redis
from redis.asyncio.client import Pipeline
from loguru import logger


class RedisClient:
    """
    Key/value and record operations used by the services.
    Failures propagate to the caller: a request that cannot read or
    write its state must fail rather than act on stale data.
    """

    def __init__(self, redis_instance: redis.Redis):
        self.redis = redis_instance
        logger.debug("RedisClient initialized")

    def transaction(self) -> Pipeline:
        """Pipeline for WATCH/MULTI/EXEC; use as an async context manager."""
        return self.redis.pipeline(transaction=True)

    async def get(self, key: str) -> Optional[str]:
        """Get value by key."""
        return await self.redis.get(key)

    async def set_if_absent(self, key: str, value: str) -> bool:
        """Set a key only if it does not exist yet; True if this call created it."""
        return bool(await self.redis.set(key, value, nx=True))

    async def delete(self, *keys: str) -> None:
        """Delete keys."""
        if not keys:
            return
        try:
            await self.redis.delete(*keys)
        except Exception as e:
            logger.error(f"Error deleting keys {keys}: {str(e)}")
            raise

    async def get_many(self, keys: List[str]) -> List[Optional[str]]:
        """Fetch several raw values in one round trip."""
        if not keys:
            return []
        return await self.redis.mget(keys)

    async def next_id(self, key: str) -> int:
        """Monotonic sequence number."""
        return int(await self.redis.incr(key))

    async def incr(self, key: str, ttl: int) -> int:
        """Increment an integer counter and (re)arm its TTL."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, ttl)
            count, _ = await pipe.execute()
        return int(count)

    async def incr_float(self, key: str, amount: float, ttl: int) -> float:
        """Increment a float accumulator and (re)arm its TTL."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.incrbyfloat(key, amount)
            pipe.expire(key, ttl)
            total, _ = await pipe.execute()
        return float(total)

    # Hashes

    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self.redis.hget(key, field)

    async def hget_all(self, key: str) -> Dict[str, str]:
        """Get every field of a hash."""
        return await self.redis.hgetall(key)

    async def hset_many(self, key: str, mapping: Dict[str, str]) -> None:
        """Set several hash fields at once."""
        if not mapping:
            return
        try:
            await self.redis.hset(key, mapping=mapping)
        except Exception as e:
            logger.error(f"Error writing hash {key}: {str(e)}")
            raise

    async def hdel(self, key: str, field: str) -> bool:
        return bool(await self.redis.hdel(key, field))

    # Lists

    async def list_append(self, key: str, value: str) -> None:
        await self.redis.rpush(key, value)

    async def list_all(self, key: str) -> List[str]:
        return await self.redis.lrange(key, 0, -1)

    # Sorted sets

    async def index_add(self, key: str, member: str, score: float) -> None:
        await self.redis.zadd(key, {member: score})

    async def index_remove(self, key: str, member: str) -> None:
        await self.redis.zrem(key, member)

    async def index_page_desc(self, key: str, offset: int, limit: int) -> List[str]:
        """Members by descending score, `limit` of them starting at `offset`."""
        if limit <= 0:
            return []
        return await self.redis.zrevrange(key, offset, offset + limit - 1)
