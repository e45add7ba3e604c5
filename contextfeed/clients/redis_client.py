"""
Redis client wrapper.

Responsibilities:
  • Feed pages       — STRING (JSON) keyed by feed:user:{user_id}:page:{p}:size:{s}[:ctx:{hash}]
  • Following lists  — STRING (JSON) keyed by user:following:{user_id}
  • Trending posts   — STRING (JSON) keyed by trending:posts:{count}
  • Session markers  — STRING (ISO timestamp) keyed by session:start:{session_id}
  • Presence         — STRING (ISO timestamp) keyed by presence:last_seen:{user_id}

All values are JSON; pydantic models are dumped with model_dump_json and
re-validated on read when the caller passes the model class.
"""
import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from contextfeed.config import settings
from contextfeed.ranking.base import M

logger = logging.getLogger(__name__)

_redis: Optional[aioredis.Redis] = None


async def init_redis() -> aioredis.Redis:
    global _redis
    _redis = aioredis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        decode_responses=True,
    )
    await _redis.ping()
    logger.info("Redis connected at %s:%s", settings.redis_host, settings.redis_port)
    return _redis


async def close_redis() -> None:
    if _redis is not None:
        await _redis.aclose()


def get_redis() -> aioredis.Redis:
    if _redis is None:
        raise RuntimeError("Redis not initialised — call init_redis() at startup")
    return _redis


def _dumps(value: Any) -> str:
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    if isinstance(value, list) and value and isinstance(value[0], BaseModel):
        return json.dumps([v.model_dump(mode="json") for v in value])
    return json.dumps(value, default=str)


class FeedCache:
    """
    Cache-aside store used by every ranking component.

    Reads treat backend errors as misses and writes log and carry on, so a
    Redis outage degrades latency, never correctness.
    """

    def __init__(self, redis: aioredis.Redis, prefix: str = "") -> None:
        self._redis = redis
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str, model: Optional[type[M]] = None) -> Any:
        try:
            raw = await self._redis.get(self._key(key))
        except RedisError as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            return None
        if raw is None:
            logger.debug("Cache miss for key: %s", key)
            return None
        try:
            data = json.loads(raw)
            if model is None:
                return data
            if isinstance(data, list):
                return [model.model_validate(item) for item in data]
            return model.model_validate(data)
        except ValueError as exc:
            # Stale schema or corrupt payload; drop it so the next call recomputes
            logger.warning("Discarding undecodable cache entry %s: %s", key, exc)
            await self.remove(key)
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            await self._redis.set(self._key(key), _dumps(value), ex=ttl)
        except RedisError as exc:
            logger.warning("Cache write failed for %s: %s", key, exc)

    async def remove(self, key: str) -> bool:
        try:
            return bool(await self._redis.delete(self._key(key)))
        except RedisError as exc:
            logger.warning("Cache delete failed for %s: %s", key, exc)
            return False

    async def remove_by_pattern(self, pattern: str) -> int:
        """
        Delete every key matching a glob pattern (SCAN MATCH + DEL).
        Returns the number of keys removed.
        """
        if not pattern:
            raise ValueError("Pattern cannot be empty")

        deleted = 0
        try:
            async for key in self._redis.scan_iter(match=self._key(pattern), count=500):
                deleted += await self._redis.delete(key)
        except RedisError as exc:
            logger.error("Redis error removing cache pattern %s: %s", pattern, exc)
            return deleted

        logger.debug("Cache pattern removed: %s, deleted: %d", pattern, deleted)
        return deleted

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._redis.exists(self._key(key)))
        except RedisError as exc:
            logger.warning("Cache exists check failed for %s: %s", key, exc)
            return False
