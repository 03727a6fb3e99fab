"""Read-through cache for the active broadcasts listing.

The listing lives under a single key as a JSON array with a short TTL.
Nothing here is required for correctness:

- get() returns None on a miss, and also on any Redis error, timeout or
  undecodable payload, so the caller simply reads the database
- set() and invalidate() are best effort; a failure is logged and the
  entry ages out within the TTL at worst
"""

import asyncio
from typing import Optional

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError

from spontaneous.config import settings
from spontaneous.schemas.broadcast import BroadcastListAdapter, BroadcastRead

logger = structlog.get_logger()


class ActiveListingCache:
    """Cached copy of the "active broadcasts" listing."""

    def __init__(
        self,
        redis: Optional[aioredis.Redis],
        *,
        key: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.redis = redis
        self.key = key or settings.active_cache_key
        self.ttl_seconds = ttl_seconds or settings.active_cache_ttl_seconds
        self.timeout = timeout if timeout is not None else settings.cache_timeout_seconds

    async def get(self) -> Optional[list[BroadcastRead]]:
        """Return the cached listing, or None if it has to be rebuilt."""
        if self.redis is None:
            return None
        try:
            raw = await asyncio.wait_for(self.redis.get(self.key), self.timeout)
        except asyncio.TimeoutError:
            logger.warning("cache.read_timeout", key=self.key)
            return None
        except Exception as e:
            logger.warning("cache.read_failed", key=self.key, error=str(e))
            return None

        if raw is None:
            return None

        try:
            return BroadcastListAdapter.validate_json(raw)
        except ValidationError:
            logger.warning("cache.corrupt_entry", key=self.key)
            await self.invalidate()
            return None

    async def set(self, broadcasts: list[BroadcastRead]) -> None:
        if self.redis is None:
            return
        payload = BroadcastListAdapter.dump_json(broadcasts)
        try:
            await asyncio.wait_for(
                self.redis.set(self.key, payload, ex=self.ttl_seconds),
                self.timeout,
            )
        except Exception as e:
            logger.warning("cache.write_failed", key=self.key, error=str(e))

    async def invalidate(self) -> bool:
        """Drop the cached listing. Returns False if Redis couldn't be reached."""
        if self.redis is None:
            return False
        try:
            await asyncio.wait_for(self.redis.delete(self.key), self.timeout)
        except Exception as e:
            logger.warning("cache.invalidate_failed", key=self.key, error=str(e))
            return False
        return True
