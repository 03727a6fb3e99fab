"""Process-wide Redis client.

Opened by the app lifespan or a worker entry point. Redis is optional: the
listing cache, the notification queue and the rate limiter all degrade
when it's missing, so most callers use get_redis_optional() and check for
None. Tests install a fakeredis client with set_redis().
"""

from typing import Optional

import redis.asyncio as aioredis

from spontaneous.config import settings

_client: Optional[aioredis.Redis] = None


async def init_redis(url: Optional[str] = None) -> aioredis.Redis:
    """Connect and ping. Raises if Redis can't be reached."""
    global _client
    _client = aioredis.from_url(url or settings.redis_url, decode_responses=True)
    await _client.ping()
    return _client


def set_redis(client: Optional[aioredis.Redis]) -> None:
    global _client
    _client = client


async def close_redis() -> None:
    global _client
    client, _client = _client, None
    if client is not None:
        await client.aclose()


def get_redis_optional() -> Optional[aioredis.Redis]:
    return _client
