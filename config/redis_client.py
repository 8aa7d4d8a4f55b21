"""
config/redis_client.py
Async Redis connection and the two things the API keeps in it: the access
token deny-list and per-client request counters.
"""

import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from tenacity import before_sleep_log, retry, stop_after_attempt, wait_exponential

from config.settings import settings

logger = logging.getLogger(__name__)

DENY_LIST_PREFIX = "auth:denied"
RATE_LIMIT_PREFIX = "ratelimit"

# Set by init_redis() during startup
redis_client: Optional[aioredis.Redis] = None


@retry(
    stop=stop_after_attempt(settings.REDIS_CONNECT_ATTEMPTS),
    wait=wait_exponential(multiplier=0.5, max=5),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
async def init_redis() -> None:
    global redis_client
    client = aioredis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
    )
    try:
        await client.ping()
    except RedisError:
        await client.aclose()
        raise
    redis_client = client


async def close_redis() -> None:
    global redis_client
    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency."""
    if redis_client is None:
        raise RuntimeError("Redis is not connected; init_redis() must run at startup")
    return redis_client


class RedisGuard:
    """Deny-list and rate-limit operations over one client."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    # ── Access token deny-list ────────────────────────────────
    async def deny(self, jti: str, ttl_seconds: int) -> None:
        """Keep the jti only as long as the token itself would live."""
        await self.client.setex(f"{DENY_LIST_PREFIX}:{jti}", ttl_seconds, "1")

    async def is_denied(self, jti: str) -> bool:
        return bool(await self.client.exists(f"{DENY_LIST_PREFIX}:{jti}"))

    # ── Rate limiting ─────────────────────────────────────────
    async def allow(self, identity: str, limit: int, window_seconds: int = 60) -> bool:
        """Fixed-window counter; the window opens on the first hit."""
        key = f"{RATE_LIMIT_PREFIX}:{identity}"
        hits = await self.client.incr(key)
        if hits == 1:
            await self.client.expire(key, window_seconds)
        return hits <= limit
