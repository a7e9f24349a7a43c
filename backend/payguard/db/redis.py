"""Shared Redis client and key naming.

Redis holds only rebuildable state: rate-limit windows, the recent payment
attempt log, established user locations, and per-record / per-event locks.
The billing ledger itself lives in Postgres.
"""

import redis.asyncio as redis

from payguard.core.config import get_settings

KEY_PREFIX = "payguard"

_redis: redis.Redis | None = None


def redis_key(*parts: object) -> str:
    """Namespaced key, e.g. ``redis_key("ratelimit", "user", 42)``."""
    return ":".join([KEY_PREFIX, *map(str, parts)])


async def init_redis(url: str | None = None) -> None:
    """Connect once and fail startup if the server does not answer PING."""
    global _redis

    if _redis is None:
        client = redis.from_url(url or get_settings().redis_url, decode_responses=True)
        await client.ping()
        _redis = client


async def close_redis() -> None:
    global _redis

    client, _redis = _redis, None
    if client is not None:
        await client.aclose()


def get_redis() -> redis.Redis:
    if _redis is None:
        raise RuntimeError("PayGuard Redis client is not initialised; call init_redis() during startup")
    return _redis
