"""Rate limiting and idempotency helpers."""
from __future__ import annotations

import time
from typing import Optional

import redis.asyncio as redis

from src.core.config import settings
from src.core.exceptions import ConflictError, RateLimitError

_redis_client: redis.Redis | None = None


async def _get_client() -> redis.Redis:
    """Return a cached Redis client instance."""

    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            str(settings.REDIS_URI), decode_responses=True
        )
    return _redis_client


async def close_client() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
    _redis_client = None


async def check_rate_limit(tenant_id: str) -> None:
    """Enforce a simple fixed-window rate limit per tenant."""

    if not settings.RATE_LIMIT_ENABLED:
        return
    client = await _get_client()
    minute_window = int(time.time() // 60)
    key = f"rl:{tenant_id}:{minute_window}"
    current = await client.incr(key)
    if current == 1:
        await client.expire(key, 60)
    if current > settings.RATE_LIMIT_RPM:
        raise RateLimitError("Rate limit exceeded")


async def ensure_idempotent(tenant_id: str, key: Optional[str]) -> None:
    """Reject duplicate POST requests sharing the same idempotency key."""

    if not key:
        return
    client = await _get_client()
    redis_key = f"idemp:{tenant_id}:{key}"
    was_set = await client.set(redis_key, "1", ex=60 * 30, nx=True)
    if not was_set:
        raise ConflictError("Duplicate request (idempotency)")


async def release_idempotency_key(tenant_id: str, key: Optional[str]) -> None:
    """Forget a key whose request failed so the client can retry with it."""

    if not key:
        return
    client = await _get_client()
    await client.delete(f"idemp:{tenant_id}:{key}")
