"""
Redis client for webhook processing locks.

Lock calls must fail fast so an unreachable Redis degrades to lock-free
processing instead of stalling the webhook response.
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Optional

from redis.asyncio import Redis

from subhook.core.config import settings

_lock_client: Optional[Redis] = None


def build_redis_client(url: str, timeout_seconds: float) -> Redis:
    return Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=timeout_seconds,
        socket_timeout=timeout_seconds,
    )


def get_redis_client() -> Redis:
    """Process-wide client, created on first use."""
    global _lock_client
    if _lock_client is None:
        _lock_client = build_redis_client(settings.REDIS_URL, settings.REDIS_SOCKET_TIMEOUT_SECONDS)
    return _lock_client


async def get_redis() -> AsyncGenerator[Redis, None]:
    yield get_redis_client()


async def close_redis_client() -> None:
    global _lock_client
    if _lock_client is not None:
        await _lock_client.aclose()
        _lock_client = None
