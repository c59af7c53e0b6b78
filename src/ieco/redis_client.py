"""Shared Redis client for rate limits, fraud counters, credit locks and notification fan-out."""

import redis.asyncio as redis
from redis.exceptions import RedisError

from ieco.config import Settings

_client: redis.Redis | None = None


async def init_redis(settings: Settings) -> redis.Redis:
    """Create the shared client. Connections open lazily on first command."""
    global _client  # noqa: PLW0603
    _client = redis.from_url(  # type: ignore[no-untyped-call]
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=settings.redis_max_connections,
        socket_timeout=settings.redis_socket_timeout_seconds,
    )
    return _client


async def close_redis() -> None:
    global _client  # noqa: PLW0603
    if _client is not None:
        await _client.aclose()
        _client = None


def get_redis() -> redis.Redis:
    if _client is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _client


def get_redis_or_none() -> redis.Redis | None:
    """Redis-backed features fall back to in-process behaviour when this is None."""
    return _client


async def redis_status() -> str:
    """Connectivity summary for the readiness check."""
    if _client is None:
        return "not configured"
    try:
        await _client.ping()
    except RedisError as exc:
        return f"error: {exc}"
    return "ok"
