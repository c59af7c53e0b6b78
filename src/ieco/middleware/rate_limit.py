"""Redis-backed fixed window rate limiting middleware."""

import time
from collections.abc import Iterable
from typing import Any

import structlog
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ieco.redis_client import get_redis_or_none

logger = structlog.get_logger()


def _caller_key(request: Request) -> str:
    """Authenticated callers are limited per user, anonymous ones per client IP."""
    user_id = request.headers.get("X-User-Id")
    if user_id:
        return f"user:{user_id}"
    return f"ip:{request.client.host if request.client else 'unknown'}"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed window counters shared across API instances through Redis.

    Fails open: without Redis, or while Redis errors, requests pass unthrottled.
    """

    def __init__(
        self,
        app: Any,  # noqa: ANN401
        requests_per_window: int = 100,
        window_seconds: int = 60,
        exempt_paths: Iterable[str] = (),
    ) -> None:
        super().__init__(app)
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds
        self.exempt_paths = frozenset(exempt_paths)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        redis = get_redis_or_none()
        if request.url.path in self.exempt_paths or redis is None:
            return await call_next(request)

        caller = _caller_key(request)
        window = int(time.time()) // self.window_seconds
        rate_key = f"ratelimit:{caller}:{window}"

        try:
            pipe = redis.pipeline()
            pipe.incr(rate_key)
            pipe.expire(rate_key, self.window_seconds + 1)
            results: list[Any] = await pipe.execute()
        except RedisError:
            logger.warning("rate_limit_unavailable", caller=caller)
            return await call_next(request)

        current_count: int = results[0]
        limit = str(self.requests_per_window)

        if current_count > self.requests_per_window:
            logger.info("rate_limited", caller=caller, count=current_count)
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later."},
                headers={
                    "Retry-After": str(self.window_seconds),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Limit": limit,
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.requests_per_window - current_count))
        response.headers["X-RateLimit-Limit"] = limit
        return response
