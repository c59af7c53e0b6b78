"""HTTP middleware stack for the invitation economy API."""

from fastapi import FastAPI

from ieco.config import Settings
from ieco.middleware.error_handler import setup_error_handlers
from ieco.middleware.logging import setup_logging
from ieco.middleware.rate_limit import RateLimitMiddleware
from ieco.middleware.request_id import RequestContextMiddleware

# Orchestrator health checks are never throttled
HEALTH_CHECK_PATHS = frozenset({"/health", "/ready"})


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Install the API middleware stack.

    The request context middleware is added last so it is outermost and
    429 responses from the rate limiter still carry X-Request-Id.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_window=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
        exempt_paths=HEALTH_CHECK_PATHS,
    )
    app.add_middleware(RequestContextMiddleware)
