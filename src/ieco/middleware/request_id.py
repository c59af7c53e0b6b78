"""Per-request log context: request id plus the caller identity forwarded by the gateway."""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Gateway header -> structlog context key
_IDENTITY_HEADERS = {"X-User-Id": "user_id", "X-Admin-Id": "admin_id"}


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind request id and caller identity to structlog, echo X-Request-Id back."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())

        context: dict[str, str] = {"request_id": request_id, "path": request.url.path}
        for header, key in _IDENTITY_HEADERS.items():
            value = request.headers.get(header)
            if value:
                context[key] = value

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(**context)
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response
