"""Shared FastAPI dependencies.

Authentication happens at the gateway, which forwards the caller's identity
in ``X-User-Id`` (and ``X-Admin-Id`` for admin routes).
"""

from fastapi import Header, HTTPException, Request

from ieco.services import Services


def get_services(request: Request) -> Services:
    """The service graph built in the app lifespan."""
    services: Services | None = getattr(request.app.state, "services", None)
    if services is None:
        msg = "Services not initialized"
        raise RuntimeError(msg)
    return services


async def get_current_user_id(x_user_id: str | None = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity")
    return x_user_id


async def get_admin_id(x_admin_id: str | None = Header(None)) -> str:
    if not x_admin_id:
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return x_admin_id
