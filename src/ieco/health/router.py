"""Liveness, readiness and build info."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ieco.config import get_settings
from ieco.database import get_session
from ieco.redis_client import redis_status

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    request: Request,
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict[str, object]:
    """Ready once the ledger store answers and the service graph is wired.

    Redis is optional: without it, locks and notification fan-out run in-process.
    """
    checks: dict[str, str] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except SQLAlchemyError as exc:
        checks["database"] = f"error: {exc}"

    checks["redis"] = await redis_status()
    checks["services"] = "ok" if getattr(request.app.state, "services", None) is not None else "not started"

    ready = (
        checks["database"] == "ok"
        and checks["services"] == "ok"
        and not checks["redis"].startswith("error")
    )
    return {"status": "ready" if ready else "degraded", "checks": checks}


@router.get("/version")
async def version() -> dict[str, str]:
    settings = get_settings()
    return {
        "version": settings.app_version,
        "environment": settings.environment,
        "reward_match_policy": settings.reward_match_policy,
    }
