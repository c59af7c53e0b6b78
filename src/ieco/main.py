"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from ieco.config import get_settings
from ieco.credits.router import router as credits_router
from ieco.database import close_db, get_session_factory, init_db
from ieco.health.router import router as health_router
from ieco.middleware import setup_middleware
from ieco.notifications.router import router as notifications_router
from ieco.redis_client import close_redis, init_redis
from ieco.rewards.router import router as rewards_router
from ieco.services import build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    redis = await init_redis(settings)

    services = build_services(get_session_factory(), redis, settings)
    app.state.services = services

    # Seed default reward rules (idempotent)
    try:
        await services.rules.seed_default_rules()
    except SQLAlchemyError:
        logger.warning("Reward rule seeding failed (tables may not exist yet)", exc_info=True)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Invitation Economy API",
        description="Credits, invitation rewards and notifications for the education platform",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(credits_router)
    app.include_router(rewards_router)
    app.include_router(notifications_router)

    return app


app = create_app()
