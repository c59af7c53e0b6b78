"""arq jobs: periodic ledger/notification maintenance and queued event intake.

Worker entry point lives in ieco.workers.settings.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from ieco.config import get_settings
from ieco.database import close_db, get_session_factory, init_db
from ieco.events.processor import InvitationEventProcessor
from ieco.middleware.logging import setup_logging
from ieco.redis_client import close_redis, init_redis
from ieco.rewards.engine import InvitationEvent
from ieco.services import build_services

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize DB + Redis and build the core services."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    redis = await init_redis(settings)

    ctx["services"] = build_services(get_session_factory(), redis, settings)
    logger.info("Invitation economy worker started")


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    await close_redis()
    await close_db()
    logger.info("Invitation economy worker shut down")


async def expire_credits(ctx: dict) -> int:  # type: ignore[type-arg]
    """Hourly: expire lapsed credits."""
    count = await ctx["services"].ledger.expire_credits()
    logger.info("Expired %d credit records", count)
    return count


async def cleanup_notifications(ctx: dict) -> int:  # type: ignore[type-arg]
    """Daily: delete read/delivered notifications past retention."""
    return await ctx["services"].scheduler.cleanup_expired_notifications()


async def deliver_due_notifications(ctx: dict) -> int:  # type: ignore[type-arg]
    """Every 5 minutes: dispatch notifications deferred by quiet hours or digests."""
    return await ctx["services"].scheduler.deliver_due_notifications()


def event_from_job(data: dict[str, Any]) -> InvitationEvent:
    """Build an InvitationEvent from a queued job payload.

    Raises:
        ValueError: Missing event id, type or user.
    """
    missing = [key for key in ("event_id", "type", "user_id") if not data.get(key)]
    if missing:
        msg = f"Invitation event missing fields: {missing}"
        raise ValueError(msg)

    occurred_at = data.get("occurred_at")
    if isinstance(occurred_at, str):
        occurred_at = datetime.fromisoformat(occurred_at)
    if isinstance(occurred_at, datetime) and occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)

    return InvitationEvent(
        event_id=str(data["event_id"]),
        type=str(data["type"]),
        user_id=str(data["user_id"]),
        payload=dict(data.get("payload") or {}),
        occurred_at=occurred_at,
    )


async def process_invitation_event(ctx: dict, event: dict[str, Any]) -> dict[str, Any]:  # type: ignore[type-arg]
    """Queued job: run one invitation event through the reward pipeline."""
    processor: InvitationEventProcessor = ctx["services"].processor
    outcome = await processor.process(event_from_job(event))
    return {
        "event_id": outcome.event_id,
        "granted": len(outcome.granted),
        "pending_approval_ids": outcome.pending_approval_ids,
        "replayed": len(outcome.replayed),
        "notification_ids": outcome.notification_ids,
        "risk_score": outcome.risk.score,
    }
