"""Wiring for the core services shared by the API and the worker."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from ieco.config import Settings, get_settings
from ieco.credits.ledger import CreditLedger
from ieco.credits.locks import LocalUserLockProvider, RedisUserLockProvider, UserLockProvider
from ieco.events.processor import InvitationEventProcessor
from ieco.fraud.risk import RiskAssessor
from ieco.notifications.dispatch import RedisPubSubDispatcher
from ieco.notifications.scheduler import NotificationScheduler
from ieco.rewards.engine import RewardEngine
from ieco.rewards.rules_service import RewardRuleService

if TYPE_CHECKING:
    import redis.asyncio as aioredis
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


@dataclass
class Services:
    ledger: CreditLedger
    engine: RewardEngine
    rules: RewardRuleService
    scheduler: NotificationScheduler
    risk: RiskAssessor
    processor: InvitationEventProcessor


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    redis: aioredis.Redis | None = None,
    settings: Settings | None = None,
) -> Services:
    """Build the service graph. Without Redis, locks are process-local and nothing is dispatched."""
    settings = settings or get_settings()

    locks: UserLockProvider
    if redis is not None:
        locks = RedisUserLockProvider(
            redis,
            timeout=settings.lock_timeout_seconds,
            blocking_timeout=settings.lock_timeout_seconds,
        )
    else:
        locks = LocalUserLockProvider()

    ledger = CreditLedger(session_factory, locks, settings=settings)
    engine = RewardEngine(session_factory, ledger, settings=settings)
    scheduler = NotificationScheduler(
        session_factory,
        dispatcher=RedisPubSubDispatcher(redis) if redis is not None else None,
        settings=settings,
    )
    risk = RiskAssessor(redis, settings=settings)
    return Services(
        ledger=ledger,
        engine=engine,
        rules=RewardRuleService(session_factory),
        scheduler=scheduler,
        risk=risk,
        processor=InvitationEventProcessor(session_factory, engine, scheduler, risk),
    )
