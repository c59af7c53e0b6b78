"""Shared test fixtures.

Every test gets its own SQLite file (via aiosqlite) with the ORM schema
created directly, and a frozen clock that tests advance by hand.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ieco.config import Settings
from ieco.credits.ledger import CreditLedger
from ieco.credits.locks import LocalUserLockProvider
from ieco.db import models  # noqa: F401
from ieco.db.base import Base
from ieco.events.processor import InvitationEventProcessor
from ieco.fraud.risk import RiskAssessor
from ieco.notifications.scheduler import NotificationScheduler
from ieco.rewards.engine import RewardEngine
from ieco.rewards.rules_service import RewardRuleService
from ieco.services import Services

# A Monday, so weekly digests land exactly one week out
T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock for the services; only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        redis_url="redis://localhost:6379/15",
        db_operation_timeout_seconds=10.0,
        credit_expiry_days=90,
        expiring_window_days=30,
        reward_match_policy="all",
        auto_approve_max_amount=100,
        risk_score_threshold=0.5,
        quiet_hours_timezone="UTC",
        notification_retention_days=30,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh schema per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ieco.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def ledger(session_factory, settings, clock) -> CreditLedger:
    return CreditLedger(session_factory, LocalUserLockProvider(), settings=settings, clock=clock)


@pytest.fixture
def rules(session_factory, clock) -> RewardRuleService:
    return RewardRuleService(session_factory, clock=clock)


@pytest.fixture
def reward_engine(session_factory, ledger, settings, clock) -> RewardEngine:
    return RewardEngine(session_factory, ledger, settings=settings, clock=clock)


@pytest.fixture
def scheduler(session_factory, settings, clock) -> NotificationScheduler:
    return NotificationScheduler(session_factory, dispatcher=None, settings=settings, clock=clock)


@pytest.fixture
def risk(settings) -> RiskAssessor:
    return RiskAssessor(None, settings=settings)


@pytest.fixture
def processor(session_factory, reward_engine, scheduler, risk) -> InvitationEventProcessor:
    return InvitationEventProcessor(session_factory, reward_engine, scheduler, risk)


@pytest.fixture
def services(ledger, reward_engine, rules, scheduler, risk, processor) -> Services:
    return Services(
        ledger=ledger,
        engine=reward_engine,
        rules=rules,
        scheduler=scheduler,
        risk=risk,
        processor=processor,
    )
