"""Admin management of reward rules and the approval queue."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import func, select

from ieco.database import unit_of_work
from ieco.db.models import RewardApproval, RewardRule
from ieco.rewards.conditions import parse
from ieco.rewards.engine import ApprovalStatus, EventType, RewardType

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger()

_UPDATABLE_FIELDS = frozenset(
    {"name", "description", "event_type", "reward_type", "reward_amount", "conditions", "priority", "is_active"}
)

DEFAULT_RULES: list[dict[str, Any]] = [
    {
        "name": "Invitee registered",
        "description": "Credits for inviting a user who registers",
        "event_type": EventType.USER_REGISTERED.value,
        "reward_type": RewardType.AI_CREDITS.value,
        "reward_amount": 10,
        "priority": 0,
    },
    {
        "name": "Invitee activated",
        "description": "Credits for inviting a user who becomes active",
        "event_type": EventType.USER_ACTIVATED.value,
        "reward_type": RewardType.AI_CREDITS.value,
        "reward_amount": 5,
        "priority": 0,
    },
]


def _validate(values: dict[str, Any]) -> None:
    """Reject rules the engine could not apply."""
    if "name" in values and not str(values["name"]).strip():
        msg = "Rule name is required"
        raise ValueError(msg)
    if "event_type" in values:
        EventType(values["event_type"])
    if "reward_type" in values:
        RewardType(values["reward_type"])
    if "reward_amount" in values and int(values["reward_amount"]) < 0:
        msg = "Reward amount cannot be negative"
        raise ValueError(msg)
    if "conditions" in values:
        parse(values["conditions"])


class RewardRuleService:
    """CRUD over reward_rules (soft delete) and reads over reward_approvals."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def create_rule(
        self,
        name: str,
        event_type: str,
        reward_type: str,
        reward_amount: int,
        conditions: dict[str, Any] | None = None,
        priority: int = 0,
        description: str | None = None,
        is_active: bool = True,
    ) -> RewardRule:
        """
        Create a reward rule.

        Raises:
            ValueError: Unknown event/reward type, negative amount, or a malformed
                condition tree (ConditionError).
        """
        values = {
            "name": name,
            "event_type": event_type,
            "reward_type": reward_type,
            "reward_amount": reward_amount,
            "conditions": conditions,
        }
        _validate(values)
        if reward_type == RewardType.AI_CREDITS.value and reward_amount <= 0:
            msg = "Credit rewards need a positive amount"
            raise ValueError(msg)

        now = self.clock()
        async with unit_of_work(self.session_factory) as session:
            rule = RewardRule(
                name=name.strip(),
                description=description,
                event_type=event_type,
                reward_type=reward_type,
                reward_amount=reward_amount,
                conditions=conditions or None,
                priority=priority,
                is_active=is_active,
                created_at=now,
                updated_at=now,
            )
            session.add(rule)
            await session.flush()

        logger.info("reward_rule_created", rule_id=rule.id, event_type=event_type, amount=reward_amount)
        return rule

    async def update_rule(self, rule_id: str, updates: dict[str, Any]) -> RewardRule | None:
        unknown = set(updates) - _UPDATABLE_FIELDS
        if unknown:
            msg = f"Cannot update fields: {sorted(unknown)}"
            raise ValueError(msg)
        _validate(updates)

        async with unit_of_work(self.session_factory) as session:
            rule = await session.get(RewardRule, rule_id)
            if rule is None:
                return None
            for key, value in updates.items():
                setattr(rule, key, value)
            if rule.reward_type == RewardType.AI_CREDITS.value and rule.reward_amount <= 0:
                msg = "Credit rewards need a positive amount"
                raise ValueError(msg)
            rule.updated_at = self.clock()

        logger.info("reward_rule_updated", rule_id=rule_id, fields=sorted(updates))
        return rule

    async def delete_rule(self, rule_id: str) -> bool:
        """Soft delete: the rule stays for audit but never matches again."""
        async with unit_of_work(self.session_factory) as session:
            rule = await session.get(RewardRule, rule_id)
            if rule is None:
                return False
            rule.is_active = False
            rule.updated_at = self.clock()

        logger.info("reward_rule_deactivated", rule_id=rule_id)
        return True

    async def get_rule(self, rule_id: str) -> RewardRule | None:
        async with self.session_factory() as session:
            return await session.get(RewardRule, rule_id)

    async def list_rules(self, active_only: bool = False, event_type: str | None = None) -> list[RewardRule]:
        query = select(RewardRule)
        if active_only:
            query = query.where(RewardRule.is_active.is_(True))
        if event_type:
            query = query.where(RewardRule.event_type == event_type)
        query = query.order_by(RewardRule.event_type, RewardRule.priority.desc(), RewardRule.created_at)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_pending_approvals(self, limit: int = 50, offset: int = 0) -> list[RewardApproval]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RewardApproval)
                .where(RewardApproval.status == ApprovalStatus.PENDING.value)
                .order_by(RewardApproval.created_at, RewardApproval.id)
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def get_approval(self, approval_id: str) -> RewardApproval | None:
        async with self.session_factory() as session:
            return await session.get(RewardApproval, approval_id)

    async def seed_default_rules(self) -> int:
        """Insert the built-in rules for event types that have none. Returns rules created."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(RewardRule.event_type, func.count()).group_by(RewardRule.event_type)
            )
            existing = {row[0] for row in result.all()}

        created = 0
        for defaults in DEFAULT_RULES:
            if defaults["event_type"] in existing:
                continue
            await self.create_rule(**defaults)
            created += 1

        if created:
            logger.info("reward_rules_seeded", count=created)
        return created
