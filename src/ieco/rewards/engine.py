"""Reward rule matching and grant routing.

Matching is pure: ``match_rules`` filters rules by event type and condition
tree, orders by priority and applies the match policy. ``RewardEngine``
adds persistence: loading rules, granting through the credit ledger, and
parking risky grants as pending approvals.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import select

from ieco.config import Settings, get_settings
from ieco.credits.ledger import CreditLedger, CreditSource
from ieco.database import unit_of_work
from ieco.db.models import CreditRecord, RewardApproval, RewardRule
from ieco.fraud.risk import RiskContext
from ieco.rewards.conditions import ConditionError, parse

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger()


class EventType(Enum):
    USER_REGISTERED = "user_registered"
    USER_ACTIVATED = "user_activated"
    MILESTONE_REACHED = "milestone_reached"


class RewardType(Enum):
    AI_CREDITS = "ai_credits"
    BADGE = "badge"
    TITLE = "title"


class MatchPolicy(Enum):
    ALL = "all"
    HIGHEST_PRIORITY = "highest_priority"


class ApprovalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class InvitationEvent:
    """A domain event from the invitation flow. ``user_id`` is the reward recipient."""

    event_id: str
    type: str
    user_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime | None = None


@dataclass(frozen=True)
class RewardInstruction:
    rule_id: str
    rule_name: str
    user_id: str
    reward_type: str
    amount: int
    source: str
    source_id: str
    description: str

    @property
    def idempotency_key(self) -> str:
        return f"reward:{self.source_id}:{self.rule_id}:{self.user_id}"


@dataclass(frozen=True)
class GrantResult:
    granted: bool
    approval_id: str | None = None
    duplicate: bool = False


def source_for_event(event_type: str) -> str:
    if event_type == EventType.MILESTONE_REACHED.value:
        return CreditSource.MILESTONE_REWARD.value
    return CreditSource.INVITE_REWARD.value


def match_rules(
    rules: Iterable[RewardRule],
    event: InvitationEvent,
    policy: MatchPolicy | str = MatchPolicy.ALL,
) -> list[RewardInstruction]:
    """Rules matching the event, highest priority first, filtered by the match policy."""
    policy = MatchPolicy(policy)
    matched: list[RewardRule] = []
    for rule in rules:
        if not rule.is_active or rule.event_type != event.type:
            continue
        try:
            condition = parse(rule.conditions)
        except ConditionError:
            logger.warning("reward_rule_invalid_conditions", rule_id=rule.id, rule_name=rule.name)
            continue
        if condition.evaluate(event.payload):
            matched.append(rule)

    # sorted() is stable, so equal priorities keep load order
    matched = sorted(matched, key=lambda rule: rule.priority, reverse=True)
    if policy is MatchPolicy.HIGHEST_PRIORITY:
        matched = matched[:1]

    source = source_for_event(event.type)
    return [
        RewardInstruction(
            rule_id=rule.id,
            rule_name=rule.name,
            user_id=event.user_id,
            reward_type=rule.reward_type,
            amount=rule.reward_amount,
            source=source,
            source_id=event.event_id,
            description=rule.description or rule.name,
        )
        for rule in matched
    ]


class RewardEngine:
    """Evaluate events against stored rules and apply the resulting rewards."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: CreditLedger,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.ledger = ledger
        self.settings = settings or get_settings()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def evaluate(self, event: InvitationEvent, db: AsyncSession | None = None) -> list[RewardInstruction]:
        async with unit_of_work(self.session_factory, db) as session:
            result = await session.execute(
                select(RewardRule)
                .where(RewardRule.event_type == event.type, RewardRule.is_active.is_(True))
                .order_by(RewardRule.created_at, RewardRule.id)
            )
            rules = list(result.scalars().all())

        instructions = match_rules(rules, event, self.settings.reward_match_policy)
        logger.info(
            "reward_rules_evaluated",
            event_id=event.event_id,
            event_type=event.type,
            candidates=len(rules),
            matched=len(instructions),
        )
        return instructions

    async def grant(
        self,
        instruction: RewardInstruction,
        risk: RiskContext | None = None,
        db: AsyncSession | None = None,
    ) -> GrantResult:
        """Grant immediately, or park as a pending approval when risky or large.

        A replayed instruction returns the outcome of its first grant, whichever
        path that took, even when the risk verdict has changed since.
        """
        risk = risk or RiskContext.clean()
        async with unit_of_work(self.session_factory, db) as session:
            prior = await self._prior_grant(session, instruction)
            if prior is not None:
                logger.info(
                    "reward_grant_replayed",
                    user_id=instruction.user_id,
                    rule_id=instruction.rule_id,
                    source_id=instruction.source_id,
                    approval_id=prior.approval_id,
                )
                return prior

            if not (risk.is_suspicious or instruction.amount > self.settings.auto_approve_max_amount):
                await self._apply(instruction, db=session)
                return GrantResult(granted=True)

            approval = RewardApproval(
                user_id=instruction.user_id,
                rule_id=instruction.rule_id,
                reward_type=instruction.reward_type,
                amount=instruction.amount,
                source=instruction.source,
                source_id=instruction.source_id,
                description=instruction.description,
                status=ApprovalStatus.PENDING.value,
                risk_score=risk.score,
                risk_reasons=list(risk.reasons),
                created_at=self.clock(),
            )
            session.add(approval)
            await session.flush()

        logger.info(
            "reward_pending_approval",
            approval_id=approval.id,
            user_id=instruction.user_id,
            rule_id=instruction.rule_id,
            amount=instruction.amount,
            risk_score=risk.score,
        )
        return GrantResult(granted=False, approval_id=approval.id)

    async def approve(self, approval_id: str, admin_id: str, notes: str | None = None) -> bool:
        """pending -> approved plus the deferred credit, in one transaction."""
        async with unit_of_work(self.session_factory) as session:
            approval = await self._pending_for_update(session, approval_id)
            if approval is None:
                return False
            approval.status = ApprovalStatus.APPROVED.value
            approval.admin_id = admin_id
            approval.notes = notes
            approval.decided_at = self.clock()

            instruction = RewardInstruction(
                rule_id=approval.rule_id or "",
                rule_name="",
                user_id=approval.user_id,
                reward_type=approval.reward_type,
                amount=approval.amount,
                source=approval.source,
                source_id=approval.source_id,
                description=approval.description,
            )
            await self._apply(instruction, db=session, idempotency_key=f"approval:{approval.id}")

        logger.info("reward_approved", approval_id=approval_id, admin_id=admin_id, user_id=approval.user_id)
        return True

    async def reject(self, approval_id: str, admin_id: str, reason: str) -> bool:
        if not reason or not reason.strip():
            msg = "A rejection reason is required"
            raise ValueError(msg)

        async with unit_of_work(self.session_factory) as session:
            approval = await self._pending_for_update(session, approval_id)
            if approval is None:
                return False
            approval.status = ApprovalStatus.REJECTED.value
            approval.admin_id = admin_id
            approval.notes = reason.strip()
            approval.decided_at = self.clock()

        logger.info("reward_rejected", approval_id=approval_id, admin_id=admin_id)
        return True

    async def _prior_grant(self, session: AsyncSession, instruction: RewardInstruction) -> GrantResult | None:
        """Outcome of an earlier grant of the same rule for the same event, if any."""
        credited = await session.scalar(
            select(CreditRecord.id).where(CreditRecord.idempotency_key == instruction.idempotency_key)
        )
        if credited is not None:
            return GrantResult(granted=True, duplicate=True)

        result = await session.execute(
            select(RewardApproval)
            .where(
                RewardApproval.user_id == instruction.user_id,
                RewardApproval.rule_id == instruction.rule_id,
                RewardApproval.source_id == instruction.source_id,
            )
            .order_by(RewardApproval.created_at)
        )
        approval = result.scalars().first()
        if approval is not None:
            return GrantResult(granted=False, approval_id=approval.id, duplicate=True)
        return None

    async def _pending_for_update(self, session: AsyncSession, approval_id: str) -> RewardApproval | None:
        result = await session.execute(
            select(RewardApproval).where(RewardApproval.id == approval_id).with_for_update()
        )
        approval = result.scalar_one_or_none()
        if approval is None or approval.status != ApprovalStatus.PENDING.value:
            return None
        return approval

    async def _apply(
        self,
        instruction: RewardInstruction,
        db: AsyncSession | None = None,
        idempotency_key: str | None = None,
    ) -> None:
        if instruction.reward_type != RewardType.AI_CREDITS.value:
            # Badges and titles are recorded by their owning service
            logger.info(
                "reward_granted",
                user_id=instruction.user_id,
                reward_type=instruction.reward_type,
                rule_id=instruction.rule_id,
            )
            return

        await self.ledger.add_credits(
            user_id=instruction.user_id,
            amount=instruction.amount,
            source=instruction.source,
            source_id=instruction.source_id,
            description=instruction.description,
            idempotency_key=idempotency_key or instruction.idempotency_key,
            metadata={"rule_id": instruction.rule_id} if instruction.rule_id else None,
            db=db,
        )
        logger.info(
            "reward_granted",
            user_id=instruction.user_id,
            reward_type=instruction.reward_type,
            amount=instruction.amount,
            rule_id=instruction.rule_id,
        )
