"""Per-event control flow for invitation events.

risk -> evaluate -> grant -> notify, all inside one transaction so a
failure anywhere leaves no partial ledger, approval or notification writes
behind. Stored notices are dispatched once that transaction commits.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import select

from ieco.database import unit_of_work
from ieco.db.models import NotificationMessage
from ieco.fraud.fingerprint import DeviceFingerprint, generate, generate_from_headers
from ieco.fraud.risk import RiskAssessor, RiskContext
from ieco.notifications.scheduler import NotificationRequest, NotificationScheduler
from ieco.notifications.templates import NotificationType
from ieco.rewards.engine import EventType, InvitationEvent, RewardEngine, RewardInstruction, RewardType

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger()

# Notification announcing the event itself, besides per-reward notices
_EVENT_NOTIFICATIONS = {
    EventType.USER_REGISTERED.value: NotificationType.INVITE_SUCCESS.value,
    EventType.USER_ACTIVATED.value: NotificationType.INVITE_PROGRESS.value,
    EventType.MILESTONE_REACHED.value: NotificationType.MILESTONE_ACHIEVED.value,
}


@dataclass
class EventOutcome:
    event_id: str
    risk: RiskContext
    granted: list[RewardInstruction] = field(default_factory=list)
    pending_approval_ids: list[str] = field(default_factory=list)
    notification_ids: list[str] = field(default_factory=list)
    replayed: list[RewardInstruction] = field(default_factory=list)

    @property
    def credits_granted(self) -> int:
        return sum(ins.amount for ins in self.granted if ins.reward_type == RewardType.AI_CREDITS.value)


def fingerprint_from_payload(payload: Mapping[str, Any]) -> DeviceFingerprint | None:
    """Prefer client-reported attributes, fall back to request headers."""
    if isinstance(payload.get("client"), Mapping):
        return generate(payload["client"])
    if isinstance(payload.get("headers"), Mapping):
        return generate_from_headers(payload["headers"])
    return None


class InvitationEventProcessor:
    """Turns one invitation event into rewards and notifications."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: RewardEngine,
        scheduler: NotificationScheduler,
        risk: RiskAssessor,
    ) -> None:
        self.session_factory = session_factory
        self.engine = engine
        self.scheduler = scheduler
        self.risk = risk

    async def process(self, event: InvitationEvent) -> EventOutcome:
        """Run one event through risk, rewards and notices.

        Replays (arq retries, duplicate deliveries) grant nothing new and
        send no second notice. Notices go out only after the commit.
        """
        payload = event.payload or {}
        risk = await self.risk.assess(
            fingerprint_from_payload(payload),
            ip=payload.get("ip"),
            user_id=payload.get("invitee_id") or event.user_id,
        )
        outcome = EventOutcome(event_id=event.event_id, risk=risk)

        async with unit_of_work(self.session_factory) as session:
            instructions = await self.engine.evaluate(event, db=session)
            for instruction in instructions:
                result = await self.engine.grant(instruction, risk, db=session)
                if result.duplicate:
                    outcome.replayed.append(instruction)
                elif result.granted:
                    outcome.granted.append(instruction)
                elif result.approval_id:
                    outcome.pending_approval_ids.append(result.approval_id)

            await self._notify(session, event, outcome)

        await self.scheduler.deliver(outcome.notification_ids)

        logger.info(
            "invitation_event_processed",
            event_id=event.event_id,
            event_type=event.type,
            user_id=event.user_id,
            granted=len(outcome.granted),
            pending=len(outcome.pending_approval_ids),
            replayed=len(outcome.replayed),
            risk_score=risk.score,
        )
        return outcome

    async def _notify(self, session: AsyncSession, event: InvitationEvent, outcome: EventOutcome) -> None:
        payload = event.payload or {}
        requests = [
            NotificationRequest(
                user_id=event.user_id,
                type=NotificationType.REWARD_RECEIVED.value,
                data={"reward_amount": ins.amount, "reward_type": "AI credits"},
                metadata={"event_id": event.event_id, "rule_id": ins.rule_id},
            )
            for ins in outcome.granted
            if ins.reward_type == RewardType.AI_CREDITS.value
        ]

        event_notification = _EVENT_NOTIFICATIONS.get(event.type)
        if event_notification is not None and not await self._announced(session, event, event_notification):
            requests.append(
                NotificationRequest(
                    user_id=event.user_id,
                    type=event_notification,
                    data={
                        "invitee_name": payload.get("invitee_name") or "A friend",
                        "reward_amount": outcome.credits_granted,
                        "invite_count": payload.get("invite_count"),
                        "milestone_name": payload.get("milestone"),
                        "reward_description": ", ".join(ins.description for ins in outcome.granted) or "a reward",
                    },
                    metadata={"event_id": event.event_id},
                )
            )

        for request in requests:
            notification_id = await self.scheduler.send(request, db=session)
            if notification_id:
                outcome.notification_ids.append(notification_id)

    async def _announced(self, session: AsyncSession, event: InvitationEvent, notification_type: str) -> bool:
        """Whether this event's own notice was already stored for the user."""
        found = await session.scalar(
            select(NotificationMessage.id)
            .where(
                NotificationMessage.user_id == event.user_id,
                NotificationMessage.type == notification_type,
                NotificationMessage.message_metadata["event_id"].as_string() == event.event_id,
            )
            .limit(1)
        )
        return found is not None
