"""Preference- and quiet-hours-aware notification scheduling.

Messages are:
1. Filtered by the user's per-type preference (disabled or wrong channel
   means nothing is stored)
2. Persisted as ``pending``, with ``scheduled_at`` set when quiet hours or
   a digest frequency push delivery later
3. Handed to the dispatcher once committed when immediate, or by the worker's
   ``deliver_due_notifications`` sweep once due
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

from sqlalchemy import and_, delete, func, literal, or_, select, update

from ieco.config import Settings, get_settings
from ieco.database import run_bounded, unit_of_work
from ieco.db.base import AwareDateTime
from ieco.db.models import NotificationMessage, NotificationPreference
from ieco.errors import StoreUnavailableError
from ieco.notifications.templates import NotificationType, render

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from ieco.notifications.dispatch import BaseDispatcher

logger = logging.getLogger(__name__)

# Immediate messages still pending this long after commit are retried by the sweep
UNDISPATCHED_GRACE = timedelta(minutes=1)


class Channel(Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class Frequency(Enum):
    IMMEDIATE = "immediate"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class NotificationStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


DEFAULT_CHANNELS = frozenset({Channel.IN_APP.value})

_PREFERENCE_FIELDS = frozenset({"channels", "frequency", "is_enabled", "quiet_hours_start", "quiet_hours_end"})


@dataclass(frozen=True)
class NotificationRequest:
    """What to send. Title and content are rendered from the type's template when omitted."""

    user_id: str
    type: str
    channel: str = Channel.IN_APP.value
    title: str | None = None
    content: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Preference:
    user_id: str
    type: str
    channels: frozenset[str] = DEFAULT_CHANNELS
    frequency: str = Frequency.IMMEDIATE.value
    is_enabled: bool = True
    quiet_hours_start: str | None = None
    quiet_hours_end: str | None = None

    @classmethod
    def default(cls, user_id: str, notification_type: str) -> Preference:
        return cls(user_id=user_id, type=notification_type)

    @classmethod
    def from_row(cls, row: NotificationPreference) -> Preference:
        return cls(
            user_id=row.user_id,
            type=row.type,
            channels=frozenset(row.channels or ()),
            frequency=row.frequency,
            is_enabled=row.is_enabled,
            quiet_hours_start=row.quiet_hours_start,
            quiet_hours_end=row.quiet_hours_end,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "channels": sorted(self.channels),
            "frequency": self.frequency,
            "is_enabled": self.is_enabled,
            "quiet_hours_start": self.quiet_hours_start,
            "quiet_hours_end": self.quiet_hours_end,
        }


# ---------------------------------------------------------------------------
# Quiet hours
# ---------------------------------------------------------------------------


def parse_hhmm(value: str | None) -> time | None:
    """'HH:MM' -> time. Raises ValueError on anything else."""
    if value is None:
        return None
    if not isinstance(value, str):
        msg = f"Expected HH:MM, got {value!r}"
        raise ValueError(msg)
    hours, sep, minutes = value.partition(":")
    if not sep or len(hours) != 2 or len(minutes) != 2 or not (hours + minutes).isdigit():
        msg = f"Expected HH:MM, got {value!r}"
        raise ValueError(msg)
    return time(int(hours), int(minutes))


def in_quiet_hours(local: time, start: time, end: time) -> bool:
    """Whether ``local`` falls in [start, end). Wraps midnight when start > end; empty when equal."""
    if start == end:
        return False
    if start < end:
        return start <= local < end
    return local >= start or local < end


def next_occurrence(now_local: datetime, at: time) -> datetime:
    """The first wall-clock ``at`` strictly after ``now_local``, in the same zone."""
    candidate = now_local.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)
    if candidate <= now_local:
        candidate = (now_local + timedelta(days=1)).replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)
    return candidate


def next_digest_time(now_local: datetime, frequency: str) -> datetime | None:
    """Start of the next digest period, or None for immediate delivery."""
    if frequency == Frequency.IMMEDIATE.value:
        return None
    midnight = now_local.replace(hour=0, minute=0, second=0, microsecond=0)
    if frequency == Frequency.DAILY.value:
        return midnight + timedelta(days=1)
    if frequency == Frequency.WEEKLY.value:
        return midnight + timedelta(days=7 - now_local.weekday())
    # monthly
    if midnight.month == 12:
        return midnight.replace(year=midnight.year + 1, month=1, day=1)
    return midnight.replace(month=midnight.month + 1, day=1)


def schedule_for(preference: Preference, now: datetime, tz: ZoneInfo) -> datetime | None:
    """UTC delivery time for a new message, or None to deliver now."""
    local_now = now.astimezone(tz)
    target = next_digest_time(local_now, preference.frequency)
    deliver_at = target or local_now

    start = parse_hhmm(preference.quiet_hours_start)
    end = parse_hhmm(preference.quiet_hours_end)
    if start is not None and end is not None and in_quiet_hours(deliver_at.time(), start, end):
        target = next_occurrence(deliver_at, end)

    return target.astimezone(timezone.utc) if target is not None else None


def _validated_updates(fields: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - _PREFERENCE_FIELDS - {"type"}
    if unknown:
        msg = f"Unknown preference fields: {sorted(unknown)}"
        raise ValueError(msg)

    values: dict[str, Any] = {}
    if "channels" in fields:
        channels = fields["channels"]
        if isinstance(channels, str) or not isinstance(channels, Iterable):
            msg = "channels must be a list"
            raise ValueError(msg)
        values["channels"] = sorted({Channel(channel).value for channel in channels})
    if "frequency" in fields:
        values["frequency"] = Frequency(fields["frequency"]).value
    if "is_enabled" in fields:
        values["is_enabled"] = bool(fields["is_enabled"])
    for key in ("quiet_hours_start", "quiet_hours_end"):
        if key in fields:
            parse_hhmm(fields[key])
            values[key] = fields[key]
    return values


class NotificationScheduler:
    """Decide whether, when and where to notify a user."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: BaseDispatcher | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.tz = ZoneInfo(self.settings.quiet_hours_timezone)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, request: NotificationRequest, db: AsyncSession | None = None) -> str:
        """Store a notification, dispatching it once committed. Returns its id, or "" when suppressed.

        When ``db`` is given the caller owns the transaction, so nothing is
        dispatched here: call ``deliver`` with the returned ids after commit.
        """
        notification_type = NotificationType(request.type).value
        channel = Channel(request.channel).value
        if request.title is None or request.content is None:
            title, content = render(notification_type, request.data)
            title = request.title if request.title is not None else title
            content = request.content if request.content is not None else content
        else:
            title, content = request.title, request.content

        async def _send() -> tuple[str, bool]:
            async with unit_of_work(self.session_factory, db) as session:
                preference = await self._preference(session, request.user_id, notification_type)
                if not preference.is_enabled:
                    logger.debug("Notification %s suppressed for user %s", notification_type, request.user_id)
                    return "", False
                if channel not in preference.channels:
                    logger.debug(
                        "Channel %s not enabled for %s, user %s", channel, notification_type, request.user_id
                    )
                    return "", False

                now = self.clock()
                message = NotificationMessage(
                    user_id=request.user_id,
                    type=notification_type,
                    title=title,
                    content=content,
                    channel=channel,
                    status=NotificationStatus.PENDING.value,
                    scheduled_at=schedule_for(preference, now, self.tz),
                    message_metadata=dict(request.metadata),
                    created_at=now,
                )
                session.add(message)
                await session.flush()
                return message.id, message.scheduled_at is None

        notification_id, immediate = await run_bounded(
            "send_notification", _send, self.settings.db_operation_timeout_seconds
        )
        if immediate and db is None:
            await self.deliver([notification_id])
        return notification_id

    async def send_bulk(self, requests: Iterable[NotificationRequest]) -> list[str]:
        """Send each request in its own transaction; suppressed ones yield ""."""
        return [await self.send(request) for request in requests]

    async def deliver(self, notification_ids: Iterable[str]) -> int:
        """Dispatch committed immediate messages. Returns messages handled.

        A store failure is logged and left to ``deliver_due_notifications``,
        which retries undispatched immediate messages.
        """
        ids = [notification_id for notification_id in notification_ids if notification_id]
        if not ids:
            return 0

        async def _deliver_ids() -> int:
            now = self.clock()
            async with unit_of_work(self.session_factory) as session:
                result = await session.execute(
                    select(NotificationMessage)
                    .where(
                        NotificationMessage.id.in_(ids),
                        NotificationMessage.status == NotificationStatus.PENDING.value,
                        NotificationMessage.scheduled_at.is_(None),
                    )
                    .order_by(NotificationMessage.created_at, NotificationMessage.id)
                )
                messages = list(result.scalars().all())
                for message in messages:
                    await self._deliver(message, now)
                return len(messages)

        try:
            return await run_bounded("deliver_notifications", _deliver_ids, self.settings.db_operation_timeout_seconds)
        except StoreUnavailableError:
            logger.warning("Deferred dispatch of %d notifications to the delivery sweep", len(ids))
            return 0

    async def deliver_due_notifications(self, limit: int = 500) -> int:
        """Dispatch deferred messages whose scheduled time has passed. Returns messages handled.

        Immediate messages still pending after ``UNDISPATCHED_GRACE`` are
        picked up too.
        """

        async def _deliver_due() -> int:
            now = self.clock()
            async with unit_of_work(self.session_factory) as session:
                result = await session.execute(
                    select(NotificationMessage)
                    .where(
                        NotificationMessage.status == NotificationStatus.PENDING.value,
                        or_(
                            NotificationMessage.scheduled_at <= now,
                            and_(
                                NotificationMessage.scheduled_at.is_(None),
                                NotificationMessage.created_at <= now - UNDISPATCHED_GRACE,
                            ),
                        ),
                    )
                    .order_by(NotificationMessage.created_at, NotificationMessage.id)
                    .limit(limit)
                )
                due = list(result.scalars().all())
                for message in due:
                    await self._deliver(message, now)
                return len(due)

        delivered = await run_bounded(
            "deliver_due_notifications", _deliver_due, self.settings.db_operation_timeout_seconds
        )
        if delivered:
            logger.info("Delivered %d deferred notifications", delivered)
        return delivered

    async def _deliver(self, message: NotificationMessage, now: datetime) -> None:
        if self.dispatcher is not None:
            try:
                await self.dispatcher.dispatch(message)
            except Exception:
                logger.warning("Failed to dispatch notification %s", message.id, exc_info=True)
                message.status = NotificationStatus.FAILED.value
                return
        message.status = NotificationStatus.SENT.value
        message.sent_at = now

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    async def get_user_notifications(
        self,
        user_id: str,
        channel: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[NotificationMessage]:
        """User's notifications, newest first."""
        query = select(NotificationMessage).where(NotificationMessage.user_id == user_id)
        if channel:
            query = query.where(NotificationMessage.channel == channel)
        if status:
            query = query.where(NotificationMessage.status == status)
        query = (
            query.order_by(NotificationMessage.created_at.desc(), NotificationMessage.id)
            .limit(limit)
            .offset(offset)
        )

        async def _list() -> list[NotificationMessage]:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return list(result.scalars().all())

        return await run_bounded("get_user_notifications", _list, self.settings.db_operation_timeout_seconds)

    async def mark_as_read(self, notification_id: str, user_id: str | None = None) -> bool:
        """Mark a single notification as read. Returns True if found."""
        return await self.mark_multiple_as_read([notification_id], user_id=user_id) > 0

    async def mark_multiple_as_read(self, notification_ids: list[str], user_id: str | None = None) -> int:
        """Mark notifications as read. Returns the number of rows touched."""
        if not notification_ids:
            return 0

        async def _mark() -> int:
            now = self.clock()
            stmt = (
                update(NotificationMessage)
                .where(NotificationMessage.id.in_(notification_ids))
                .values(
                    status=NotificationStatus.READ.value,
                    read_at=func.coalesce(NotificationMessage.read_at, literal(now, AwareDateTime())),
                )
                .execution_options(synchronize_session=False)
            )
            if user_id is not None:
                stmt = stmt.where(NotificationMessage.user_id == user_id)
            async with unit_of_work(self.session_factory) as session:
                result = await session.execute(stmt)
                return result.rowcount

        return await run_bounded("mark_as_read", _mark, self.settings.db_operation_timeout_seconds)

    async def get_unread_count(self, user_id: str, channel: str | None = None) -> int:
        """Messages not yet read. Best effort: 0 when the store is unavailable."""
        query = (
            select(func.count())
            .select_from(NotificationMessage)
            .where(
                NotificationMessage.user_id == user_id,
                NotificationMessage.status != NotificationStatus.READ.value,
            )
        )
        if channel:
            query = query.where(NotificationMessage.channel == channel)

        async def _count() -> int:
            async with self.session_factory() as session:
                return int(await session.scalar(query) or 0)

        try:
            return await run_bounded("get_unread_count", _count, self.settings.db_operation_timeout_seconds)
        except StoreUnavailableError:
            logger.warning("Unread count unavailable for user %s", user_id, exc_info=True)
            return 0

    async def cleanup_expired_notifications(self, retention_days: int | None = None) -> int:
        """Delete read/delivered messages older than the retention window. 0 on failure."""
        days = self.settings.notification_retention_days if retention_days is None else retention_days
        cutoff = self.clock() - timedelta(days=days)

        async def _cleanup() -> int:
            async with unit_of_work(self.session_factory) as session:
                result = await session.execute(
                    delete(NotificationMessage).where(
                        NotificationMessage.status.in_(
                            [NotificationStatus.READ.value, NotificationStatus.DELIVERED.value]
                        ),
                        NotificationMessage.created_at < cutoff,
                    ).execution_options(synchronize_session=False)
                )
                return result.rowcount

        try:
            deleted = await run_bounded(
                "cleanup_expired_notifications", _cleanup, self.settings.db_operation_timeout_seconds
            )
        except StoreUnavailableError:
            logger.warning("Notification cleanup failed", exc_info=True)
            return 0
        logger.info("Deleted %d expired notifications", deleted)
        return deleted

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    async def get_user_preferences(self, user_id: str) -> list[Preference]:
        """One preference per notification type; stored rows override the defaults."""

        async def _load() -> list[NotificationPreference]:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(NotificationPreference).where(NotificationPreference.user_id == user_id)
                )
                return list(result.scalars().all())

        rows = await run_bounded("get_user_preferences", _load, self.settings.db_operation_timeout_seconds)
        stored = {row.type: Preference.from_row(row) for row in rows}
        return [stored.get(kind.value) or Preference.default(user_id, kind.value) for kind in NotificationType]

    async def update_user_preferences(
        self,
        user_id: str,
        updates: Iterable[Mapping[str, Any]],
    ) -> list[Preference]:
        """Upsert preferences. Each update names its ``type`` plus the fields to change.

        Raises:
            ValueError: Unknown type, channel, frequency or malformed quiet hours.
        """
        parsed = [(NotificationType(item.get("type")).value, _validated_updates(item)) for item in updates]

        async def _upsert() -> None:
            now = self.clock()
            async with unit_of_work(self.session_factory) as session:
                for notification_type, values in parsed:
                    row = await session.get(NotificationPreference, (user_id, notification_type))
                    if row is None:
                        row = NotificationPreference(
                            user_id=user_id,
                            type=notification_type,
                            channels=sorted(DEFAULT_CHANNELS),
                            frequency=Frequency.IMMEDIATE.value,
                            is_enabled=True,
                        )
                        session.add(row)
                    for key, value in values.items():
                        setattr(row, key, value)
                    if (row.quiet_hours_start is None) != (row.quiet_hours_end is None):
                        msg = "quiet_hours_start and quiet_hours_end must be set together"
                        raise ValueError(msg)
                    row.updated_at = now

        await run_bounded("update_user_preferences", _upsert, self.settings.db_operation_timeout_seconds)
        return await self.get_user_preferences(user_id)

    async def _preference(self, session: AsyncSession, user_id: str, notification_type: str) -> Preference:
        row = await session.get(NotificationPreference, (user_id, notification_type))
        if row is None:
            return Preference.default(user_id, notification_type)
        return Preference.from_row(row)
