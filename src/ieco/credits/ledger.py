"""Append-only credit ledger with FIFO consumption and expiry.

Every mutation runs under the per-user lock, inside one transaction that
also locks the user's credit_balances row (SELECT ... FOR UPDATE) and
rewrites it from the ledger before commit. A USED or EXPIRED record points
at the EARNED record it drew from via ``source_id``, so the remaining
amount of any EARNED record is its amount plus the sum of its debits.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from sqlalchemy import func, select

from ieco.config import Settings, get_settings
from ieco.credits.locks import UserLockProvider
from ieco.database import run_bounded, unit_of_work
from ieco.db.models import CreditBalance, CreditRecord
from ieco.errors import LedgerIntegrityError, StoreUnavailableError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger()

T = TypeVar("T")

TOP_SOURCES_LIMIT = 5


class CreditKind(Enum):
    EARNED = "earned"
    USED = "used"
    EXPIRED = "expired"


class CreditSource(Enum):
    INVITE_REWARD = "invite_reward"
    MILESTONE_REWARD = "milestone_reward"
    ACTIVITY_REWARD = "activity_reward"
    PURCHASE = "purchase"
    ADMIN_GRANT = "admin_grant"
    SYSTEM_REFUND = "system_refund"


@dataclass(frozen=True)
class SourceTotal:
    source: str
    amount: int


@dataclass(frozen=True)
class CreditStats:
    total_earned: int
    total_used: int
    total_expired: int
    average_daily: float
    top_sources: list[SourceTotal] = field(default_factory=list)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_lapsed(record: CreditRecord, now: datetime) -> bool:
    return record.expires_at is not None and record.expires_at <= now


class CreditLedger:
    """Earn, spend and expire credits for users."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: UserLockProvider,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.locks = locks
        self.settings = settings or get_settings()
        self.clock = clock or utcnow

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add_credits(
        self,
        user_id: str,
        amount: int,
        source: CreditSource | str,
        source_id: str = "",
        description: str = "",
        expires_at: datetime | None = None,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
        db: AsyncSession | None = None,
    ) -> CreditRecord:
        """Append an EARNED record. A repeated idempotency_key returns the original record."""
        if not user_id:
            msg = "user_id is required"
            raise ValueError(msg)
        if amount <= 0:
            msg = "Credit amount must be positive"
            raise ValueError(msg)
        source_value = CreditSource(source).value

        async def _add() -> CreditRecord:
            async with self.locks.hold(user_id), unit_of_work(self.session_factory, db) as session:
                if idempotency_key:
                    existing = await session.execute(
                        select(CreditRecord).where(CreditRecord.idempotency_key == idempotency_key)
                    )
                    record = existing.scalar_one_or_none()
                    if record is not None:
                        logger.info("credits_duplicate_grant", user_id=user_id, idempotency_key=idempotency_key)
                        return record

                now = self.clock()
                await self._lock_balance_row(session, user_id, now)
                record = CreditRecord(
                    user_id=user_id,
                    amount=amount,
                    kind=CreditKind.EARNED.value,
                    source=source_value,
                    source_id=source_id,
                    description=description,
                    created_at=now,
                    expires_at=expires_at or now + timedelta(days=self.settings.credit_expiry_days),
                    idempotency_key=idempotency_key,
                    record_metadata=metadata or {},
                )
                session.add(record)
                await self._refresh_balance(session, user_id, now)

            logger.info("credits_added", user_id=user_id, amount=amount, source=source_value, source_id=source_id)
            return record

        return await self._run("add_credits", _add)

    async def use_credits(
        self,
        user_id: str,
        amount: int,
        purpose: str,
        metadata: dict[str, Any] | None = None,
        db: AsyncSession | None = None,
    ) -> bool:
        """Spend credits oldest-first. Returns False, writing nothing, when the balance is short."""
        if amount <= 0:
            msg = "Credit amount must be positive"
            raise ValueError(msg)

        async def _use() -> bool:
            async with self.locks.hold(user_id), unit_of_work(self.session_factory, db) as session:
                now = self.clock()
                await self._lock_balance_row(session, user_id, now)

                open_records = await self._open_earned(session, user_id)
                remaining = await self._remaining(session, open_records)
                spendable = [
                    (record, remaining[record.id])
                    for record in open_records
                    if not _is_lapsed(record, now) and remaining[record.id] > 0
                ]
                available = sum(left for _, left in spendable)
                if available < amount:
                    logger.info("credits_insufficient", user_id=user_id, requested=amount, available=available)
                    return False

                lapsed = [record for record in open_records if _is_lapsed(record, now)]
                await self._write_expiry(session, lapsed, remaining, now)

                outstanding = amount
                for record, left in spendable:
                    if outstanding == 0:
                        break
                    take = min(left, outstanding)
                    session.add(
                        CreditRecord(
                            user_id=user_id,
                            amount=-take,
                            kind=CreditKind.USED.value,
                            source=record.source,
                            source_id=str(record.id),
                            description=f"Used: {purpose}",
                            created_at=now,
                            record_metadata=metadata or {},
                        )
                    )
                    if take == left:
                        record.used_at = now
                    outstanding -= take

                await self._refresh_balance(session, user_id, now)

            logger.info("credits_used", user_id=user_id, amount=amount, purpose=purpose)
            return True

        return await self._run("use_credits", _use)

    async def expire_credits(self) -> int:
        """Expire every lapsed EARNED record. Returns the number of EXPIRED records written."""
        now = self.clock()

        async def _lapsed_users() -> list[str]:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(CreditRecord.user_id)
                    .where(
                        CreditRecord.kind == CreditKind.EARNED.value,
                        CreditRecord.used_at.is_(None),
                        CreditRecord.expires_at <= now,
                    )
                    .distinct()
                )
                return list(result.scalars().all())

        user_ids = await self._run("expire_credits", _lapsed_users)

        expired = 0
        for user_id in user_ids:
            try:
                expired += await self._run("expire_credits", lambda uid=user_id: self._expire_user(uid, now))
            except StoreUnavailableError:
                logger.error("credits_expiry_failed", user_id=user_id, exc_info=True)

        if expired:
            logger.info("credits_expired", records=expired, users=len(user_ids))
        return expired

    async def _expire_user(self, user_id: str, now: datetime) -> int:
        async with self.locks.hold(user_id), unit_of_work(self.session_factory) as session:
            await self._lock_balance_row(session, user_id, now)
            result = await session.execute(
                select(CreditRecord)
                .where(
                    CreditRecord.user_id == user_id,
                    CreditRecord.kind == CreditKind.EARNED.value,
                    CreditRecord.used_at.is_(None),
                    CreditRecord.expires_at <= now,
                )
                .order_by(CreditRecord.created_at, CreditRecord.id)
            )
            lapsed = list(result.scalars().all())
            remaining = await self._remaining(session, lapsed)
            written = await self._write_expiry(session, lapsed, remaining, now)
            await self._refresh_balance(session, user_id, now)
            return written

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_available_credits(self, user_id: str) -> int:
        """earned - used - expired, straight from the ledger."""

        async def _available() -> int:
            async with self.session_factory() as session:
                earned, used, expired = await self._totals(session, user_id)
                return earned - used - expired

        return await self._run("get_available_credits", _available)

    async def get_user_balance(self, user_id: str) -> CreditBalance:
        """Cached balance; recomputed from the ledger and written back on a miss."""

        async def _cached() -> CreditBalance | None:
            async with self.session_factory() as session:
                return await session.get(CreditBalance, user_id)

        balance = await self._run("get_user_balance", _cached)
        if balance is not None:
            return balance

        async def _rebuild() -> CreditBalance:
            async with self.locks.hold(user_id), unit_of_work(self.session_factory) as session:
                now = self.clock()
                await self._lock_balance_row(session, user_id, now)
                return await self._refresh_balance(session, user_id, now)

        return await self._run("get_user_balance", _rebuild)

    async def get_expiring_credits(self, user_id: str, days: int | None = None) -> list[CreditRecord]:
        """Undepleted EARNED records whose expiry falls within the next ``days``."""
        window = self.settings.expiring_window_days if days is None else days

        async def _expiring() -> list[CreditRecord]:
            now = self.clock()
            async with self.session_factory() as session:
                result = await session.execute(
                    select(CreditRecord)
                    .where(
                        CreditRecord.user_id == user_id,
                        CreditRecord.kind == CreditKind.EARNED.value,
                        CreditRecord.used_at.is_(None),
                        CreditRecord.expires_at >= now,
                        CreditRecord.expires_at <= now + timedelta(days=window),
                    )
                    .order_by(CreditRecord.expires_at, CreditRecord.id)
                )
                return list(result.scalars().all())

        return await self._run("get_expiring_credits", _expiring)

    async def get_credit_stats(self, user_id: str) -> CreditStats:
        async def _stats() -> CreditStats:
            async with self.session_factory() as session:
                earned, used, expired = await self._totals(session, user_id)

                first_earned = await session.scalar(
                    select(func.min(CreditRecord.created_at)).where(
                        CreditRecord.user_id == user_id,
                        CreditRecord.kind == CreditKind.EARNED.value,
                    )
                )
                days = 0
                if first_earned is not None:
                    if first_earned.tzinfo is None:
                        first_earned = first_earned.replace(tzinfo=timezone.utc)
                    days = (self.clock() - first_earned).days

                total = func.sum(CreditRecord.amount)
                result = await session.execute(
                    select(CreditRecord.source, total)
                    .where(
                        CreditRecord.user_id == user_id,
                        CreditRecord.kind == CreditKind.EARNED.value,
                    )
                    .group_by(CreditRecord.source)
                    .order_by(total.desc(), CreditRecord.source)
                    .limit(TOP_SOURCES_LIMIT)
                )
                top_sources = [SourceTotal(source=row[0], amount=int(row[1])) for row in result.all()]

            return CreditStats(
                total_earned=earned,
                total_used=used,
                total_expired=expired,
                average_daily=round(earned / max(1, days), 2),
                top_sources=top_sources,
            )

        return await self._run("get_credit_stats", _stats)

    async def get_credit_history(self, user_id: str, limit: int = 50) -> list[CreditRecord]:
        """Ledger entries for a user, newest first."""

        async def _history() -> list[CreditRecord]:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(CreditRecord)
                    .where(CreditRecord.user_id == user_id)
                    .order_by(CreditRecord.created_at.desc(), CreditRecord.id.desc())
                    .limit(limit)
                )
                return list(result.scalars().all())

        return await self._run("get_credit_history", _history)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Bound a store operation by the configured timeout."""
        return await run_bounded(operation, fn, self.settings.db_operation_timeout_seconds)

    async def _lock_balance_row(self, session: AsyncSession, user_id: str, now: datetime) -> CreditBalance:
        """Get or create the balance row, locked for the rest of the transaction."""
        result = await session.execute(
            select(CreditBalance).where(CreditBalance.user_id == user_id).with_for_update()
        )
        balance = result.scalar_one_or_none()
        if balance is None:
            balance = CreditBalance(
                user_id=user_id,
                total_earned=0,
                total_used=0,
                total_expired=0,
                available_credits=0,
                expiring_credits=0,
                last_updated=now,
            )
            session.add(balance)
            await session.flush()
        return balance

    async def _open_earned(self, session: AsyncSession, user_id: str) -> list[CreditRecord]:
        """EARNED records not yet depleted, oldest first."""
        result = await session.execute(
            select(CreditRecord)
            .where(
                CreditRecord.user_id == user_id,
                CreditRecord.kind == CreditKind.EARNED.value,
                CreditRecord.used_at.is_(None),
            )
            .order_by(CreditRecord.created_at, CreditRecord.id)
        )
        return list(result.scalars().all())

    async def _remaining(self, session: AsyncSession, records: list[CreditRecord]) -> dict[int, int]:
        """Remaining amount per EARNED record id."""
        if not records:
            return {}
        result = await session.execute(
            select(CreditRecord.source_id, func.sum(CreditRecord.amount))
            .where(
                CreditRecord.user_id == records[0].user_id,
                CreditRecord.kind.in_([CreditKind.USED.value, CreditKind.EXPIRED.value]),
                CreditRecord.source_id.in_([str(record.id) for record in records]),
            )
            .group_by(CreditRecord.source_id)
        )
        debits = {row[0]: int(row[1]) for row in result.all()}
        return {record.id: record.amount + debits.get(str(record.id), 0) for record in records}

    async def _write_expiry(
        self,
        session: AsyncSession,
        lapsed: list[CreditRecord],
        remaining: dict[int, int],
        now: datetime,
    ) -> int:
        """Write EXPIRED records for lapsed EARNED records and mark them depleted."""
        if not lapsed:
            return 0

        result = await session.execute(
            select(CreditRecord.source_id).where(
                CreditRecord.kind == CreditKind.EXPIRED.value,
                CreditRecord.source_id.in_([str(record.id) for record in lapsed]),
            )
        )
        already_expired = set(result.scalars().all())

        written = 0
        for record in lapsed:
            if str(record.id) in already_expired:
                logger.error("credits_expiry_duplicate", user_id=record.user_id, record_id=record.id)
                continue
            left = remaining.get(record.id, record.amount)
            if left > 0:
                session.add(
                    CreditRecord(
                        user_id=record.user_id,
                        amount=-left,
                        kind=CreditKind.EXPIRED.value,
                        source=record.source,
                        source_id=str(record.id),
                        description=f"Expired: {record.description}" if record.description else "Expired",
                        created_at=now,
                        record_metadata={},
                    )
                )
                written += 1
            record.used_at = now
        return written

    async def _totals(self, session: AsyncSession, user_id: str) -> tuple[int, int, int]:
        """(earned, used, expired) magnitudes for a user."""
        result = await session.execute(
            select(CreditRecord.kind, func.coalesce(func.sum(CreditRecord.amount), 0))
            .where(CreditRecord.user_id == user_id)
            .group_by(CreditRecord.kind)
        )
        sums = {row[0]: int(row[1]) for row in result.all()}
        return (
            sums.get(CreditKind.EARNED.value, 0),
            -sums.get(CreditKind.USED.value, 0),
            -sums.get(CreditKind.EXPIRED.value, 0),
        )

    async def _refresh_balance(self, session: AsyncSession, user_id: str, now: datetime) -> CreditBalance:
        """Recompute the cached balance from the ledger and check the accounting invariant."""
        await session.flush()
        earned, used, expired = await self._totals(session, user_id)
        available = earned - used - expired

        open_records = await self._open_earned(session, user_id)
        remaining = await self._remaining(session, open_records)
        outstanding = sum(remaining.values())
        horizon = now + timedelta(days=self.settings.expiring_window_days)
        expiring = sum(
            remaining[record.id]
            for record in open_records
            if record.expires_at is not None and now <= record.expires_at <= horizon
        )

        if available < 0 or available != outstanding or any(left < 0 for left in remaining.values()):
            logger.critical(
                "credit_ledger_integrity_violation",
                user_id=user_id,
                total_earned=earned,
                total_used=used,
                total_expired=expired,
                outstanding=outstanding,
            )
            msg = f"Ledger invariant broken for user {user_id}"
            raise LedgerIntegrityError(msg)

        balance = await self._lock_balance_row(session, user_id, now)
        balance.total_earned = earned
        balance.total_used = used
        balance.total_expired = expired
        balance.available_credits = available
        balance.expiring_credits = expiring
        balance.last_updated = now
        await session.flush()
        return balance
