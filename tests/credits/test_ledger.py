"""Credit ledger tests — FIFO spending, expiry, balance cache, concurrency."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from ieco.credits.ledger import CreditKind, CreditSource
from ieco.db.models import CreditBalance, CreditRecord
from ieco.errors import StoreUnavailableError


async def _records(session_factory, user_id: str, kind: str | None = None) -> list[CreditRecord]:
    query = select(CreditRecord).where(CreditRecord.user_id == user_id)
    if kind:
        query = query.where(CreditRecord.kind == kind)
    async with session_factory() as session:
        result = await session.execute(query.order_by(CreditRecord.id))
        return list(result.scalars().all())


async def _assert_balanced(ledger, session_factory, user_id: str) -> None:
    """available == earned - used - expired, and the cache agrees."""
    async with session_factory() as session:
        total = await session.scalar(
            select(func.coalesce(func.sum(CreditRecord.amount), 0)).where(CreditRecord.user_id == user_id)
        )
    balance = await ledger.get_user_balance(user_id)
    assert balance.available_credits == total
    assert balance.available_credits == balance.total_earned - balance.total_used - balance.total_expired
    assert balance.available_credits >= 0
    assert await ledger.get_available_credits(user_id) == total


class TestAddCredits:
    """Test EARNED records."""

    @pytest.mark.asyncio
    async def test_add_credits(self, ledger, session_factory, clock):
        record = await ledger.add_credits("u1", 10, CreditSource.INVITE_REWARD, source_id="evt-1", description="Invite")
        assert record.kind == CreditKind.EARNED.value
        assert record.amount == 10
        assert record.expires_at == clock() + timedelta(days=90)
        await _assert_balanced(ledger, session_factory, "u1")

    @pytest.mark.asyncio
    async def test_explicit_expiry(self, ledger, clock):
        expires_at = clock() + timedelta(days=7)
        record = await ledger.add_credits("u1", 5, "purchase", expires_at=expires_at)
        assert record.expires_at == expires_at

    @pytest.mark.asyncio
    async def test_idempotency_key(self, ledger, session_factory):
        first = await ledger.add_credits("u1", 10, "invite_reward", idempotency_key="reward:evt-1:r1:u1")
        second = await ledger.add_credits("u1", 10, "invite_reward", idempotency_key="reward:evt-1:r1:u1")
        assert first.id == second.id
        assert len(await _records(session_factory, "u1")) == 1
        assert await ledger.get_available_credits("u1") == 10

    @pytest.mark.asyncio
    async def test_metadata_stored(self, ledger, session_factory):
        await ledger.add_credits("u1", 3, "admin_grant", metadata={"ticket": "SUP-1"})
        (record,) = await _records(session_factory, "u1")
        assert record.record_metadata == {"ticket": "SUP-1"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("user_id", "amount", "source"),
        [("", 10, "invite_reward"), ("u1", 0, "invite_reward"), ("u1", -5, "invite_reward"), ("u1", 5, "lottery")],
    )
    async def test_rejects_bad_input(self, ledger, session_factory, user_id, amount, source):
        with pytest.raises(ValueError):
            await ledger.add_credits(user_id, amount, source)
        assert await _records(session_factory, "u1") == []


class TestUseCredits:
    """Test FIFO consumption."""

    @pytest.mark.asyncio
    async def test_insufficient_then_exact(self, ledger, session_factory):
        await ledger.add_credits("u1", 10, "invite_reward")

        assert await ledger.use_credits("u1", 15, "course") is False
        assert await ledger.get_available_credits("u1") == 10
        assert await _records(session_factory, "u1", CreditKind.USED.value) == []

        assert await ledger.use_credits("u1", 10, "course") is True
        assert await ledger.get_available_credits("u1") == 0
        await _assert_balanced(ledger, session_factory, "u1")

    @pytest.mark.asyncio
    async def test_oldest_first_with_partial_consumption(self, ledger, session_factory, clock):
        first = await ledger.add_credits("u1", 5, "invite_reward", description="first")
        clock.advance(minutes=1)
        second = await ledger.add_credits("u1", 10, "milestone_reward", description="second")

        assert await ledger.use_credits("u1", 8, "tutoring") is True

        used = await _records(session_factory, "u1", CreditKind.USED.value)
        assert [(r.source_id, r.amount, r.source) for r in used] == [
            (str(first.id), -5, "invite_reward"),
            (str(second.id), -3, "milestone_reward"),
        ]
        assert all(r.description == "Used: tutoring" for r in used)

        earned = {r.id: r for r in await _records(session_factory, "u1", CreditKind.EARNED.value)}
        assert earned[first.id].used_at is not None
        assert earned[second.id].used_at is None

        assert await ledger.use_credits("u1", 7, "tutoring") is True
        used = await _records(session_factory, "u1", CreditKind.USED.value)
        assert [(r.source_id, r.amount) for r in used][-1] == (str(second.id), -7)
        await _assert_balanced(ledger, session_factory, "u1")

    @pytest.mark.asyncio
    async def test_ties_broken_by_id(self, ledger, session_factory):
        a = await ledger.add_credits("u1", 2, "invite_reward")
        b = await ledger.add_credits("u1", 2, "invite_reward")
        await ledger.use_credits("u1", 3, "x")
        used = await _records(session_factory, "u1", CreditKind.USED.value)
        assert [r.source_id for r in used] == [str(a.id), str(b.id)]

    @pytest.mark.asyncio
    async def test_lapsed_credits_are_not_spendable(self, ledger, session_factory, clock):
        await ledger.add_credits("u1", 10, "invite_reward", expires_at=clock() + timedelta(days=1))
        await ledger.add_credits("u1", 4, "invite_reward")
        clock.advance(days=2)

        assert await ledger.use_credits("u1", 10, "course") is False
        assert await ledger.use_credits("u1", 4, "course") is True

        # The lapsed record is expired inline by the successful spend
        expired = await _records(session_factory, "u1", CreditKind.EXPIRED.value)
        assert [r.amount for r in expired] == [-10]
        await _assert_balanced(ledger, session_factory, "u1")

    @pytest.mark.asyncio
    async def test_rejects_non_positive(self, ledger):
        with pytest.raises(ValueError):
            await ledger.use_credits("u1", 0, "x")

    @pytest.mark.asyncio
    async def test_concurrent_spends_never_overdraw(self, ledger, session_factory):
        await ledger.add_credits("u1", 10, "invite_reward")

        results = await asyncio.gather(*(ledger.use_credits("u1", 4, f"spend-{i}") for i in range(5)))

        assert sum(results) == 2
        assert await ledger.get_available_credits("u1") == 2
        await _assert_balanced(ledger, session_factory, "u1")


class TestExpireCredits:
    """Test the expiry sweep."""

    @pytest.mark.asyncio
    async def test_expires_remaining_amount(self, ledger, session_factory, clock):
        record = await ledger.add_credits("u1", 10, "invite_reward", description="Invite", expires_at=clock() + timedelta(days=1))
        await ledger.use_credits("u1", 4, "course")
        clock.advance(days=1)

        assert await ledger.expire_credits() == 1

        (expired,) = await _records(session_factory, "u1", CreditKind.EXPIRED.value)
        assert expired.amount == -6
        assert expired.source_id == str(record.id)
        assert expired.description == "Expired: Invite"
        await _assert_balanced(ledger, session_factory, "u1")
        balance = await ledger.get_user_balance("u1")
        assert (balance.total_earned, balance.total_used, balance.total_expired) == (10, 4, 6)

    @pytest.mark.asyncio
    async def test_idempotent(self, ledger, session_factory, clock):
        await ledger.add_credits("u1", 10, "invite_reward", expires_at=clock() + timedelta(hours=1))
        await ledger.add_credits("u2", 3, "invite_reward", expires_at=clock() + timedelta(hours=1))
        clock.advance(hours=2)

        assert await ledger.expire_credits() == 2
        assert await ledger.expire_credits() == 0
        assert len(await _records(session_factory, "u1", CreditKind.EXPIRED.value)) == 1
        assert await ledger.get_available_credits("u1") == 0
        assert await ledger.get_available_credits("u2") == 0

    @pytest.mark.asyncio
    async def test_fully_used_records_are_not_expired(self, ledger, session_factory, clock):
        await ledger.add_credits("u1", 5, "invite_reward", expires_at=clock() + timedelta(hours=1))
        await ledger.use_credits("u1", 5, "course")
        clock.advance(hours=2)

        assert await ledger.expire_credits() == 0
        assert await _records(session_factory, "u1", CreditKind.EXPIRED.value) == []

    @pytest.mark.asyncio
    async def test_unexpired_untouched(self, ledger, clock):
        await ledger.add_credits("u1", 5, "invite_reward")
        clock.advance(days=89)
        assert await ledger.expire_credits() == 0
        assert await ledger.get_available_credits("u1") == 5


class TestStoreFailures:
    """A store failure mid-operation leaves the ledger exactly as it was."""

    @staticmethod
    def _fail_before_commit(ledger, monkeypatch) -> None:
        monkeypatch.setattr(ledger, "_refresh_balance", AsyncMock(side_effect=SQLAlchemyError("disk I/O error")))

    @staticmethod
    async def _assert_untouched(session_factory, user_id: str) -> None:
        assert await _records(session_factory, user_id, CreditKind.USED.value) == []
        assert await _records(session_factory, user_id, CreditKind.EXPIRED.value) == []
        assert all(r.used_at is None for r in await _records(session_factory, user_id, CreditKind.EARNED.value))

    @pytest.mark.asyncio
    async def test_use_rolls_back_spend_and_inline_expiry(self, ledger, session_factory, clock, monkeypatch):
        await ledger.add_credits("u1", 5, "invite_reward", expires_at=clock() + timedelta(days=1))
        await ledger.add_credits("u1", 10, "purchase")
        clock.advance(days=2)

        self._fail_before_commit(ledger, monkeypatch)
        with pytest.raises(StoreUnavailableError):
            await ledger.use_credits("u1", 10, "course")
        await self._assert_untouched(session_factory, "u1")

        monkeypatch.undo()
        assert await ledger.use_credits("u1", 10, "course") is True
        assert len(await _records(session_factory, "u1", CreditKind.EXPIRED.value)) == 1
        await _assert_balanced(ledger, session_factory, "u1")

    @pytest.mark.asyncio
    async def test_expiry_sweep_rolls_back_failed_user(self, ledger, session_factory, clock, monkeypatch):
        await ledger.add_credits("u1", 5, "invite_reward", expires_at=clock() + timedelta(days=1))
        clock.advance(days=2)

        self._fail_before_commit(ledger, monkeypatch)
        assert await ledger.expire_credits() == 0
        await self._assert_untouched(session_factory, "u1")

        monkeypatch.undo()
        assert await ledger.expire_credits() == 1
        await _assert_balanced(ledger, session_factory, "u1")


class TestBalance:
    """Test the cached balance."""

    @pytest.mark.asyncio
    async def test_cold_cache_is_rebuilt(self, ledger, session_factory, clock):
        async with session_factory() as session, session.begin():
            session.add(
                CreditRecord(
                    user_id="u9",
                    amount=12,
                    kind=CreditKind.EARNED.value,
                    source="purchase",
                    source_id="",
                    description="",
                    created_at=clock(),
                    expires_at=clock() + timedelta(days=10),
                    record_metadata={},
                )
            )

        balance = await ledger.get_user_balance("u9")
        assert balance.available_credits == 12
        assert balance.expiring_credits == 12

        async with session_factory() as session:
            assert await session.get(CreditBalance, "u9") is not None

    @pytest.mark.asyncio
    async def test_unknown_user(self, ledger):
        balance = await ledger.get_user_balance("nobody")
        assert balance.available_credits == 0
        assert await ledger.get_available_credits("nobody") == 0

    @pytest.mark.asyncio
    async def test_expiring_window(self, ledger, clock):
        await ledger.add_credits("u1", 5, "invite_reward", expires_at=clock() + timedelta(days=10))
        await ledger.add_credits("u1", 7, "invite_reward", expires_at=clock() + timedelta(days=60))
        balance = await ledger.get_user_balance("u1")
        assert balance.expiring_credits == 5
        assert balance.available_credits == 12


class TestReads:
    """Test expiring, stats and history reads."""

    @pytest.mark.asyncio
    async def test_get_expiring_credits(self, ledger, clock):
        soon = await ledger.add_credits("u1", 5, "invite_reward", expires_at=clock() + timedelta(days=3))
        await ledger.add_credits("u1", 5, "invite_reward", expires_at=clock() + timedelta(days=40))

        assert [r.id for r in await ledger.get_expiring_credits("u1", days=7)] == [soon.id]
        assert len(await ledger.get_expiring_credits("u1")) == 1
        assert len(await ledger.get_expiring_credits("u1", days=45)) == 2

    @pytest.mark.asyncio
    async def test_credit_stats(self, ledger, clock):
        await ledger.add_credits("u1", 10, "invite_reward")
        await ledger.add_credits("u1", 20, "milestone_reward")
        await ledger.add_credits("u1", 5, "invite_reward")
        clock.advance(days=5)
        await ledger.use_credits("u1", 12, "course")

        stats = await ledger.get_credit_stats("u1")
        assert (stats.total_earned, stats.total_used, stats.total_expired) == (35, 12, 0)
        assert stats.average_daily == 7.0
        assert [(s.source, s.amount) for s in stats.top_sources] == [
            ("milestone_reward", 20),
            ("invite_reward", 15),
        ]

    @pytest.mark.asyncio
    async def test_credit_stats_same_day(self, ledger):
        await ledger.add_credits("u1", 9, "invite_reward")
        stats = await ledger.get_credit_stats("u1")
        assert stats.average_daily == 9.0

    @pytest.mark.asyncio
    async def test_history_newest_first(self, ledger, clock):
        await ledger.add_credits("u1", 10, "invite_reward")
        clock.advance(minutes=5)
        await ledger.use_credits("u1", 3, "course")

        history = await ledger.get_credit_history("u1")
        assert [r.kind for r in history] == [CreditKind.USED.value, CreditKind.EARNED.value]
        assert len(await ledger.get_credit_history("u1", limit=1)) == 1
