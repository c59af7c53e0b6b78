"""Worker job tests — payload parsing and cron job delegation."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from ieco.workers.settings import WorkerSettings
from ieco.workers.sweeper import (
    cleanup_notifications,
    deliver_due_notifications,
    event_from_job,
    expire_credits,
)


class TestEventFromJob:
    """Test queued payload -> InvitationEvent."""

    def test_full_payload(self):
        event = event_from_job(
            {
                "event_id": "evt-1",
                "type": "user_registered",
                "user_id": "inviter-1",
                "payload": {"invitee_id": "u2"},
                "occurred_at": "2026-03-02T12:00:00+00:00",
            }
        )
        assert event.event_id == "evt-1"
        assert event.payload == {"invitee_id": "u2"}
        assert event.occurred_at == datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def test_naive_timestamp_is_utc(self):
        event = event_from_job(
            {"event_id": "e", "type": "user_activated", "user_id": "u", "occurred_at": "2026-03-02T12:00:00"}
        )
        assert event.occurred_at.tzinfo is timezone.utc

    def test_defaults(self):
        event = event_from_job({"event_id": "e", "type": "user_activated", "user_id": "u"})
        assert event.payload == {}
        assert event.occurred_at is None

    def test_missing_fields(self):
        with pytest.raises(ValueError, match="user_id"):
            event_from_job({"event_id": "e", "type": "user_registered"})


class TestCronJobs:
    """Test that cron jobs delegate to the services in the worker context."""

    @pytest.mark.asyncio
    async def test_expire_credits(self):
        services = MagicMock()
        services.ledger.expire_credits = AsyncMock(return_value=3)
        assert await expire_credits({"services": services}) == 3

    @pytest.mark.asyncio
    async def test_cleanup_notifications(self):
        services = MagicMock()
        services.scheduler.cleanup_expired_notifications = AsyncMock(return_value=7)
        assert await cleanup_notifications({"services": services}) == 7

    @pytest.mark.asyncio
    async def test_deliver_due(self):
        services = MagicMock()
        services.scheduler.deliver_due_notifications = AsyncMock(return_value=2)
        assert await deliver_due_notifications({"services": services}) == 2

    def test_worker_settings(self):
        coroutines = {job.coroutine for job in WorkerSettings.cron_jobs}
        assert coroutines == {expire_credits, cleanup_notifications, deliver_due_notifications}
        assert WorkerSettings.job_timeout == 300
