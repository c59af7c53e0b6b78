"""arq worker settings.

Run with: arq ieco.workers.settings.WorkerSettings
"""

from __future__ import annotations

from arq import cron
from arq.connections import RedisSettings

from ieco.config import get_settings
from ieco.workers.sweeper import (
    cleanup_notifications,
    deliver_due_notifications,
    expire_credits,
    process_invitation_event,
    shutdown,
    startup,
)


class WorkerSettings:
    """Event intake queue plus the ledger and notification maintenance crons."""

    functions = [process_invitation_event]
    cron_jobs = [
        cron(expire_credits, minute=5),  # hourly at :05
        cron(cleanup_notifications, hour=3, minute=30),  # daily 03:30 UTC
        cron(deliver_due_notifications, minute=set(range(0, 60, 5))),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
    max_jobs = 10
    job_timeout = 300
