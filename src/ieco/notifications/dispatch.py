"""Outbound notification delivery.

The scheduler hands each immediate message to a dispatcher and only
records whether the hand-off raised. Delivery receipts are out of scope.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    import redis.asyncio as aioredis

    from ieco.db.models import NotificationMessage

logger = structlog.get_logger()


class BaseDispatcher(ABC):
    """Channel-agnostic delivery interface."""

    @abstractmethod
    async def dispatch(self, message: NotificationMessage) -> None:
        """Hand the message to its channel. Raise if the hand-off failed."""


class RedisPubSubDispatcher(BaseDispatcher):
    """Publish to ``notifications:{channel}:{user_id}`` for per-channel relays."""

    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    async def dispatch(self, message: NotificationMessage) -> None:
        payload = {
            "event": "notification",
            "data": {
                "id": message.id,
                "userId": message.user_id,
                "type": message.type,
                "channel": message.channel,
                "title": message.title,
                "content": message.content,
                "metadata": message.message_metadata or {},
                "timestamp": message.created_at.isoformat() if message.created_at else None,
            },
        }
        receivers = await self.redis.publish(
            f"notifications:{message.channel}:{message.user_id}",
            json.dumps(payload),
        )
        logger.debug("notification_published", notification_id=message.id, receivers=receivers)
