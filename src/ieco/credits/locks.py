"""Per-user mutual exclusion for credit mutations."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING

import structlog
from redis.exceptions import LockError, RedisError

from ieco.errors import StoreUnavailableError

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = structlog.get_logger()


class UserLockProvider(ABC):
    """Serializes ledger mutations for a single user."""

    @abstractmethod
    def hold(self, user_id: str) -> AbstractAsyncContextManager[None]:
        """Async context manager held for the duration of one mutation."""


class LocalUserLockProvider(UserLockProvider):
    """asyncio locks keyed by user. Single process only."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            yield


class RedisUserLockProvider(UserLockProvider):
    """redis-py distributed lock shared by every service instance."""

    def __init__(self, redis: aioredis.Redis, timeout: float = 10.0, blocking_timeout: float = 10.0) -> None:
        self.redis = redis
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self.redis.lock(
            f"credits:lock:{user_id}",
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as exc:
            raise StoreUnavailableError(f"Credit lock unavailable for user {user_id}") from exc
        if not acquired:
            raise StoreUnavailableError(f"Timed out waiting for credit lock for user {user_id}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Lock outlived its timeout; the transaction already committed or rolled back
                logger.warning("credit_lock_expired", user_id=user_id)
