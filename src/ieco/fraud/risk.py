"""Risk scoring for reward grants.

Combines the fingerprint suspicion signal with shared Redis counters
(distinct users per device, events per IP) so every API and worker
instance sees the same history.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
from redis.exceptions import RedisError

from ieco.config import Settings, get_settings
from ieco.fraud.fingerprint import DeviceFingerprint, is_suspicious

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = structlog.get_logger()

SUSPICIOUS_FINGERPRINT_SCORE = 0.6
DEVICE_REUSE_HIGH_SCORE = 0.5
DEVICE_REUSE_LOW_SCORE = 0.25
IP_VELOCITY_HIGH_SCORE = 0.5
IP_VELOCITY_LOW_SCORE = 0.25


@dataclass(frozen=True)
class RiskContext:
    """The fraud gate's verdict for one event."""

    is_suspicious: bool = False
    score: float = 0.0
    reasons: list[str] = field(default_factory=list)

    @classmethod
    def clean(cls) -> RiskContext:
        return cls()


class RiskAssessor:
    """Score a fingerprint plus device/IP history into a RiskContext."""

    def __init__(self, redis: aioredis.Redis | None = None, settings: Settings | None = None) -> None:
        self.redis = redis
        self.settings = settings or get_settings()

    async def assess(
        self,
        fingerprint: DeviceFingerprint | None,
        ip: str | None = None,
        user_id: str | None = None,
    ) -> RiskContext:
        score = 0.0
        reasons: list[str] = []

        if fingerprint is not None:
            suspicion = is_suspicious(fingerprint)
            if suspicion.is_suspicious:
                score += SUSPICIOUS_FINGERPRINT_SCORE
                reasons.extend(f"fingerprint:{reason}" for reason in suspicion.reasons)

            if user_id and fingerprint.hash:
                device_users = await self._record_device_user(fingerprint.hash, user_id)
                limit = self.settings.device_reuse_limit
                if device_users >= limit:
                    score += DEVICE_REUSE_HIGH_SCORE
                    reasons.append(f"device_reuse:{device_users}")
                elif device_users >= max(2, limit - 1):
                    score += DEVICE_REUSE_LOW_SCORE
                    reasons.append(f"device_reuse:{device_users}")

        if ip:
            ip_count = await self._record_ip(ip)
            limit = self.settings.ip_velocity_limit
            if ip_count >= limit:
                score += IP_VELOCITY_HIGH_SCORE
                reasons.append(f"ip_velocity:{ip_count}")
            elif ip_count >= max(2, limit - 2):
                score += IP_VELOCITY_LOW_SCORE
                reasons.append(f"ip_velocity:{ip_count}")

        score = round(min(score, 1.0), 4)
        verdict = RiskContext(
            is_suspicious=score >= self.settings.risk_score_threshold,
            score=score,
            reasons=reasons,
        )
        if verdict.is_suspicious:
            logger.info("risk_flagged", user_id=user_id, ip=ip, score=score, reasons=reasons)
        return verdict

    async def _record_device_user(self, device_hash: str, user_id: str) -> int:
        """Add the user to the device's set and return its cardinality."""
        if self.redis is None:
            return 0
        key = f"fraud:device:{device_hash}"
        try:
            pipe = self.redis.pipeline()
            pipe.sadd(key, user_id)
            pipe.expire(key, self.settings.fraud_window_seconds)
            pipe.scard(key)
            results: list[Any] = await pipe.execute()
        except RedisError:
            logger.warning("risk_device_counter_unavailable", device=device_hash[:12], exc_info=True)
            return 0
        return int(results[2])

    async def _record_ip(self, ip: str) -> int:
        """INCR the IP's counter for the current window."""
        if self.redis is None:
            return 0
        window = int(time.time()) // self.settings.fraud_window_seconds
        key = f"fraud:ip:{ip}:{window}"
        try:
            pipe = self.redis.pipeline()
            pipe.incr(key)
            pipe.expire(key, self.settings.fraud_window_seconds + 1)
            results: list[Any] = await pipe.execute()
        except RedisError:
            logger.warning("risk_ip_counter_unavailable", ip=ip, exc_info=True)
            return 0
        return int(results[0])
