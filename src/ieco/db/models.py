"""ORM models for the invitation economy tables.

Table definitions mirror alembic/versions/001_invitation_economy.py.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from ieco.db.base import AwareDateTime, Base, BigIntPK, JSONType


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


class CreditRecord(Base):
    """Append-only credit ledger entry (earned / used / expired)."""

    __tablename__ = "credit_records"
    __table_args__ = (
        Index("idx_credit_records_user_kind", "user_id", "kind"),
        Index("idx_credit_records_expiry", "kind", "used_at", "expires_at"),
        Index("idx_credit_records_source_id", "source_id"),
        Index(
            "uq_credit_records_single_expiry",
            "source_id",
            unique=True,
            postgresql_where=text("kind = 'expired'"),
            sqlite_where=text("kind = 'expired'"),
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    description: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)
    used_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(256), unique=True, nullable=True)
    record_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)


class CreditBalance(Base):
    """Materialized per-user balance derived from credit_records."""

    __tablename__ = "credit_balances"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    total_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_expired: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expiring_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_updated: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False)


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------


class RewardRule(Base):
    """Admin-configured rule mapping an event type to a reward."""

    __tablename__ = "reward_rules"
    __table_args__ = (Index("idx_reward_rules_event_active", "event_type", "is_active"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    reward_type: Mapped[str] = mapped_column(String(32), nullable=False)
    reward_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    conditions: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False)


class RewardApproval(Base):
    """A risky grant parked for manual review."""

    __tablename__ = "reward_approvals"
    __table_args__ = (Index("idx_reward_approvals_status", "status", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("reward_rules.id", ondelete="SET NULL"), nullable=True
    )
    reward_type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    description: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    risk_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    risk_reasons: Mapped[list[str]] = mapped_column(JSONType, default=list)
    admin_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False)
    decided_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationPreference(Base):
    """Per-user, per-type delivery preferences."""

    __tablename__ = "notification_preferences"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(32), primary_key=True)
    channels: Mapped[list[str]] = mapped_column(JSONType, default=list)
    frequency: Mapped[str] = mapped_column(String(16), nullable=False, default="immediate")
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    quiet_hours_start: Mapped[str | None] = mapped_column(String(5), nullable=True)
    quiet_hours_end: Mapped[str | None] = mapped_column(String(5), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)


class NotificationMessage(Base):
    """Persisted notification, immediate or deferred by quiet hours."""

    __tablename__ = "notification_messages"
    __table_args__ = (
        Index("idx_notification_messages_user", "user_id", "created_at"),
        Index("idx_notification_messages_due", "status", "scheduled_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    scheduled_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(AwareDateTime(), nullable=True)
    message_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(AwareDateTime(), nullable=False)
