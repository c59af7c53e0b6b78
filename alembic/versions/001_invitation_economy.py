"""Invitation economy tables.

Creates credit_records, credit_balances, reward_rules, reward_approvals,
notification_preferences and notification_messages.

Revision ID: 001_invitation_economy
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_invitation_economy"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Credit ledger (append-only) ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS credit_records (
            id BIGSERIAL PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL,
            amount INTEGER NOT NULL,
            kind VARCHAR(16) NOT NULL CHECK (kind IN ('earned', 'used', 'expired')),
            source VARCHAR(32) NOT NULL,
            source_id VARCHAR(128) NOT NULL DEFAULT '',
            description VARCHAR(256) NOT NULL DEFAULT '',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            expires_at TIMESTAMPTZ,
            used_at TIMESTAMPTZ,
            idempotency_key VARCHAR(256) UNIQUE,
            metadata JSONB NOT NULL DEFAULT '{}',
            CHECK ((kind = 'earned' AND amount > 0) OR (kind <> 'earned' AND amount < 0))
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_credit_records_user_kind
        ON credit_records(user_id, kind)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_credit_records_expiry
        ON credit_records(kind, used_at, expires_at)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_credit_records_source_id
        ON credit_records(source_id)
    """)
    # At most one EXPIRED entry per EARNED record
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_credit_records_single_expiry
        ON credit_records(source_id)
        WHERE kind = 'expired'
    """)

    # --- Materialized balance ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS credit_balances (
            user_id VARCHAR(64) PRIMARY KEY,
            total_earned INTEGER NOT NULL DEFAULT 0,
            total_used INTEGER NOT NULL DEFAULT 0,
            total_expired INTEGER NOT NULL DEFAULT 0,
            available_credits INTEGER NOT NULL DEFAULT 0 CHECK (available_credits >= 0),
            expiring_credits INTEGER NOT NULL DEFAULT 0,
            last_updated TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)

    # --- Reward rules ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS reward_rules (
            id VARCHAR(36) PRIMARY KEY,
            name VARCHAR(128) NOT NULL,
            description TEXT,
            event_type VARCHAR(64) NOT NULL,
            reward_type VARCHAR(32) NOT NULL,
            reward_amount INTEGER NOT NULL DEFAULT 0,
            conditions JSONB,
            priority INTEGER NOT NULL DEFAULT 0,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_reward_rules_event_active
        ON reward_rules(event_type, is_active)
    """)

    # --- Approval queue ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS reward_approvals (
            id VARCHAR(36) PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL,
            rule_id VARCHAR(36) REFERENCES reward_rules(id) ON DELETE SET NULL,
            reward_type VARCHAR(32) NOT NULL,
            amount INTEGER NOT NULL,
            source VARCHAR(32) NOT NULL,
            source_id VARCHAR(128) NOT NULL DEFAULT '',
            description VARCHAR(256) NOT NULL DEFAULT '',
            status VARCHAR(16) NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'approved', 'rejected')),
            risk_score DOUBLE PRECISION NOT NULL DEFAULT 0,
            risk_reasons JSONB NOT NULL DEFAULT '[]',
            admin_id VARCHAR(64),
            notes TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            decided_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_reward_approvals_status
        ON reward_approvals(status, created_at)
    """)

    # --- Notifications ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS notification_preferences (
            user_id VARCHAR(64) NOT NULL,
            type VARCHAR(32) NOT NULL,
            channels JSONB NOT NULL DEFAULT '["in_app"]',
            frequency VARCHAR(16) NOT NULL DEFAULT 'immediate',
            is_enabled BOOLEAN NOT NULL DEFAULT true,
            quiet_hours_start VARCHAR(5),
            quiet_hours_end VARCHAR(5),
            updated_at TIMESTAMPTZ,
            PRIMARY KEY (user_id, type)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS notification_messages (
            id VARCHAR(36) PRIMARY KEY,
            user_id VARCHAR(64) NOT NULL,
            type VARCHAR(32) NOT NULL,
            title VARCHAR(256) NOT NULL,
            content TEXT NOT NULL DEFAULT '',
            channel VARCHAR(16) NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'pending',
            scheduled_at TIMESTAMPTZ,
            sent_at TIMESTAMPTZ,
            read_at TIMESTAMPTZ,
            metadata JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_notification_messages_user
        ON notification_messages(user_id, created_at DESC)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_notification_messages_due
        ON notification_messages(status, scheduled_at)
        WHERE status = 'pending'
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS notification_messages CASCADE")
    op.execute("DROP TABLE IF EXISTS notification_preferences CASCADE")
    op.execute("DROP TABLE IF EXISTS reward_approvals CASCADE")
    op.execute("DROP TABLE IF EXISTS reward_rules CASCADE")
    op.execute("DROP TABLE IF EXISTS credit_balances CASCADE")
    op.execute("DROP TABLE IF EXISTS credit_records CASCADE")
