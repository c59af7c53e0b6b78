"""Pydantic schemas for reward admin endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RewardRuleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    description: str | None = None
    event_type: str
    reward_type: str
    reward_amount: int = Field(0, ge=0)
    conditions: dict[str, Any] | None = None
    priority: int = 0
    is_active: bool = True


class RewardRuleUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=128)
    description: str | None = None
    event_type: str | None = None
    reward_type: str | None = None
    reward_amount: int | None = Field(None, ge=0)
    conditions: dict[str, Any] | None = None
    priority: int | None = None
    is_active: bool | None = None


class RewardRuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None = None
    event_type: str
    reward_type: str
    reward_amount: int
    conditions: dict[str, Any] | None = None
    priority: int
    is_active: bool
    created_at: datetime
    updated_at: datetime


class RewardApprovalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    rule_id: str | None = None
    reward_type: str
    amount: int
    source: str
    source_id: str
    description: str
    status: str
    risk_score: float
    risk_reasons: list[str] = []
    admin_id: str | None = None
    notes: str | None = None
    created_at: datetime
    decided_at: datetime | None = None


class ApproveRequest(BaseModel):
    notes: str | None = Field(None, max_length=1000)


class RejectRequest(BaseModel):
    reason: str = Field(..., max_length=1000)


class InvitationEventRequest(BaseModel):
    event_id: str = Field(..., min_length=1, max_length=128)
    type: str
    user_id: str = Field(..., min_length=1, max_length=64)
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime | None = None


class RewardInstructionResponse(BaseModel):
    rule_id: str
    rule_name: str
    user_id: str
    reward_type: str
    amount: int
    source: str
    source_id: str
    description: str


class EventOutcomeResponse(BaseModel):
    event_id: str
    risk_score: float
    risk_reasons: list[str]
    granted: list[RewardInstructionResponse]
    pending_approval_ids: list[str]
    notification_ids: list[str]
