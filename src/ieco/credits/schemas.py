"""Pydantic schemas for credit endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CreditBalanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    total_earned: int
    total_used: int
    total_expired: int
    available_credits: int
    expiring_credits: int
    last_updated: datetime


class CreditRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount: int
    kind: str
    source: str
    source_id: str
    description: str
    created_at: datetime
    expires_at: datetime | None = None
    used_at: datetime | None = None


class CreditHistoryResponse(BaseModel):
    records: list[CreditRecordResponse]


class SourceTotalResponse(BaseModel):
    source: str
    amount: int


class CreditStatsResponse(BaseModel):
    total_earned: int
    total_used: int
    total_expired: int
    average_daily: float
    top_sources: list[SourceTotalResponse] = []


class UseCreditsRequest(BaseModel):
    amount: int = Field(..., gt=0)
    purpose: str = Field(..., min_length=1, max_length=200)
    metadata: dict[str, object] = Field(default_factory=dict)


class UseCreditsResponse(BaseModel):
    success: bool
    available_credits: int


class GrantCreditsRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    amount: int = Field(..., gt=0)
    source: str = "admin_grant"
    description: str = Field("", max_length=256)
    idempotency_key: str | None = Field(None, max_length=256)
