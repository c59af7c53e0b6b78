"""Pydantic schemas for notification endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    title: str
    content: str
    channel: str
    status: str
    scheduled_at: datetime | None = None
    sent_at: datetime | None = None
    read_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="message_metadata")
    created_at: datetime


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    limit: int
    offset: int


class UnreadCountResponse(BaseModel):
    count: int


class MarkReadRequest(BaseModel):
    ids: list[str] = Field(default_factory=list, max_length=500)


class PreferenceUpdate(BaseModel):
    type: str
    channels: list[str] | None = None
    frequency: str | None = None
    is_enabled: bool | None = None
    quiet_hours_start: str | None = None
    quiet_hours_end: str | None = None


class PreferenceResponse(BaseModel):
    type: str
    channels: list[str]
    frequency: str
    is_enabled: bool
    quiet_hours_start: str | None = None
    quiet_hours_end: str | None = None


class SendNotificationRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    type: str
    channel: str = "in_app"
    title: str | None = Field(None, max_length=256)
    content: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
