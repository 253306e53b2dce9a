"""Request/response schemas for the notification API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool


class NotificationPreferencesUpdateRequest(BaseModel):
    """Partial update; omitted toggles keep their stored value."""

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1, max_length=64)
    purchase_enabled: StrictBool | None = None
    referral_registered_enabled: StrictBool | None = None
    referral_purchase_enabled: StrictBool | None = None
    income_credited_enabled: StrictBool | None = None


class NotificationPreferencesResponse(BaseModel):
    user_id: str
    purchase_enabled: bool
    referral_registered_enabled: bool
    referral_purchase_enabled: bool
    income_credited_enabled: bool


class NotificationItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    type: str
    status: str
    content: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    retry_count: int = 0
    transport_message_id: str | None = None
    sent_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class Pagination(BaseModel):
    limit: int
    offset: int
    count: int


class NotificationHistoryResponse(BaseModel):
    history: list[NotificationItem]
    pagination: Pagination


class StatsBucketItem(BaseModel):
    type: str
    status: str
    count: int


class NotificationStatsResponse(BaseModel):
    period: Literal["day", "week", "month"]
    total: int
    by_type: dict[str, int]
    by_status: dict[str, int]
    breakdown: list[StatsBucketItem]
    avg_delivery_seconds: float | None = None


class NotificationHealthResponse(BaseModel):
    status: Literal["healthy", "degraded", "down"]
    enabled: bool
    store: bool
    queue: dict[str, int] | None = None
    limiter: dict[str, Any] | None = None
