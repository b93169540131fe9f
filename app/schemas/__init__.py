"""Pydantic schemas for API request/response."""

import json
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


# ── Subscription ─────────────────────────────────────────
class SubscriptionCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    url: str = Field(..., max_length=2000)
    events: list[str] = Field(..., min_length=1)
    active: bool = True
    retry_enabled: bool = True
    max_retries: int = Field(3, ge=0, le=10)
    retry_delay_seconds: int = Field(60, ge=10, le=3600)
    custom_headers: Optional[dict[str, str]] = None
    created_by: Optional[int] = None


class SubscriptionUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    url: Optional[str] = Field(None, max_length=2000)
    events: Optional[list[str]] = Field(None, min_length=1)
    active: Optional[bool] = None
    retry_enabled: Optional[bool] = None
    max_retries: Optional[int] = Field(None, ge=0, le=10)
    retry_delay_seconds: Optional[int] = Field(None, ge=10, le=3600)
    custom_headers: Optional[dict[str, str]] = None


class SubscriptionOut(BaseModel):
    """Subscription as shown to operators. The secret is never included."""

    id: int
    name: str
    url: str
    events: list[str]
    active: bool
    retry_enabled: bool
    max_retries: int
    retry_delay_seconds: int
    custom_headers: dict[str, str] = Field(default_factory=dict)
    created_by: Optional[int] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    last_triggered_at: Optional[datetime] = None

    @classmethod
    def _fields_from(cls, sub) -> dict:
        return dict(
            id=sub.id,
            name=sub.name,
            url=sub.url,
            events=sub.event_list,
            active=bool(sub.active),
            retry_enabled=bool(sub.retry_enabled),
            max_retries=sub.max_retries,
            retry_delay_seconds=sub.retry_delay_seconds,
            custom_headers=sub.header_map,
            created_by=sub.created_by,
            created_at=sub.created_at,
            updated_at=sub.updated_at,
            last_triggered_at=sub.last_triggered_at,
        )

    @classmethod
    def from_model(cls, sub):
        return cls(**cls._fields_from(sub))


class SubscriptionCreated(SubscriptionOut):
    """Create response — the only place the signing secret is returned."""

    secret: str

    @classmethod
    def from_model(cls, sub):
        return cls(secret=sub.secret, **cls._fields_from(sub))


# ── Delivery ─────────────────────────────────────────────
class DeliveryOut(BaseModel):
    id: int
    subscription_id: int
    event_type: str
    entity_type: str
    entity_id: int
    request_url: str
    request_payload: Any = None
    request_headers: dict[str, str] = Field(default_factory=dict)
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    response_time_ms: Optional[int] = None
    attempt: int
    max_attempts: int
    next_retry_at: Optional[datetime] = None
    status: str
    error_message: Optional[str] = None
    created_at: datetime
    delivered_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, d):
        try:
            payload = json.loads(d.request_payload) if d.request_payload else None
        except (json.JSONDecodeError, TypeError):
            payload = d.request_payload
        return cls(
            id=d.id,
            subscription_id=d.subscription_id,
            event_type=d.event_type,
            entity_type=d.entity_type,
            entity_id=d.entity_id,
            request_url=d.request_url,
            request_payload=payload,
            request_headers=d.header_map,
            response_status=d.response_status,
            response_body=d.response_body,
            response_time_ms=d.response_time_ms,
            attempt=d.attempt,
            max_attempts=d.max_attempts,
            next_retry_at=d.next_retry_at,
            status=d.status,
            error_message=d.error_message,
            created_at=d.created_at,
            delivered_at=d.delivered_at,
        )


class DeliveryStatistics(BaseModel):
    subscription_id: int
    days: int
    total: int
    success: int
    failed: int
    pending: int
    retrying: int
    in_flight: int = 0
    success_rate: float


class WebhookTestResult(BaseModel):
    success: bool
    message: str
    response_status: Optional[int] = None
    response_time_ms: Optional[int] = None


class CleanupResult(BaseModel):
    deleted: int
    days_old: int
