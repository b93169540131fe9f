"""Webhook models — subscriptions and the delivery ledger."""

import json
from enum import Enum

from sqlalchemy import Boolean, Column, Index, Integer, String, Text

from app.database import Base
from app.models import UTCDateTime, utcnow


class WebhookEvent(str, Enum):
    """Domain events business modules may publish."""

    NCR_CREATED = "ncr.created"
    NCR_UPDATED = "ncr.updated"
    NCR_CLOSED = "ncr.closed"
    CAPA_CREATED = "capa.created"
    CAPA_UPDATED = "capa.updated"
    CAPA_CLOSED = "capa.closed"


class WebhookEntityType(str, Enum):
    NCR = "NCR"
    CAPA = "CAPA"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"  # claimed for an attempt, outcome not yet recorded
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATUSES = (DeliveryStatus.SUCCESS.value, DeliveryStatus.FAILED.value)
UNFINISHED_STATUSES = (
    DeliveryStatus.PENDING.value,
    DeliveryStatus.IN_FLIGHT.value,
    DeliveryStatus.RETRYING.value,
)


class WebhookSubscription(Base):
    """External endpoint registered to receive event notifications."""

    __tablename__ = "webhook_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    url = Column(String(2000), nullable=False)
    secret = Column(String(500), nullable=False)  # HMAC signing key, write-once
    events = Column(Text, nullable=False, default="[]")  # JSON list of event types
    active = Column(Boolean, default=True, index=True)
    # Retry policy
    retry_enabled = Column(Boolean, default=True)
    max_retries = Column(Integer, default=3)
    retry_delay_seconds = Column(Integer, default=60)
    custom_headers = Column(Text, nullable=True)  # JSON object
    # Audit
    created_by = Column(Integer, nullable=True, index=True)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)
    last_triggered_at = Column(UTCDateTime, nullable=True)

    @property
    def event_list(self) -> list[str]:
        events = self.events
        if isinstance(events, str):
            try:
                events = json.loads(events)
            except (json.JSONDecodeError, TypeError):
                events = []
        return list(events or [])

    @property
    def header_map(self) -> dict[str, str]:
        headers = self.custom_headers
        if isinstance(headers, str):
            try:
                headers = json.loads(headers)
            except (json.JSONDecodeError, TypeError):
                headers = {}
        return dict(headers or {})

    def subscribes_to(self, event_type: str) -> bool:
        return event_type in self.event_list


class WebhookDelivery(Base):
    """One event sent to one subscription, tracked across all its attempts."""

    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        Index("ix_webhook_deliveries_entity", "entity_type", "entity_id"),
        Index("ix_webhook_deliveries_status_next_retry", "status", "next_retry_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    # No FK: history outlives the subscription
    subscription_id = Column(Integer, nullable=False, index=True)
    # Event
    event_type = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, nullable=False)
    # Request (latest attempt)
    request_url = Column(String(2000), nullable=False)
    request_payload = Column(Text, nullable=False, default="{}")
    request_headers = Column(Text, nullable=True)
    # Response (latest attempt)
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    # Retry bookkeeping
    attempt = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=1)
    next_retry_at = Column(UTCDateTime, nullable=True)
    claimed_at = Column(UTCDateTime, nullable=True)
    status = Column(String(20), nullable=False, default=DeliveryStatus.PENDING.value, index=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, index=True)
    delivered_at = Column(UTCDateTime, nullable=True)

    @property
    def header_map(self) -> dict[str, str]:
        if not self.request_headers:
            return {}
        try:
            return json.loads(self.request_headers)
        except (json.JSONDecodeError, TypeError):
            return {}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
