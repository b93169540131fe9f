"""Subscription registry — durable store of webhook subscriptions."""

import json
import logging
from typing import Any, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import utcnow
from app.models.webhook import WebhookSubscription
from app.services.delivery_ledger import DeliveryLedger
from app.services.signing import generate_secret

logger = logging.getLogger(__name__)

# Fields an update may touch; secret and created_by are fixed at creation.
UPDATABLE_FIELDS = (
    "name",
    "url",
    "events",
    "active",
    "retry_enabled",
    "max_retries",
    "retry_delay_seconds",
    "custom_headers",
)
REQUIRED_FIELDS = tuple(f for f in UPDATABLE_FIELDS if f != "custom_headers")


class SubscriptionValidationError(ValueError):
    """Subscription definition rejected before persistence."""


class SubscriptionInUseError(RuntimeError):
    """Subscription still has deliveries that have not reached a terminal state."""

    def __init__(self, subscription_id: int, unfinished: int):
        super().__init__(
            f"Subscription {subscription_id} has {unfinished} unfinished deliveries"
        )
        self.subscription_id = subscription_id
        self.unfinished = unfinished


def normalize_events(events) -> list[str]:
    """Collapse duplicates, keep first-seen order."""
    if isinstance(events, str):
        events = [events]
    seen: list[str] = []
    for evt in events or []:
        value = evt.value if hasattr(evt, "value") else evt
        if not isinstance(value, str) or not value.strip():
            raise SubscriptionValidationError(f"Invalid event type: {evt!r}")
        value = value.strip()
        if value not in seen:
            seen.append(value)
    return seen


def validate_subscription(
    name: str,
    url: str,
    events: list[str],
    max_retries: int,
    retry_delay_seconds: int,
    custom_headers: Optional[dict] = None,
) -> None:
    if not name or not name.strip():
        raise SubscriptionValidationError("Name is required")
    if len(name) > 200:
        raise SubscriptionValidationError("Name must not exceed 200 characters")

    if not url or len(url) > 2000:
        raise SubscriptionValidationError("URL is required and must not exceed 2000 characters")
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as exc:
        raise SubscriptionValidationError(f"Invalid URL: {exc}") from exc
    if parsed.scheme != "https" or not parsed.host:
        raise SubscriptionValidationError("URL must be an absolute https:// URL")

    if not events:
        raise SubscriptionValidationError("At least one event type is required")

    if max_retries is None or max_retries < 0:
        raise SubscriptionValidationError("max_retries must be >= 0")
    if retry_delay_seconds is None or retry_delay_seconds <= 0:
        raise SubscriptionValidationError("retry_delay_seconds must be > 0")

    if custom_headers is not None:
        if not isinstance(custom_headers, dict):
            raise SubscriptionValidationError("custom_headers must be an object")
        for key, val in custom_headers.items():
            if not isinstance(key, str) or not isinstance(val, str):
                raise SubscriptionValidationError("custom_headers must map strings to strings")
            if not key.strip() or not _is_header_safe(key) or not _is_header_safe(val):
                raise SubscriptionValidationError(
                    f"custom header {key!r} must be non-empty ASCII without line breaks"
                )


def _is_header_safe(text: str) -> bool:
    return text.isascii() and "\r" not in text and "\n" not in text


class SubscriptionRegistry:
    """CRUD over webhook subscriptions bound to one session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        name: str,
        url: str,
        events: list[str],
        created_by: Optional[int] = None,
        active: bool = True,
        retry_enabled: bool = True,
        max_retries: int = 3,
        retry_delay_seconds: int = 60,
        custom_headers: Optional[dict[str, str]] = None,
        secret: Optional[str] = None,
    ) -> WebhookSubscription:
        events = normalize_events(events)
        validate_subscription(name, url, events, max_retries, retry_delay_seconds, custom_headers)

        subscription = WebhookSubscription(
            name=name.strip(),
            url=url,
            secret=secret or generate_secret(),
            events=json.dumps(events),
            active=active,
            retry_enabled=retry_enabled,
            max_retries=max_retries,
            retry_delay_seconds=retry_delay_seconds,
            custom_headers=json.dumps(custom_headers) if custom_headers else None,
            created_by=created_by,
        )
        self.db.add(subscription)
        await self.db.commit()
        await self.db.refresh(subscription)
        logger.info(f"Webhook subscription {subscription.id} created for {events}")
        return subscription

    async def get(self, subscription_id: int) -> Optional[WebhookSubscription]:
        result = await self.db.execute(
            select(WebhookSubscription).where(WebhookSubscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_signing_secret(self, subscription_id: int) -> Optional[str]:
        result = await self.db.execute(
            select(WebhookSubscription.secret).where(WebhookSubscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def list(self, active_only: bool = False) -> list[WebhookSubscription]:
        stmt = select(WebhookSubscription)
        if active_only:
            stmt = stmt.where(WebhookSubscription.active.is_(True))
        stmt = stmt.order_by(WebhookSubscription.created_at.desc(), WebhookSubscription.id.desc())
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def update(self, subscription_id: int, **changes: Any) -> Optional[WebhookSubscription]:
        """Partial update. Returns None when the subscription does not exist."""
        subscription = await self.get(subscription_id)
        if subscription is None:
            return None

        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise SubscriptionValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        nulled = [key for key, val in changes.items() if val is None and key in REQUIRED_FIELDS]
        if nulled:
            raise SubscriptionValidationError(f"Fields cannot be null: {', '.join(sorted(nulled))}")
        if "name" in changes:
            changes["name"] = changes["name"].strip()

        events = normalize_events(changes["events"]) if "events" in changes else subscription.event_list
        custom_headers = changes.get("custom_headers", subscription.header_map or None)
        validate_subscription(
            changes.get("name", subscription.name),
            changes.get("url", subscription.url),
            events,
            changes.get("max_retries", subscription.max_retries),
            changes.get("retry_delay_seconds", subscription.retry_delay_seconds),
            custom_headers,
        )

        for key, val in changes.items():
            if key == "events":
                val = json.dumps(events)
            elif key == "custom_headers":
                val = json.dumps(val) if val else None
            setattr(subscription, key, val)
        subscription.updated_at = utcnow()

        await self.db.commit()
        await self.db.refresh(subscription)
        return subscription

    async def delete(self, subscription_id: int) -> bool:
        """Hard delete. Refused while deliveries for it are still unfinished."""
        subscription = await self.get(subscription_id)
        if subscription is None:
            return False

        unfinished = await DeliveryLedger(self.db).count_unfinished(subscription_id)
        if unfinished:
            raise SubscriptionInUseError(subscription_id, unfinished)

        await self.db.delete(subscription)
        await self.db.commit()
        logger.info(f"Webhook subscription {subscription_id} deleted")
        return True
