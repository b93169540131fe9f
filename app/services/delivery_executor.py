"""Delivery executor — one signed HTTP attempt per claimed delivery record."""

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx
from sqlalchemy import and_, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from app.database import async_session
from app.models import utcnow
from app.models.webhook import DeliveryStatus, WebhookDelivery, WebhookSubscription
from app.services.retry_scheduler import apply_failure
from app.services.signing import build_envelope, sign_payload
from app.services.subscription_registry import SubscriptionRegistry

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_ID_HEADER = "X-Webhook-Delivery-Id"
ATTEMPT_HEADER = "X-Webhook-Attempt"
TEST_EVENT = "test.ping"


@dataclass
class AttemptResult:
    success: bool
    status_code: Optional[int] = None
    body: Optional[str] = None
    elapsed_ms: int = 0
    error: Optional[str] = None


class DeliveryExecutor:
    """Claims a delivery, sends it, and records the outcome in one pass."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self._session_factory = session_factory
        self._client = client
        self.timeout = settings.webhook_request_timeout_seconds
        self.user_agent = settings.webhook_user_agent
        self.body_limit = settings.webhook_response_body_limit
        self.max_backoff_seconds = settings.webhook_max_backoff_seconds

    # ── Request building ─────────────────────────────────
    def build_headers(
        self,
        event_type: str,
        delivery_id: int,
        attempt: int,
        body: str,
        secret: str,
        custom_headers: Optional[dict[str, str]] = None,
    ) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            SIGNATURE_HEADER: sign_payload(body, secret),
            EVENT_HEADER: event_type,
            DELIVERY_ID_HEADER: str(delivery_id),
            ATTEMPT_HEADER: str(attempt),
        }
        reserved = {key.lower() for key in headers}
        merged = {
            key: val for key, val in (custom_headers or {}).items()
            if key.lower() not in reserved
        }
        merged.update(headers)
        return merged

    async def send(self, url: str, body: str, headers: dict[str, str]) -> AttemptResult:
        """POST the body and classify the response. Transport errors never raise."""
        start = time.monotonic()
        try:
            if self._client is not None:
                resp = await self._client.post(url, content=body, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(url, content=body, headers=headers)
        except httpx.TimeoutException:
            return AttemptResult(
                success=False,
                elapsed_ms=int((time.monotonic() - start) * 1000),
                error=f"Request timed out after {self.timeout}s",
            )
        except httpx.HTTPError as exc:
            return AttemptResult(
                success=False,
                elapsed_ms=int((time.monotonic() - start) * 1000),
                error=str(exc) or exc.__class__.__name__,
            )
        except (httpx.InvalidURL, ValueError) as exc:
            # Request could not be built (e.g. header value not encodable)
            return AttemptResult(
                success=False,
                elapsed_ms=int((time.monotonic() - start) * 1000),
                error=f"Invalid request: {exc}",
            )

        ok = 200 <= resp.status_code < 300
        return AttemptResult(
            success=ok,
            status_code=resp.status_code,
            body=resp.text[: self.body_limit],
            elapsed_ms=int((time.monotonic() - start) * 1000),
            error=None if ok else f"HTTP {resp.status_code}: {resp.reason_phrase}",
        )

    # ── Delivery attempt ─────────────────────────────────
    async def execute(self, delivery_id: int, now: Optional[datetime] = None) -> Optional[WebhookDelivery]:
        """Run one attempt. Returns None if the delivery could not be claimed."""
        claim_time = now or utcnow()
        async with self._session_factory() as db:
            if not await self._claim(db, delivery_id, claim_time):
                logger.debug(f"Webhook delivery {delivery_id} not claimable, skipping")
                return None

            delivery = await db.get(WebhookDelivery, delivery_id, populate_existing=True)
            registry = SubscriptionRegistry(db)
            subscription = await registry.get(delivery.subscription_id)
            if subscription is None:
                apply_failure(delivery, "Subscription no longer exists", None, claim_time)
                logger.error(f"Webhook delivery {delivery_id} failed: subscription {delivery.subscription_id} is gone")
                return await self._persist(db, delivery)

            secret = await registry.get_signing_secret(subscription.id)
            body = delivery.request_payload
            headers = self.build_headers(
                delivery.event_type, delivery.id, delivery.attempt, body, secret, subscription.header_map,
            )
            delivery.request_url = subscription.url
            delivery.request_headers = json.dumps(headers)

            result = await self.send(subscription.url, body, headers)
            self._record(delivery, subscription, result, now or utcnow())
            return await self._persist(db, delivery)

    async def _claim(self, db: AsyncSession, delivery_id: int, now: datetime) -> bool:
        """Atomically move a claimable delivery to in_flight and count the attempt."""
        result = await db.execute(
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == delivery_id,
                WebhookDelivery.attempt < WebhookDelivery.max_attempts,
                or_(
                    WebhookDelivery.status == DeliveryStatus.PENDING.value,
                    and_(
                        WebhookDelivery.status == DeliveryStatus.RETRYING.value,
                        WebhookDelivery.next_retry_at <= now,
                    ),
                ),
            )
            .values(
                status=DeliveryStatus.IN_FLIGHT.value,
                attempt=WebhookDelivery.attempt + 1,
                claimed_at=now,
                next_retry_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    def _record(
        self,
        delivery: WebhookDelivery,
        subscription: WebhookSubscription,
        result: AttemptResult,
        now: datetime,
    ) -> None:
        delivery.response_status = result.status_code
        delivery.response_body = result.body
        delivery.response_time_ms = result.elapsed_ms

        if result.success:
            delivery.status = DeliveryStatus.SUCCESS.value
            delivery.delivered_at = now
            delivery.next_retry_at = None
            delivery.claimed_at = None
            logger.info(
                f"Webhook delivered: {delivery.event_type} to {subscription.name} "
                f"(delivery {delivery.id}, attempt {delivery.attempt}, {result.status_code})"
            )
            return

        status = apply_failure(delivery, result.error, subscription, now, self.max_backoff_seconds)
        if status == DeliveryStatus.RETRYING.value:
            logger.warning(
                f"Webhook delivery {delivery.id} to {subscription.name} failed "
                f"(attempt {delivery.attempt}/{delivery.max_attempts}): {result.error}; "
                f"next retry at {delivery.next_retry_at.isoformat()}"
            )
        else:
            logger.error(
                f"Webhook delivery {delivery.id} to {subscription.name} permanently failed "
                f"after {delivery.attempt} attempts: {result.error}"
            )

    async def _persist(self, db: AsyncSession, delivery: WebhookDelivery) -> Optional[WebhookDelivery]:
        try:
            await db.commit()
        except SQLAlchemyError:
            # Record stays in_flight; RetryScheduler.recover_stale releases it after the lease.
            logger.exception(f"Could not record outcome of webhook delivery {delivery.id}")
            await db.rollback()
            return None
        return delivery

    # ── Test ping ────────────────────────────────────────
    async def send_test(self, subscription: WebhookSubscription) -> AttemptResult:
        """Send a signed ping that is not recorded in the ledger."""
        body = build_envelope(
            TEST_EVENT, "TEST", 0, 0,
            {"test": True, "message": "This is a test webhook from E-QMS"},
        )
        headers = self.build_headers(TEST_EVENT, 0, 1, body, subscription.secret, subscription.header_map)
        result = await self.send(subscription.url, body, headers)
        logger.info(f"Test webhook to {subscription.name}: success={result.success} status={result.status_code}")
        return result
