"""Event router — turns a published domain event into delivery records."""

import logging
from functools import partial
from typing import Any, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import async_session
from app.models import utcnow
from app.models.webhook import DeliveryStatus, WebhookDelivery, WebhookEvent, WebhookSubscription
from app.services.delivery_executor import DeliveryExecutor
from app.services.delivery_queue import DeliveryQueue
from app.services.signing import build_envelope

logger = logging.getLogger(__name__)


class EventRouter:
    """Matches events to active subscriptions and queues the first attempts."""

    def __init__(
        self,
        executor: DeliveryExecutor,
        queue: DeliveryQueue,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
    ):
        self._executor = executor
        self._queue = queue
        self._session_factory = session_factory

    def publish(
        self,
        event_type: Union[WebhookEvent, str],
        entity_type: str,
        entity_id: int,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        """Fire-and-forget entry point for business modules. Never raises."""
        try:
            event = WebhookEvent(event_type)
        except ValueError:
            logger.warning(f"Ignoring publish of unknown webhook event type: {event_type!r}")
            return
        entity = getattr(entity_type, "value", entity_type)
        if not self._queue.submit(partial(self.route_and_deliver, event.value, entity, entity_id, payload or {})):
            logger.error(f"Webhook event {event.value} for {entity}#{entity_id} dropped: queue full")

    async def route(
        self,
        event_type: str,
        entity_type: str,
        entity_id: int,
        payload: Optional[dict[str, Any]] = None,
    ) -> list[WebhookDelivery]:
        """Create one pending delivery per matching active subscription."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookSubscription).where(WebhookSubscription.active.is_(True))
            )
            matches = [sub for sub in result.scalars().all() if sub.subscribes_to(event_type)]
            if not matches:
                logger.debug(f"No active subscriptions for event: {event_type}")
                return []

            now = utcnow()
            deliveries = []
            for sub in matches:
                delivery = WebhookDelivery(
                    subscription_id=sub.id,
                    event_type=event_type,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    request_url=sub.url,
                    attempt=0,
                    max_attempts=sub.max_retries + 1,
                    status=DeliveryStatus.PENDING.value,
                    created_at=now,
                )
                db.add(delivery)
                sub.last_triggered_at = now
                deliveries.append(delivery)

            # ids are needed inside the envelope
            await db.flush()
            for delivery in deliveries:
                delivery.request_payload = build_envelope(
                    event_type, entity_type, entity_id, delivery.id, payload, timestamp=now,
                )
            await db.commit()

        logger.info(f"Routed {event_type} for {entity_type}#{entity_id} to {len(deliveries)} subscriptions")
        return deliveries

    async def route_and_deliver(
        self,
        event_type: str,
        entity_type: str,
        entity_id: int,
        payload: Optional[dict[str, Any]] = None,
    ) -> list[WebhookDelivery]:
        deliveries = await self.route(event_type, entity_type, entity_id, payload)
        for delivery in deliveries:
            self._queue.submit(partial(self._executor.execute, delivery.id))
        return deliveries
