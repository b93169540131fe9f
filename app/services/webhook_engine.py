"""Webhook delivery engine — wires queue, executor, router and scheduler together."""

import logging
from typing import Any, Optional, Union

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from app.database import async_session
from app.models.webhook import WebhookEvent
from app.services.delivery_executor import DeliveryExecutor
from app.services.delivery_queue import DeliveryQueue
from app.services.event_router import EventRouter
from app.services.retry_scheduler import RetryScheduler

logger = logging.getLogger(__name__)


class WebhookEngine:
    """One instance per process, owned by the application lifespan."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.queue = DeliveryQueue(workers=settings.webhook_workers)
        self.executor = DeliveryExecutor(session_factory, client=client, settings=settings)
        self.router = EventRouter(self.executor, self.queue, session_factory)
        self.scheduler = RetryScheduler(self.executor, session_factory, queue=self.queue, settings=settings)

    def publish(
        self,
        event_type: Union[WebhookEvent, str],
        entity_type: str,
        entity_id: int,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        self.router.publish(event_type, entity_type, entity_id, payload)

    async def start(self, with_scheduler: bool = True) -> None:
        await self.queue.start()
        if with_scheduler:
            await self.scheduler.start()
        logger.info("Webhook engine started")

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.queue.stop()
        logger.info("Webhook engine stopped")
