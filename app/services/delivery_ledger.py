"""Delivery ledger — queries, statistics and retention over webhook deliveries."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import utcnow
from app.models.webhook import UNFINISHED_STATUSES, DeliveryStatus, WebhookDelivery

logger = logging.getLogger(__name__)


class DeliveryLedger:
    """Read side of the delivery log plus time-based cleanup."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, delivery_id: int) -> Optional[WebhookDelivery]:
        result = await self.db.execute(
            select(WebhookDelivery).where(WebhookDelivery.id == delivery_id)
        )
        return result.scalar_one_or_none()

    async def by_subscription(
        self,
        subscription_id: int,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[WebhookDelivery]:
        stmt = select(WebhookDelivery).where(WebhookDelivery.subscription_id == subscription_id)
        if status:
            stmt = stmt.where(WebhookDelivery.status == status)
        stmt = (
            stmt.order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def by_entity(self, entity_type: str, entity_id: int, limit: int = 50) -> list[WebhookDelivery]:
        result = await self.db.execute(
            select(WebhookDelivery)
            .where(
                WebhookDelivery.entity_type == entity_type,
                WebhookDelivery.entity_id == entity_id,
            )
            .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_pending_retries(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> list[WebhookDelivery]:
        """Deliveries in ``retrying`` whose next attempt is due."""
        now = now or utcnow()
        stmt = (
            select(WebhookDelivery)
            .where(
                WebhookDelivery.status == DeliveryStatus.RETRYING.value,
                WebhookDelivery.next_retry_at <= now,
            )
            .order_by(WebhookDelivery.next_retry_at.asc(), WebhookDelivery.id.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def count_unfinished(self, subscription_id: int) -> int:
        return (await self.db.execute(
            select(func.count(WebhookDelivery.id)).where(
                WebhookDelivery.subscription_id == subscription_id,
                WebhookDelivery.status.in_(UNFINISHED_STATUSES),
            )
        )).scalar() or 0

    async def get_statistics(
        self, subscription_id: int, days: int = 7, now: Optional[datetime] = None
    ) -> dict:
        """Delivery counts by status over the trailing ``days`` window."""
        cutoff = (now or utcnow()) - timedelta(days=days)

        def _count(status: DeliveryStatus):
            return func.sum(case((WebhookDelivery.status == status.value, 1), else_=0))

        row = (await self.db.execute(
            select(
                func.count(WebhookDelivery.id),
                _count(DeliveryStatus.SUCCESS),
                _count(DeliveryStatus.FAILED),
                _count(DeliveryStatus.PENDING),
                _count(DeliveryStatus.RETRYING),
                _count(DeliveryStatus.IN_FLIGHT),
            ).where(
                WebhookDelivery.subscription_id == subscription_id,
                WebhookDelivery.created_at >= cutoff,
            )
        )).one()

        total, success, failed, pending, retrying, in_flight = (int(v or 0) for v in row)
        return {
            "subscription_id": subscription_id,
            "days": days,
            "total": total,
            "success": success,
            "failed": failed,
            "pending": pending,
            "retrying": retrying,
            "in_flight": in_flight,
            "success_rate": round(success / total * 100, 2) if total > 0 else 0.0,
        }

    async def delete_old_deliveries(self, days_old: int = 90, now: Optional[datetime] = None) -> int:
        """Purge deliveries created before the cutoff. Returns rows removed."""
        cutoff = (now or utcnow()) - timedelta(days=days_old)
        result = await self.db.execute(
            delete(WebhookDelivery).where(WebhookDelivery.created_at < cutoff)
        )
        await self.db.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info(f"Deleted {removed} webhook deliveries older than {days_old} days")
        return removed
