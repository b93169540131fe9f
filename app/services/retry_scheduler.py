"""Retry scheduler — backoff policy, failure transitions and the due-retry poll loop."""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from functools import partial
from typing import TYPE_CHECKING, Optional

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from app.database import async_session
from app.models import utcnow
from app.models.webhook import DeliveryStatus, WebhookDelivery, WebhookSubscription
from app.services.delivery_ledger import DeliveryLedger

if TYPE_CHECKING:
    from app.services.delivery_executor import DeliveryExecutor
    from app.services.delivery_queue import DeliveryQueue

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Delivery attempt interrupted before its outcome was recorded"
REDELIVERABLE_STATUSES = (DeliveryStatus.FAILED.value, DeliveryStatus.RETRYING.value)


class DeliveryNotRetryableError(RuntimeError):
    """Manual redelivery requested for a delivery that is pending, in flight or delivered."""


def compute_backoff(retry_delay_seconds: int, attempt: int, max_backoff_seconds: int = 86400) -> timedelta:
    """Delay before the attempt after ``attempt``: base * 2^(attempt-1), capped."""
    seconds = retry_delay_seconds * (2 ** max(attempt - 1, 0))
    return timedelta(seconds=min(seconds, max_backoff_seconds))


def apply_failure(
    delivery: WebhookDelivery,
    error_message: str,
    subscription: Optional[WebhookSubscription],
    now: datetime,
    max_backoff_seconds: int = 86400,
) -> str:
    """Move a delivery whose attempt failed to ``retrying`` or ``failed``.

    A missing subscription or disabled retries close the attempt budget, so a
    failed delivery always has ``attempt == max_attempts``.
    """
    delivery.error_message = error_message
    delivery.claimed_at = None

    if subscription is None or not subscription.retry_enabled:
        delivery.max_attempts = delivery.attempt

    if delivery.attempt >= delivery.max_attempts:
        delivery.status = DeliveryStatus.FAILED.value
        delivery.next_retry_at = None
    else:
        delivery.status = DeliveryStatus.RETRYING.value
        delivery.next_retry_at = now + compute_backoff(
            subscription.retry_delay_seconds, delivery.attempt, max_backoff_seconds
        )
    return delivery.status


class RetryScheduler:
    """Periodically finds due retries and hands them to the executor."""

    def __init__(
        self,
        executor: "DeliveryExecutor",
        session_factory: async_sessionmaker[AsyncSession] = async_session,
        queue: Optional["DeliveryQueue"] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self._executor = executor
        self._session_factory = session_factory
        self._queue = queue
        self.poll_interval = settings.webhook_poll_interval_seconds
        self.batch_size = settings.webhook_poll_batch_size
        self.claim_timeout = timedelta(seconds=settings.webhook_claim_timeout_seconds)
        self.retention_days = settings.webhook_retention_days
        self.sweep_interval = settings.webhook_retention_sweep_interval_seconds
        self._last_sweep: Optional[float] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    # ── Poll cycle ───────────────────────────────────────
    async def poll_once(self, now: Optional[datetime] = None) -> int:
        """One poll cycle. Returns the number of deliveries dispatched."""
        cycle_now = now or utcnow()
        await self.recover_stale(cycle_now)

        async with self._session_factory() as db:
            due = await DeliveryLedger(db).find_pending_retries(cycle_now, limit=self.batch_size)
            orphaned = (await db.execute(
                select(WebhookDelivery.id)
                .where(
                    WebhookDelivery.status == DeliveryStatus.PENDING.value,
                    WebhookDelivery.created_at < cycle_now - self.claim_timeout,
                )
                .order_by(WebhookDelivery.created_at.asc())
                .limit(self.batch_size)
            )).scalars().all()

        delivery_ids = [d.id for d in due] + list(orphaned)
        if not delivery_ids:
            return 0

        logger.info(f"Dispatching {len(due)} due webhook retries, {len(orphaned)} orphaned pending")
        for delivery_id in delivery_ids:
            await self._dispatch(delivery_id, now)
        return len(delivery_ids)

    async def _dispatch(self, delivery_id: int, now: Optional[datetime] = None) -> None:
        if self._queue is not None:
            self._queue.submit(partial(self._executor.execute, delivery_id, now=now))
        else:
            await self._executor.execute(delivery_id, now=now)

    async def recover_stale(self, now: Optional[datetime] = None) -> int:
        """Release in-flight claims whose lease expired (worker died mid-attempt).

        Requeued records are due immediately: ``next_retry_at`` is set to ``now``,
        not to a future backoff time.
        """
        now = now or utcnow()
        cutoff = now - self.claim_timeout
        stale = (
            WebhookDelivery.status == DeliveryStatus.IN_FLIGHT.value,
            WebhookDelivery.claimed_at < cutoff,
        )
        async with self._session_factory() as db:
            requeued = await db.execute(
                update(WebhookDelivery)
                .where(*stale, WebhookDelivery.attempt < WebhookDelivery.max_attempts)
                .values(
                    status=DeliveryStatus.RETRYING.value,
                    next_retry_at=now,
                    claimed_at=None,
                    error_message=INTERRUPTED_MESSAGE,
                )
                .execution_options(synchronize_session=False)
            )
            exhausted = await db.execute(
                update(WebhookDelivery)
                .where(*stale, WebhookDelivery.attempt >= WebhookDelivery.max_attempts)
                .values(
                    status=DeliveryStatus.FAILED.value,
                    next_retry_at=None,
                    claimed_at=None,
                    error_message=INTERRUPTED_MESSAGE,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        recovered = (requeued.rowcount or 0) + (exhausted.rowcount or 0)
        if recovered:
            logger.warning(
                f"Recovered {recovered} stale in-flight webhook deliveries "
                f"({requeued.rowcount or 0} requeued, {exhausted.rowcount or 0} failed)"
            )
        return recovered

    # ── Operator actions ─────────────────────────────────
    async def redeliver(self, delivery_id: int, now: Optional[datetime] = None) -> Optional[WebhookDelivery]:
        """Make a failed or retrying delivery due immediately.

        An exhausted delivery is granted exactly one more attempt. ``next_retry_at``
        is set to ``now`` so the operator-requested attempt skips the backoff.
        """
        now = now or utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                update(WebhookDelivery)
                .where(
                    WebhookDelivery.id == delivery_id,
                    WebhookDelivery.status.in_(REDELIVERABLE_STATUSES),
                )
                .values(
                    status=DeliveryStatus.RETRYING.value,
                    next_retry_at=now,
                    max_attempts=case(
                        (WebhookDelivery.attempt >= WebhookDelivery.max_attempts, WebhookDelivery.attempt + 1),
                        else_=WebhookDelivery.max_attempts,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            delivery = await db.get(WebhookDelivery, delivery_id, populate_existing=True)

        if delivery is None:
            return None
        if not result.rowcount:
            raise DeliveryNotRetryableError(
                f"Delivery {delivery_id} is {delivery.status} and cannot be redelivered"
            )

        logger.info(f"Manual redelivery requested for webhook delivery {delivery_id}")
        await self._dispatch(delivery_id)
        return delivery

    async def sweep(self, now: Optional[datetime] = None) -> int:
        async with self._session_factory() as db:
            return await DeliveryLedger(db).delete_old_deliveries(self.retention_days, now=now)

    async def _maybe_sweep(self) -> None:
        current = time.monotonic()
        if self._last_sweep is not None and current - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = current
        await self.sweep()

    # ── Lifecycle ────────────────────────────────────────
    async def start(self) -> None:
        if self._running:
            logger.warning("RetryScheduler already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"RetryScheduler started (poll every {self.poll_interval}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("RetryScheduler stopped")

    async def _run(self) -> None:
        while self._running:
            try:
                await self.poll_once()
                await self._maybe_sweep()
            except Exception:
                logger.exception("Webhook retry poll failed; will retry next cycle")
            await asyncio.sleep(self.poll_interval)
