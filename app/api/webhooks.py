"""Webhook subscription management and delivery ledger API."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.webhook import DeliveryStatus, WebhookEvent
from app.schemas import (
    CleanupResult,
    DeliveryOut,
    DeliveryStatistics,
    SubscriptionCreate,
    SubscriptionCreated,
    SubscriptionOut,
    SubscriptionUpdate,
    WebhookTestResult,
)
from app.services.delivery_ledger import DeliveryLedger
from app.services.retry_scheduler import DeliveryNotRetryableError
from app.services.subscription_registry import (
    SubscriptionInUseError,
    SubscriptionRegistry,
    SubscriptionValidationError,
)
from app.services.webhook_engine import WebhookEngine

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

VALID_EVENTS = [evt.value for evt in WebhookEvent]
VALID_STATUSES = [status.value for status in DeliveryStatus]


def get_webhook_engine(request: Request) -> WebhookEngine:
    engine = getattr(request.app.state, "webhooks", None)
    if engine is None:
        raise HTTPException(503, "Webhook delivery engine is not running")
    return engine


def _check_events(events: list[str]) -> None:
    invalid = [evt for evt in events if evt not in VALID_EVENTS]
    if invalid:
        raise HTTPException(400, f"Invalid events: {', '.join(invalid)}")


async def _get_subscription_or_404(db: AsyncSession, subscription_id: int):
    sub = await SubscriptionRegistry(db).get(subscription_id)
    if not sub:
        raise HTTPException(404, "Webhook subscription not found")
    return sub


# ── Event types ──────────────────────────────────────────
@router.get("/events", response_model=list[str])
async def list_event_types():
    """List all available webhook event types."""
    return VALID_EVENTS


# ── Deliveries ───────────────────────────────────────────
@router.get("/deliveries/pending-retries", response_model=list[DeliveryOut])
async def list_pending_retries(
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """Deliveries waiting in ``retrying`` whose next attempt is due."""
    deliveries = await DeliveryLedger(db).find_pending_retries(limit=limit)
    return [DeliveryOut.from_model(d) for d in deliveries]


@router.get("/deliveries/entity/{entity_type}/{entity_id}", response_model=list[DeliveryOut])
async def list_entity_deliveries(
    entity_type: str,
    entity_id: int,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    deliveries = await DeliveryLedger(db).by_entity(entity_type, entity_id, limit=limit)
    return [DeliveryOut.from_model(d) for d in deliveries]


@router.post("/deliveries/cleanup", response_model=CleanupResult)
async def cleanup_deliveries(
    days_old: int = Query(90, ge=1),
    db: AsyncSession = Depends(get_db),
):
    deleted = await DeliveryLedger(db).delete_old_deliveries(days_old)
    return CleanupResult(deleted=deleted, days_old=days_old)


@router.get("/deliveries/{delivery_id}", response_model=DeliveryOut)
async def get_delivery(delivery_id: int, db: AsyncSession = Depends(get_db)):
    delivery = await DeliveryLedger(db).get(delivery_id)
    if not delivery:
        raise HTTPException(404, "Webhook delivery not found")
    return DeliveryOut.from_model(delivery)


@router.post("/deliveries/{delivery_id}/retry", response_model=DeliveryOut)
async def retry_delivery(delivery_id: int, engine: WebhookEngine = Depends(get_webhook_engine)):
    """Make a failed or retrying delivery due now and queue it."""
    try:
        delivery = await engine.scheduler.redeliver(delivery_id)
    except DeliveryNotRetryableError as exc:
        raise HTTPException(409, str(exc))
    if not delivery:
        raise HTTPException(404, "Webhook delivery not found")
    return DeliveryOut.from_model(delivery)


# ── Subscriptions ────────────────────────────────────────
@router.post("/", response_model=SubscriptionCreated, status_code=201)
async def create_subscription(data: SubscriptionCreate, db: AsyncSession = Depends(get_db)):
    """Register a subscription. The generated secret is only returned here."""
    _check_events(data.events)
    try:
        sub = await SubscriptionRegistry(db).create(**data.model_dump())
    except SubscriptionValidationError as exc:
        raise HTTPException(400, str(exc))
    return SubscriptionCreated.from_model(sub)


@router.get("/", response_model=list[SubscriptionOut])
async def list_subscriptions(
    active: Optional[bool] = None,
    db: AsyncSession = Depends(get_db),
):
    subs = await SubscriptionRegistry(db).list(active_only=bool(active))
    return [SubscriptionOut.from_model(s) for s in subs]


@router.get("/{subscription_id}", response_model=SubscriptionOut)
async def get_subscription(subscription_id: int, db: AsyncSession = Depends(get_db)):
    return SubscriptionOut.from_model(await _get_subscription_or_404(db, subscription_id))


@router.patch("/{subscription_id}", response_model=SubscriptionOut)
async def update_subscription(
    subscription_id: int,
    data: SubscriptionUpdate,
    db: AsyncSession = Depends(get_db),
):
    updates = data.model_dump(exclude_unset=True)
    if updates.get("events") is not None:
        _check_events(updates["events"])
    try:
        sub = await SubscriptionRegistry(db).update(subscription_id, **updates)
    except SubscriptionValidationError as exc:
        raise HTTPException(400, str(exc))
    if not sub:
        raise HTTPException(404, "Webhook subscription not found")
    return SubscriptionOut.from_model(sub)


@router.delete("/{subscription_id}", status_code=204)
async def delete_subscription(subscription_id: int, db: AsyncSession = Depends(get_db)):
    try:
        deleted = await SubscriptionRegistry(db).delete(subscription_id)
    except SubscriptionInUseError as exc:
        raise HTTPException(409, str(exc))
    if not deleted:
        raise HTTPException(404, "Webhook subscription not found")


@router.post("/{subscription_id}/test", response_model=WebhookTestResult)
async def test_subscription(
    subscription_id: int,
    db: AsyncSession = Depends(get_db),
    engine: WebhookEngine = Depends(get_webhook_engine),
):
    """Send a signed test ping to the endpoint. Nothing is recorded."""
    sub = await _get_subscription_or_404(db, subscription_id)
    result = await engine.executor.send_test(sub)
    if result.success:
        message = f"Test webhook delivered successfully ({result.status_code})"
    else:
        message = f"Test webhook failed: {result.error}"
    return WebhookTestResult(
        success=result.success,
        message=message,
        response_status=result.status_code,
        response_time_ms=result.elapsed_ms,
    )


@router.get("/{subscription_id}/deliveries", response_model=list[DeliveryOut])
async def list_subscription_deliveries(
    subscription_id: int,
    status: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """List delivery history for a subscription, newest first."""
    await _get_subscription_or_404(db, subscription_id)
    if status is not None and status not in VALID_STATUSES:
        raise HTTPException(400, f"Invalid status: {status}")
    deliveries = await DeliveryLedger(db).by_subscription(
        subscription_id, status=status, limit=limit, offset=skip,
    )
    return [DeliveryOut.from_model(d) for d in deliveries]


@router.get("/{subscription_id}/statistics", response_model=DeliveryStatistics)
async def get_subscription_statistics(
    subscription_id: int,
    days: int = Query(7, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
):
    await _get_subscription_or_404(db, subscription_id)
    return await DeliveryLedger(db).get_statistics(subscription_id, days)
