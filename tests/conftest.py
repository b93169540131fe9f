"""Test fixtures — fresh tables per test, scripted HTTP receiver, engine parts."""

import os
from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Force SQLite test database *before* any app import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_eqms_webhooks.db"
os.environ["WEBHOOK_ENGINE_ENABLED"] = "false"

from app.database import Base, async_session, engine  # noqa: E402
from app.main import app  # noqa: E402
from app.models.webhook import WebhookDelivery  # noqa: E402
from app.services.delivery_executor import DeliveryExecutor  # noqa: E402
from app.services.delivery_queue import DeliveryQueue  # noqa: E402
from app.services.event_router import EventRouter  # noqa: E402
from app.services.retry_scheduler import RetryScheduler  # noqa: E402
from app.services.subscription_registry import SubscriptionRegistry  # noqa: E402


class ScriptedEndpoint:
    """Fake subscriber: answers with queued outcomes and records every request.

    An outcome is an HTTP status code or an exception to raise. Once the
    script runs out every request gets a 200.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else 200
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, text="ok" if 200 <= outcome < 300 else "boom")


@pytest_asyncio.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db():
    async with async_session() as session:
        yield session


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def receiver() -> ScriptedEndpoint:
    return ScriptedEndpoint()


@pytest_asyncio.fixture
async def http_client(receiver) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(receiver)) as hc:
        yield hc


@pytest.fixture
def executor(http_client) -> DeliveryExecutor:
    return DeliveryExecutor(async_session, client=http_client)


@pytest.fixture
def queue() -> DeliveryQueue:
    return DeliveryQueue(workers=2)


@pytest.fixture
def event_router(executor, queue) -> EventRouter:
    return EventRouter(executor, queue, async_session)


@pytest.fixture
def scheduler(executor) -> RetryScheduler:
    # No queue: due retries run inline so tests can assert right after poll_once()
    return RetryScheduler(executor, async_session)


@pytest_asyncio.fixture
async def subscription(db):
    return await SubscriptionRegistry(db).create(
        name="Quality dashboard",
        url="https://hooks.example.com/eqms",
        events=["ncr.created"],
        max_retries=3,
        retry_delay_seconds=60,
        created_by=1,
    )


@pytest.fixture
def reload(db):
    """Fetch the committed state of a delivery written by another session."""

    async def _reload(delivery_id: int) -> WebhookDelivery:
        return await db.get(WebhookDelivery, delivery_id, populate_existing=True)

    return _reload
