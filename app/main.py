"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api import webhooks
from app.config import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: ensure tables exist, then start the delivery engine
    from app.database import Base, engine
    from app.services.webhook_engine import WebhookEngine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    webhook_engine = None
    if settings.webhook_engine_enabled:
        webhook_engine = WebhookEngine(settings=settings)
        await webhook_engine.start()
    app.state.webhooks = webhook_engine

    yield

    if webhook_engine is not None:
        await webhook_engine.stop()


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description="Outbound webhook delivery for E-QMS domain events",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(webhooks.router, prefix="/api/v1")


@app.get("/health")
async def health():
    engine = getattr(app.state, "webhooks", None)
    return {
        "status": "ok",
        "app": settings.app_name,
        "webhook_engine": bool(engine and engine.queue.is_running),
    }
