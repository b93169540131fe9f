"""SQLAlchemy models — portable across SQLite and PostgreSQL."""

from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator


def utcnow():
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime stored as naive UTC and always read back timezone-aware.

    SQLite drops tzinfo on the way in, so values are normalised here to keep
    comparisons against ``utcnow()`` valid on both backends.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


from app.models.webhook import (  # noqa: E402
    DeliveryStatus,
    WebhookDelivery,
    WebhookEntityType,
    WebhookEvent,
    WebhookSubscription,
)

__all__ = [
    "DeliveryStatus",
    "UTCDateTime",
    "WebhookDelivery",
    "WebhookEntityType",
    "WebhookEvent",
    "WebhookSubscription",
    "utcnow",
]
