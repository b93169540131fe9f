"""Envelope serialization and HMAC signing for outbound webhooks."""

import hashlib
import hmac
import json
import secrets
from datetime import datetime
from typing import Any, Optional

from app.models import utcnow


def serialize_envelope(envelope: dict) -> str:
    """Deterministic JSON: sorted keys, no whitespace, non-JSON values stringified."""
    return json.dumps(envelope, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)


def build_envelope(
    event_type: str,
    entity_type: str,
    entity_id: int,
    delivery_id: int,
    payload: Optional[dict[str, Any]],
    timestamp: Optional[datetime] = None,
) -> str:
    """Wrap a raw event payload with routing metadata and serialize it."""
    return serialize_envelope({
        "eventType": event_type,
        "entityType": entity_type,
        "entityId": entity_id,
        "deliveryId": delivery_id,
        "timestamp": (timestamp or utcnow()).isoformat(),
        "data": payload or {},
    })


def sign_payload(payload: str, secret: str) -> str:
    """Generate HMAC-SHA256 signature for webhook payload."""
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def verify_signature(payload: str, signature: str, secret: str) -> bool:
    """Constant-time check of a received signature against the expected one."""
    return hmac.compare_digest(sign_payload(payload, secret), signature or "")


def generate_secret() -> str:
    return secrets.token_hex(32)
