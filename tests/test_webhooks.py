"""Tests for webhook models, signing and the management API."""

import json
from datetime import datetime, timezone

import pytest

from app.services.delivery_executor import DeliveryExecutor
from app.services.webhook_engine import WebhookEngine


# ── Model tests ──────────────────────────────────────────
def test_webhook_subscription_defaults():
    from app.models.webhook import WebhookSubscription
    sub = WebhookSubscription(name="ERP", url="https://example.com/hook", secret="s")
    assert sub.active is True
    assert sub.retry_enabled is True
    assert sub.max_retries == 3
    assert sub.retry_delay_seconds == 60
    assert sub.event_list == []
    assert sub.header_map == {}


def test_webhook_delivery_defaults():
    from app.models.webhook import WebhookDelivery
    d = WebhookDelivery(subscription_id=1, event_type="ncr.created", entity_type="NCR", entity_id=7)
    assert d.status == "pending"
    assert d.attempt == 0
    assert d.max_attempts == 1
    assert d.is_terminal is False


def test_subscription_event_list_bad_json():
    from app.models.webhook import WebhookSubscription
    sub = WebhookSubscription(name="x", url="https://x.com", secret="s", events="bad json")
    assert sub.event_list == []
    assert sub.subscribes_to("ncr.created") is False


def test_subscription_subscribes_to():
    from app.models.webhook import WebhookSubscription
    sub = WebhookSubscription(
        name="x", url="https://x.com", secret="s", events='["ncr.created", "capa.closed"]',
    )
    assert sub.subscribes_to("ncr.created")
    assert sub.subscribes_to("capa.closed")
    assert not sub.subscribes_to("ncr.closed")


def test_valid_events_list():
    from app.api.webhooks import VALID_EVENTS
    assert len(VALID_EVENTS) == 6
    assert "ncr.created" in VALID_EVENTS
    assert "capa.closed" in VALID_EVENTS


# ── Signing tests ────────────────────────────────────────
def test_sign_payload():
    from app.services.signing import sign_payload
    sig = sign_payload('{"event":"test"}', "secret123")
    assert isinstance(sig, str)
    assert len(sig) == 64  # SHA-256 hex


def test_sign_payload_consistency():
    from app.services.signing import sign_payload
    assert sign_payload("hello", "key") == sign_payload("hello", "key")


def test_sign_payload_different_secrets():
    from app.services.signing import sign_payload
    assert sign_payload("hello", "key1") != sign_payload("hello", "key2")


def test_sign_payload_known_vector():
    import hashlib
    import hmac
    from app.services.signing import sign_payload
    expected = hmac.new(b"key", b"hello", hashlib.sha256).hexdigest()
    assert sign_payload("hello", "key") == expected


def test_verify_signature():
    from app.services.signing import sign_payload, verify_signature
    body = '{"a":1}'
    sig = sign_payload(body, "k")
    assert verify_signature(body, sig, "k")
    assert not verify_signature(body + " ", sig, "k")
    assert not verify_signature(body, sig, "other")
    assert not verify_signature(body, "", "k")


def test_generate_secret_is_random_hex():
    from app.services.signing import generate_secret
    a, b = generate_secret(), generate_secret()
    assert a != b
    assert len(a) == 64
    int(a, 16)


def test_build_envelope_fields():
    from app.services.signing import build_envelope
    ts = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    body = build_envelope("ncr.created", "NCR", 7, 42, {"title": "Scratch"}, timestamp=ts)
    data = json.loads(body)
    assert data == {
        "eventType": "ncr.created",
        "entityType": "NCR",
        "entityId": 7,
        "deliveryId": 42,
        "timestamp": "2026-03-01T12:00:00+00:00",
        "data": {"title": "Scratch"},
    }


def test_build_envelope_is_deterministic():
    from app.services.signing import build_envelope
    ts = datetime(2026, 3, 1, tzinfo=timezone.utc)
    a = build_envelope("ncr.created", "NCR", 1, 1, {"b": 2, "a": 1}, timestamp=ts)
    b = build_envelope("ncr.created", "NCR", 1, 1, {"a": 1, "b": 2}, timestamp=ts)
    assert a == b
    assert " " not in a


def test_serialize_envelope_stringifies_unknown_types():
    from app.services.signing import serialize_envelope
    ts = datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert json.loads(serialize_envelope({"at": ts})) == {"at": str(ts)}


# ── API endpoint tests ──────────────────────────────────
SUB_PAYLOAD = {
    "name": "ERP connector",
    "url": "https://erp.example.com/hooks",
    "events": ["ncr.created", "capa.closed"],
}


@pytest.fixture
def engine_on_app(http_client):
    from app.main import app
    engine = WebhookEngine(client=http_client)
    app.state.webhooks = engine
    yield engine
    app.state.webhooks = None


@pytest.mark.asyncio
async def test_list_event_types(client):
    resp = await client.get("/api/v1/webhooks/events")
    assert resp.status_code == 200
    events = resp.json()
    assert isinstance(events, list)
    assert "ncr.created" in events


@pytest.mark.asyncio
async def test_create_subscription_returns_secret_once(client):
    resp = await client.post("/api/v1/webhooks/", json=SUB_PAYLOAD)
    assert resp.status_code == 201
    created = resp.json()
    assert len(created["secret"]) == 64
    assert created["events"] == ["ncr.created", "capa.closed"]
    assert created["max_retries"] == 3

    resp = await client.get(f"/api/v1/webhooks/{created['id']}")
    assert resp.status_code == 200
    assert "secret" not in resp.json()


@pytest.mark.asyncio
async def test_create_subscription_invalid_event(client):
    resp = await client.post("/api/v1/webhooks/", json={**SUB_PAYLOAD, "events": ["invalid.event.type"]})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_create_subscription_rejects_plain_http(client):
    resp = await client.post("/api/v1/webhooks/", json={**SUB_PAYLOAD, "url": "http://erp.example.com"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_create_subscription_out_of_range_retry_policy(client):
    resp = await client.post("/api/v1/webhooks/", json={**SUB_PAYLOAD, "max_retries": 11})
    assert resp.status_code == 422
    resp = await client.post("/api/v1/webhooks/", json={**SUB_PAYLOAD, "retry_delay_seconds": 5})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_list_subscriptions_active_filter(client):
    first = (await client.post("/api/v1/webhooks/", json=SUB_PAYLOAD)).json()
    await client.post("/api/v1/webhooks/", json={**SUB_PAYLOAD, "name": "Second"})
    await client.patch(f"/api/v1/webhooks/{first['id']}", json={"active": False})

    resp = await client.get("/api/v1/webhooks/")
    assert resp.status_code == 200
    assert len(resp.json()) == 2

    resp = await client.get("/api/v1/webhooks/", params={"active": True})
    names = [s["name"] for s in resp.json()]
    assert names == ["Second"]


@pytest.mark.asyncio
async def test_update_subscription(client):
    created = (await client.post("/api/v1/webhooks/", json=SUB_PAYLOAD)).json()
    resp = await client.patch(f"/api/v1/webhooks/{created['id']}", json={
        "events": ["ncr.closed"],
        "custom_headers": {"X-Tenant": "acme"},
    })
    assert resp.status_code == 200
    body = resp.json()
    assert body["events"] == ["ncr.closed"]
    assert body["custom_headers"] == {"X-Tenant": "acme"}
    assert body["name"] == SUB_PAYLOAD["name"]


@pytest.mark.asyncio
async def test_update_subscription_404(client):
    resp = await client.patch("/api/v1/webhooks/999", json={"active": False})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_get_subscription_404(client):
    resp = await client.get("/api/v1/webhooks/999")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_delete_subscription(client):
    created = (await client.post("/api/v1/webhooks/", json=SUB_PAYLOAD)).json()
    resp = await client.delete(f"/api/v1/webhooks/{created['id']}")
    assert resp.status_code == 204
    resp = await client.get(f"/api/v1/webhooks/{created['id']}")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_delete_subscription_404(client):
    resp = await client.delete("/api/v1/webhooks/999")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_delete_subscription_with_pending_deliveries_conflicts(client, event_router):
    created = (await client.post("/api/v1/webhooks/", json=SUB_PAYLOAD)).json()
    await event_router.route("ncr.created", "NCR", 1, {})
    resp = await client.delete(f"/api/v1/webhooks/{created['id']}")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_delivery_history_and_statistics(client, event_router, executor):
    created = (await client.post("/api/v1/webhooks/", json=SUB_PAYLOAD)).json()
    [delivery] = await event_router.route("ncr.created", "NCR", 5, {"title": "Burr"})
    await executor.execute(delivery.id)

    resp = await client.get(f"/api/v1/webhooks/{created['id']}/deliveries")
    assert resp.status_code == 200
    [row] = resp.json()
    assert row["status"] == "success"
    assert row["request_payload"]["data"] == {"title": "Burr"}
    assert row["request_headers"]["X-Webhook-Event"] == "ncr.created"

    resp = await client.get(f"/api/v1/webhooks/{created['id']}/deliveries", params={"status": "failed"})
    assert resp.json() == []

    resp = await client.get(f"/api/v1/webhooks/{created['id']}/statistics")
    assert resp.status_code == 200
    stats = resp.json()
    assert stats["total"] == 1
    assert stats["success"] == 1
    assert stats["success_rate"] == 100.0

    resp = await client.get(f"/api/v1/webhooks/deliveries/{delivery.id}")
    assert resp.status_code == 200
    assert resp.json()["attempt"] == 1

    resp = await client.get("/api/v1/webhooks/deliveries/entity/NCR/5")
    assert [d["id"] for d in resp.json()] == [delivery.id]


@pytest.mark.asyncio
async def test_delivery_history_invalid_status(client):
    created = (await client.post("/api/v1/webhooks/", json=SUB_PAYLOAD)).json()
    resp = await client.get(f"/api/v1/webhooks/{created['id']}/deliveries", params={"status": "bogus"})
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_get_delivery_404(client):
    resp = await client.get("/api/v1/webhooks/deliveries/999")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_cleanup_endpoint(client):
    resp = await client.post("/api/v1/webhooks/deliveries/cleanup", params={"days_old": 30})
    assert resp.status_code == 200
    assert resp.json() == {"deleted": 0, "days_old": 30}


@pytest.mark.asyncio
async def test_engine_endpoints_unavailable_without_engine(client):
    created = (await client.post("/api/v1/webhooks/", json=SUB_PAYLOAD)).json()
    resp = await client.post(f"/api/v1/webhooks/{created['id']}/test")
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_send_test_ping(client, engine_on_app, receiver):
    from app.services.signing import verify_signature
    created = (await client.post("/api/v1/webhooks/", json=SUB_PAYLOAD)).json()

    resp = await client.post(f"/api/v1/webhooks/{created['id']}/test")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["response_status"] == 200

    [request] = receiver.requests
    assert request.headers["X-Webhook-Event"] == "test.ping"
    assert verify_signature(request.content.decode(), request.headers["X-Webhook-Signature"], created["secret"])

    # Pings are not recorded
    resp = await client.get(f"/api/v1/webhooks/{created['id']}/deliveries")
    assert resp.json() == []


@pytest.mark.asyncio
async def test_send_test_ping_failure(client, engine_on_app, receiver):
    receiver.outcomes = [500]
    created = (await client.post("/api/v1/webhooks/", json=SUB_PAYLOAD)).json()
    resp = await client.post(f"/api/v1/webhooks/{created['id']}/test")
    body = resp.json()
    assert body["success"] is False
    assert body["response_status"] == 500
    assert "HTTP 500" in body["message"]


@pytest.mark.asyncio
async def test_manual_retry_of_failed_delivery(client, engine_on_app, receiver):
    receiver.outcomes = [500]
    await client.post("/api/v1/webhooks/", json={**SUB_PAYLOAD, "retry_enabled": False})
    [delivery] = await engine_on_app.router.route("ncr.created", "NCR", 3, {})
    await engine_on_app.executor.execute(delivery.id)

    resp = await client.get(f"/api/v1/webhooks/deliveries/{delivery.id}")
    assert resp.json()["status"] == "failed"

    resp = await client.post(f"/api/v1/webhooks/deliveries/{delivery.id}/retry")
    assert resp.status_code == 200
    assert resp.json()["status"] == "retrying"
    assert resp.json()["max_attempts"] == 2

    await engine_on_app.queue.join()
    resp = await client.get(f"/api/v1/webhooks/deliveries/{delivery.id}")
    assert resp.json()["status"] == "success"
    assert resp.json()["attempt"] == 2
    assert len(receiver.requests) == 2


@pytest.mark.asyncio
async def test_manual_retry_of_successful_delivery_conflicts(client, engine_on_app):
    await client.post("/api/v1/webhooks/", json=SUB_PAYLOAD)
    [delivery] = await engine_on_app.router.route("ncr.created", "NCR", 3, {})
    await engine_on_app.executor.execute(delivery.id)

    resp = await client.post(f"/api/v1/webhooks/deliveries/{delivery.id}/retry")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_manual_retry_404(client, engine_on_app):
    resp = await client.post("/api/v1/webhooks/deliveries/999/retry")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_executor_uses_configured_user_agent():
    executor = DeliveryExecutor()
    headers = executor.build_headers("ncr.created", 1, 1, "{}", "k")
    assert headers["User-Agent"] == "E-QMS-Webhook/1.0"


@pytest.mark.asyncio
async def test_update_subscription_rejects_null_flags(client):
    created = (await client.post("/api/v1/webhooks/", json=SUB_PAYLOAD)).json()
    resp = await client.patch(f"/api/v1/webhooks/{created['id']}", json={"active": None, "retry_enabled": None})
    assert resp.status_code == 400

    resp = await client.get(f"/api/v1/webhooks/{created['id']}")
    body = resp.json()
    assert body["active"] is True
    assert body["retry_enabled"] is True


@pytest.mark.asyncio
async def test_update_subscription_strips_name(client):
    created = (await client.post("/api/v1/webhooks/", json=SUB_PAYLOAD)).json()
    resp = await client.patch(f"/api/v1/webhooks/{created['id']}", json={"name": "  Renamed  "})
    assert resp.status_code == 200
    assert resp.json()["name"] == "Renamed"


@pytest.mark.asyncio
async def test_create_inactive_subscription(client):
    resp = await client.post("/api/v1/webhooks/", json={**SUB_PAYLOAD, "active": False})
    assert resp.status_code == 201
    assert resp.json()["active"] is False

    resp = await client.get("/api/v1/webhooks/", params={"active": True})
    assert resp.json() == []


@pytest.mark.asyncio
async def test_create_subscription_rejects_non_ascii_header(client):
    resp = await client.post("/api/v1/webhooks/", json={**SUB_PAYLOAD, "custom_headers": {"X-Site": "Zürich"}})
    assert resp.status_code == 400
