from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from src.api.main import app
from src.api.routes import webhooks
from src.api.routes.webhooks import _publish_tenant_status, _verify_and_parse_event
from src.core.dependencies import get_plan_change_engine


class _FakeRedis:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    async def set(self, *args, **kwargs):  # noqa: ANN002, ANN003
        self.calls.append(("set", args))
        return True

    async def publish(self, *args, **kwargs):  # noqa: ANN002, ANN003
        self.calls.append(("publish", args))
        return 1

    async def aclose(self) -> None:
        self.calls.append(("aclose", ()))


@pytest.fixture
def fake_redis(monkeypatch: pytest.MonkeyPatch) -> _FakeRedis:
    fake = _FakeRedis()
    monkeypatch.setattr(webhooks.redis, "from_url", lambda *args, **kwargs: fake)
    return fake


@pytest.fixture
def engine():  # noqa: ANN201
    fake = SimpleNamespace(complete_checkout=AsyncMock(), mark_gateway_subscription_canceled=AsyncMock())
    app.dependency_overrides[get_plan_change_engine] = lambda: fake
    yield fake
    app.dependency_overrides.clear()


def _event(event_type: str, object_id: str = "obj_1") -> bytes:
    return json.dumps({"type": event_type, "data": {"object": {"id": object_id}}}).encode()


def test_verify_and_parse_event_without_secret_parses_json(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(webhooks.settings, "stripe_webhook_secret", "")

    assert _verify_and_parse_event(b'{"type": "ping"}', None) == {"type": "ping"}
    with pytest.raises(HTTPException) as exc:
        _verify_and_parse_event(b"not json", None)
    assert exc.value.status_code == 400


def test_verify_and_parse_event_with_stripe_signature(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict] = []
    monkeypatch.setattr(webhooks.settings, "stripe_webhook_secret", "whsec_test")
    monkeypatch.setattr(webhooks.stripe.Webhook, "construct_event", lambda **kwargs: calls.append(kwargs))

    parsed = _verify_and_parse_event(_event("checkout.session.completed"), stripe_signature="sig_header")

    assert parsed["type"] == "checkout.session.completed"
    assert calls[0]["sig_header"] == "sig_header"
    assert calls[0]["secret"] == "whsec_test"


def test_verify_and_parse_event_rejects_bad_or_missing_signature(monkeypatch: pytest.MonkeyPatch) -> None:
    def _boom(**kwargs):  # noqa: ANN003
        raise ValueError("bad sig")

    monkeypatch.setattr(webhooks.settings, "stripe_webhook_secret", "whsec_test")
    monkeypatch.setattr(webhooks.stripe.Webhook, "construct_event", _boom)

    with pytest.raises(HTTPException) as invalid:
        _verify_and_parse_event(b"{}", stripe_signature="sig_header")
    with pytest.raises(HTTPException) as missing:
        _verify_and_parse_event(b"{}", stripe_signature=None)

    assert invalid.value.status_code == 400
    assert missing.value.status_code == 401


@pytest.mark.asyncio
async def test_publish_tenant_status(fake_redis: _FakeRedis) -> None:
    await _publish_tenant_status("t1", "active")

    assert fake_redis.calls == [
        ("set", ("tenant:subscription_status:t1", "active")),
        ("publish", ("billing:tenant_status:t1", "active")),
        ("aclose", ()),
    ]


def test_checkout_completed_activates_subscription(
    monkeypatch: pytest.MonkeyPatch, engine: SimpleNamespace, fake_redis: _FakeRedis
) -> None:
    monkeypatch.setattr(webhooks.settings, "stripe_webhook_secret", "")
    tenant_id = uuid4()
    engine.complete_checkout.return_value = SimpleNamespace(tenant_id=tenant_id, status="active")

    with TestClient(app) as client:
        res = client.post("/api/v1/webhooks/billing", content=_event("checkout.session.completed", "cs_1"))

    assert res.status_code == 200
    assert res.json() == {
        "received": True,
        "event_type": "checkout.session.completed",
        "object_id": "cs_1",
        "tenant_id": str(tenant_id),
        "updated": True,
    }
    engine.complete_checkout.assert_awaited_once_with("cs_1")
    assert ("publish", (f"billing:tenant_status:{tenant_id}", "active")) in fake_redis.calls


def test_unpaid_checkout_is_acknowledged_without_update(
    monkeypatch: pytest.MonkeyPatch, engine: SimpleNamespace, fake_redis: _FakeRedis
) -> None:
    monkeypatch.setattr(webhooks.settings, "stripe_webhook_secret", "")
    engine.complete_checkout.return_value = None

    with TestClient(app) as client:
        res = client.post("/api/v1/webhooks/billing", content=_event("checkout.session.completed"))

    assert res.json()["updated"] is False
    assert fake_redis.calls == []


def test_subscription_deleted_marks_canceled(
    monkeypatch: pytest.MonkeyPatch, engine: SimpleNamespace, fake_redis: _FakeRedis
) -> None:
    monkeypatch.setattr(webhooks.settings, "stripe_webhook_secret", "")
    tenant_id = uuid4()
    engine.mark_gateway_subscription_canceled.return_value = tenant_id

    with TestClient(app) as client:
        res = client.post("/api/v1/webhooks/billing", content=_event("customer.subscription.deleted", "sub_1"))

    assert res.json()["tenant_id"] == str(tenant_id)
    engine.mark_gateway_subscription_canceled.assert_awaited_once_with("sub_1")
    assert ("set", (f"tenant:subscription_status:{tenant_id}", "canceled")) in fake_redis.calls


def test_unhandled_events_are_acknowledged(monkeypatch: pytest.MonkeyPatch, engine: SimpleNamespace) -> None:
    monkeypatch.setattr(webhooks.settings, "stripe_webhook_secret", "")

    with TestClient(app) as client:
        res = client.post("/api/v1/webhooks/billing", content=_event("invoice.paid"))

    assert res.status_code == 200
    assert res.json()["updated"] is False
    assert res.json()["object_id"] is None
    engine.complete_checkout.assert_not_awaited()


def test_handled_event_without_object_id_is_rejected(
    monkeypatch: pytest.MonkeyPatch, engine: SimpleNamespace
) -> None:
    monkeypatch.setattr(webhooks.settings, "stripe_webhook_secret", "")

    with TestClient(app) as client:
        res = client.post(
            "/api/v1/webhooks/billing",
            content=json.dumps({"type": "customer.subscription.deleted", "data": {"object": {}}}).encode(),
        )

    assert res.status_code == 400
