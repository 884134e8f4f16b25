from __future__ import annotations

import json
import types

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from fuelrefund.api.routes.billing_webhooks import router as billing_router


@pytest.fixture(scope="module")
def app_client():
    app = FastAPI()
    app.include_router(billing_router)
    return TestClient(app)


def _fake_event(event_type: str, data_object: dict, event_id: str = "evt_test_1"):
    return {
        "id": event_id,
        "type": event_type,
        "data": {"object": data_object},
    }


class DummyStripe:
    class SignatureVerificationError(Exception):
        pass

    class Webhook:
        calls = []

        @staticmethod
        def construct_event(payload, sig_header, secret):
            DummyStripe.Webhook.calls.append((payload, sig_header, secret))
            if secret != "good":
                raise DummyStripe.SignatureVerificationError("bad secret")
            return json.loads(payload.decode("utf-8"))


class DummyRedis:
    def __init__(self):
        self.store = set()

    def set(self, name, value, nx=True, ex=None):
        if name in self.store:
            return False
        self.store.add(name)
        return True

    def delete(self, name):
        self.store.discard(name)


@pytest.fixture
def sent(monkeypatch):
    import fuelrefund.api.routes.billing_webhooks as wh
    from fuelrefund.core import config as cfg

    monkeypatch.setattr(wh, "stripe", DummyStripe)
    monkeypatch.setattr(cfg.settings, "STRIPE_WEBHOOK_SECRET", None, raising=False)
    monkeypatch.setattr(cfg.settings, "STRIPE_WEBHOOK_SECRETS", "bad, good", raising=False)
    redis_singleton = DummyRedis()
    monkeypatch.setattr(wh, "_get_redis_client", lambda: redis_singleton)
    calls: list[dict] = []
    monkeypatch.setattr(wh, "process_billing_event", types.SimpleNamespace(send=lambda evt: calls.append(evt)))
    return calls


def _post(client, event):
    return client.post(
        "/webhooks/stripe",
        content=json.dumps(event).encode("utf-8"),
        headers={"stripe-signature": "stub"},
    )


def test_webhook_multi_secret_and_dedup(app_client, sent):
    event = _fake_event("checkout.session.completed", {"id": "cs_test_1", "metadata": {"accountId": "1"}})

    resp = _post(app_client, event)
    assert resp.status_code == 200
    assert resp.json() == {"received": True, "queued": True}
    assert sent == [event]

    resp2 = _post(app_client, event)
    assert resp2.status_code == 200
    assert resp2.json().get("duplicate") is True
    assert len(sent) == 1


def test_webhook_rejects_when_all_secrets_invalid(monkeypatch, app_client, sent):
    from fuelrefund.core import config as cfg

    monkeypatch.setattr(cfg.settings, "STRIPE_WEBHOOK_SECRETS", "bad", raising=False)
    resp = _post(app_client, _fake_event("checkout.session.completed", {"id": "cs_bad"}, event_id="evt_bad"))
    assert resp.status_code == 400
    assert sent == []


def test_webhook_without_secrets_is_a_server_error(monkeypatch, app_client, sent):
    from fuelrefund.core import config as cfg

    monkeypatch.setattr(cfg.settings, "STRIPE_WEBHOOK_SECRETS", None, raising=False)
    resp = _post(app_client, _fake_event("checkout.session.completed", {}, event_id="evt_cfg"))
    assert resp.status_code == 500


def test_failed_enqueue_allows_provider_retry(monkeypatch, sent):
    import fuelrefund.api.routes.billing_webhooks as wh

    def _boom(evt):
        raise ConnectionError("broker down")

    monkeypatch.setattr(wh, "process_billing_event", types.SimpleNamespace(send=_boom))
    event = _fake_event("customer.subscription.deleted", {"id": "sub_1"}, event_id="evt_retry")

    app = FastAPI()
    app.include_router(billing_router)
    client = TestClient(app, raise_server_exceptions=False)
    assert _post(client, event).status_code == 500

    monkeypatch.setattr(wh, "process_billing_event", types.SimpleNamespace(send=lambda evt: sent.append(evt)))
    resp = _post(client, event)
    assert resp.json().get("queued") is True
    assert sent == [event]
