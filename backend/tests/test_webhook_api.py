"""Webhook receiver API tests"""
import json

import pytest

from app.core.config import settings


def _event(event_type="payment_intent.succeeded", event_id="evt_api_1", account=None):
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "account": account,
        "livemode": False,
        "created": 1700000000,
        "data": {"object": {"id": "pi_api_1", "object": "payment_intent", "metadata": {"orderId": "order_1"}}},
    }


@pytest.mark.critical
class TestWebhookVerification:
    """Signature verification and the development fallback"""

    def test_signed_delivery_is_queued(self, client, webhook_pool, signed_delivery):
        """A correctly signed delivery is acknowledged and handed to the pool"""
        body, headers = signed_delivery(_event(account="acct_connected"))
        response = client.post("/webhooks/stripe", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert len(webhook_pool.events) == 1
        event = webhook_pool.events[0]
        assert event.id == "evt_api_1"
        assert event.type == "payment_intent.succeeded"
        assert event.account == "acct_connected"
        assert event.data_object["metadata"]["orderId"] == "order_1"

    def test_bad_signature_rejected_in_production(self, client, webhook_pool, signed_delivery, monkeypatch):
        """Production never processes a body whose signature does not verify"""
        monkeypatch.setattr(settings, "ENVIRONMENT", "production")
        monkeypatch.setattr(settings, "ALLOW_UNVERIFIED_WEBHOOKS", True)
        body, headers = signed_delivery(_event(), secret="whsec_wrong")

        response = client.post("/webhooks/stripe", content=body, headers=headers)

        assert response.status_code == 400
        assert webhook_pool.events == []

    def test_missing_signature_rejected_in_production(self, client, webhook_pool, monkeypatch):
        monkeypatch.setattr(settings, "ENVIRONMENT", "production")
        response = client.post("/webhooks/stripe", content=json.dumps(_event()))

        assert response.status_code == 400
        assert webhook_pool.events == []

    def test_missing_secret_rejected_in_production(self, client, webhook_pool, signed_delivery, monkeypatch):
        """An unset signing secret counts as a verification failure"""
        monkeypatch.setattr(settings, "ENVIRONMENT", "production")
        body, headers = signed_delivery(_event())
        monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")

        response = client.post("/webhooks/stripe", content=body, headers=headers)

        assert response.status_code == 400
        assert webhook_pool.events == []

    def test_unverified_body_accepted_in_development(self, client, webhook_pool, monkeypatch):
        """Outside production the unsigned body is processed when the flag allows it"""
        monkeypatch.setattr(settings, "ENVIRONMENT", "development")
        monkeypatch.setattr(settings, "ALLOW_UNVERIFIED_WEBHOOKS", True)

        response = client.post("/webhooks/stripe", content=json.dumps(_event()))

        assert response.status_code == 200
        assert len(webhook_pool.events) == 1

    def test_unverified_body_rejected_when_flag_off(self, client, webhook_pool, monkeypatch):
        monkeypatch.setattr(settings, "ENVIRONMENT", "development")
        monkeypatch.setattr(settings, "ALLOW_UNVERIFIED_WEBHOOKS", False)

        response = client.post("/webhooks/stripe", content=json.dumps(_event()))

        assert response.status_code == 400
        assert webhook_pool.events == []

    def test_unparseable_unverified_body_rejected(self, client, webhook_pool, monkeypatch):
        monkeypatch.setattr(settings, "ENVIRONMENT", "development")
        monkeypatch.setattr(settings, "ALLOW_UNVERIFIED_WEBHOOKS", True)

        response = client.post("/webhooks/stripe", content="not json")

        assert response.status_code == 400
        assert webhook_pool.events == []

    def test_malformed_unverified_event_rejected(self, client, webhook_pool, monkeypatch):
        monkeypatch.setattr(settings, "ENVIRONMENT", "development")
        monkeypatch.setattr(settings, "ALLOW_UNVERIFIED_WEBHOOKS", True)
        event = _event()
        event["id"] = 12345

        response = client.post("/webhooks/stripe", content=json.dumps(event))

        assert response.status_code == 400
        assert webhook_pool.events == []


@pytest.mark.high
class TestWebhookBackpressure:
    """Load shedding when the worker queue is full"""

    def test_full_queue_returns_503(self, client, webhook_pool, signed_delivery):
        webhook_pool.full = True
        body, headers = signed_delivery(_event())

        response = client.post("/webhooks/stripe", content=body, headers=headers)

        assert response.status_code == 503
        assert webhook_pool.events == []


@pytest.mark.high
class TestWebhookTestEndpoint:
    """Configuration report endpoint"""

    def test_reports_configuration(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ENVIRONMENT", "production")
        response = client.get("/webhooks/stripe/test")

        assert response.status_code == 200
        data = response.json()
        assert data["webhook_secret_configured"] is True
        assert data["environment"] == "production"
        assert data["unverified_webhooks_allowed"] is False


@pytest.mark.high
class TestOperationalEndpoints:
    """Health and metrics"""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_metrics_exposes_webhook_counters(self, client, signed_delivery):
        body, headers = signed_delivery(_event())
        client.post("/webhooks/stripe", content=body, headers=headers)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "stagepass_webhook_events_received_total" in response.text
