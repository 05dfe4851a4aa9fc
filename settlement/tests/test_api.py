"""
Tests for the settlement HTTP API

Tests cover:
1. Error codes mapped to HTTP statuses
2. License and payout endpoints
3. Webhook intake with and without signature verification
"""

import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient

from settlement.api import create_app
from settlement.config import Settings
from settlement.tests import factories

WEBHOOK_SECRET = "whsec_test_secret"


def sign(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def client(market):
    settings = Settings(_env_file=None)
    return TestClient(create_app(service=market.service, settings=settings))


@pytest.fixture
def signed_client(market):
    settings = Settings(_env_file=None, stripe_webhook_secret=WEBHOOK_SECRET)
    return TestClient(create_app(service=market.service, settings=settings))


def request_license(client, market):
    response = client.post(
        "/licenses",
        json={"media_id": str(market.media.id), "license_type": "commercial"},
        headers={"X-Business-Id": str(market.licensee.id)},
    )
    assert response.status_code == 201
    return response.json()


class TestSystemEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_tier_splits(self, client):
        response = client.get("/tiers/splits", params={"amount": "100"})

        assert response.status_code == 200
        splits = response.json()
        assert splits["partner"]["creator_share"] == "87.12"
        assert splits["free"]["creator_share"] == "77.44"

    def test_tier_listing(self, client):
        response = client.get("/tiers")

        assert response.status_code == 200
        tiers = response.json()
        assert tiers["free"]["limits"]["active_licenses"] == 3
        assert tiers["free"]["features"] == []
        assert "poolCreation" in tiers["partner"]["features"]
        assert tiers["partner"]["limits"]["upload"] is None


class TestLicenseEndpoints:
    def test_request_license(self, client, market):
        license = request_license(client, market)
        assert license["status"] == "pending"
        assert license["licensor_id"] == str(market.licensor.id)

    def test_wrong_approver_forbidden(self, client, market):
        license = request_license(client, market)

        response = client.post(f"/licenses/{license['id']}/approve",
                               headers={"X-Business-Id": str(market.licensee.id)})

        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "not_licensor"

    def test_cancel_pending_conflicts(self, client, market):
        license = request_license(client, market)

        response = client.post(f"/licenses/{license['id']}/cancel",
                               headers={"X-Business-Id": str(market.licensee.id)})

        assert response.status_code == 409

    def test_missing_business_header(self, client, market):
        response = client.post("/licenses", json={"media_id": str(market.media.id),
                                                  "license_type": "commercial"})
        assert response.status_code == 422

    def test_initiate_payment(self, client, market):
        license = request_license(client, market)

        response = client.post(f"/licenses/{license['id']}/payments",
                               headers={"X-Business-Id": str(market.licensee.id)})

        assert response.status_code == 201
        body = response.json()
        assert body["payment_reference"] == "pi_test_1"
        assert body["client_secret"] == "pi_test_1_secret"


class TestMoneyEndpoints:
    def test_unknown_transaction(self, client):
        response = client.get("/transactions/00000000-0000-0000-0000-000000000000")
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "transaction_not_found"

    def test_payout_below_minimum(self, client, market):
        response = client.post("/payouts", json={"amount": 10},
                               headers={"X-Business-Id": str(market.licensor.id)})

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["error"] == "below_minimum"
        assert detail["limit"] == "25.00"

    def test_business_history(self, client, market):
        response = client.get(f"/businesses/{market.licensor.id}/transactions", params={"status": "completed"})
        assert response.status_code == 200
        assert response.json() == []


class TestWebhookEndpoint:
    def test_unsigned_event_accepted_without_secret(self, client, market):
        license = request_license(client, market)
        event = factories.payment_succeeded("pi_webhook", 10000, license["id"])

        response = client.post("/webhooks/stripe", content=json.dumps(event))

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert market.storage.find_transaction(payment_intent="pi_webhook").status.value == "completed"

    def test_invalid_json_rejected(self, client):
        response = client.post("/webhooks/stripe", content="not json")
        assert response.status_code == 400

    def test_missing_signature_rejected(self, signed_client):
        payload = json.dumps(factories.envelope("customer.created", {"id": "cus_1"}))
        response = signed_client.post("/webhooks/stripe", content=payload)
        assert response.status_code == 400

    def test_bad_signature_rejected(self, signed_client):
        payload = json.dumps(factories.envelope("customer.created", {"id": "cus_1"}))
        response = signed_client.post("/webhooks/stripe", content=payload,
                                      headers={"Stripe-Signature": sign(payload, "whsec_other")})
        assert response.status_code == 400

    def test_signed_event_accepted(self, signed_client, market):
        payload = json.dumps(factories.account_updated("acct_licensor", market.licensor.id))

        response = signed_client.post("/webhooks/stripe", content=payload,
                                      headers={"Stripe-Signature": sign(payload)})

        assert response.status_code == 200
        assert market.storage.get_business(market.licensor.id).payouts_enabled


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
