"""
Tests for src/routes/payments.py and src/routes/health.py

HTTP behaviour of the checkout, portal, usage and webhook endpoints. Services are
patched where the route imports them; the webhook signature tests use the
real Stripe verifier.
"""

import json
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

import src.services.webhooks as webhooks_mod
from src.main import create_app
from src.routes.payments import parse_json_body
from src.services.webhooks import RESULT_DUPLICATE, RESULT_PROCESSED
from src.utils.exceptions import (
    BillingConfigurationError,
    CustomerNotFoundError,
    InvalidRequestError,
    UpstreamBillingError,
)
from tests.helpers.stripe_events import make_event, sign_payload

WEBHOOK_SECRET = "whsec_route_test"
SESSION = {"id": "cs_test_1", "url": "https://checkout.stripe.com/c/pay/cs_test_1"}


@pytest.fixture
def client():
    return TestClient(create_app())


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(webhooks_mod, "get_webhook_secret", lambda: WEBHOOK_SECRET)
    return WEBHOOK_SECRET


def _signed_webhook(client, event, secret=WEBHOOK_SECRET):
    payload = json.dumps(event)
    return client.post(
        "/stripe/webhook",
        content=payload,
        headers={"stripe-signature": sign_payload(payload, secret), "Content-Type": "application/json"},
    )


class TestParseJsonBody:
    def test_object(self):
        assert parse_json_body(b'{"tier": "basic"}') == {"tier": "basic"}

    def test_json_encoded_string(self):
        assert parse_json_body(json.dumps('{"tier": "basic"}').encode()) == {"tier": "basic"}

    def test_empty_body(self):
        assert parse_json_body(b"") == {}

    @pytest.mark.parametrize("raw", [b"{not json", b"[1, 2]", b'"not an object"'])
    def test_invalid(self, raw):
        with pytest.raises(InvalidRequestError) as exc_info:
            parse_json_body(raw)
        assert exc_info.value.code == "invalid_json"


class TestHealthz:
    def test_ok(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert "timestamp" in response.json()


class TestCheckoutRoutes:
    @pytest.mark.parametrize("path", ["/stripe/create-checkout-session", "/api/pay/checkout"])
    def test_returns_url_and_id(self, client, path):
        with patch("src.routes.payments.create_checkout_session_for_tier", return_value=SESSION) as builder:
            response = client.post(path, json={"tier": "basic", "uid": "u1", "email": "a@b.co"})

        assert response.status_code == 200
        assert response.json() == {"url": SESSION["url"], "id": SESSION["id"]}
        kwargs = builder.call_args.kwargs
        assert kwargs["tier"] == "basic"
        assert kwargs["uid"] == "u1"

    def test_text_plain_json_string_body(self, client):
        body = json.dumps(json.dumps({"tier": "medium", "quantity": "2"}))
        with patch("src.routes.payments.create_checkout_session_for_tier", return_value=SESSION) as builder:
            response = client.post(
                "/stripe/create-checkout-session", content=body, headers={"Content-Type": "text/plain"}
            )

        assert response.status_code == 200
        assert builder.call_args.kwargs["tier"] == "medium"
        assert builder.call_args.kwargs["quantity"] == "2"

    def test_idempotency_header_is_forwarded(self, client):
        with patch("src.routes.payments.create_checkout_session_for_tier", return_value=SESSION) as builder:
            client.post(
                "/stripe/create-checkout-session",
                json={"tier": "basic"},
                headers={"Idempotency-Key": "req-1"},
            )

        assert builder.call_args.kwargs["request_id"] == "req-1"

    def test_invalid_json(self, client):
        response = client.post("/stripe/create-checkout-session", content=b"{oops")

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_json"

    def test_tier_or_price_required(self, client):
        with patch("src.routes.payments.create_checkout_session_for_tier") as builder:
            response = client.post("/stripe/create-checkout-session", json={"uid": "u1"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_tier"
        builder.assert_not_called()

    def test_upstream_error_status_and_code(self, client):
        error = UpstreamBillingError("Stripe unavailable", code="checkout_failed")
        with patch("src.routes.payments.create_checkout_session_for_tier", side_effect=error):
            response = client.post("/stripe/create-checkout-session", json={"tier": "basic"})

        assert response.status_code == 502
        assert response.json() == {"error": "checkout_failed", "message": "Stripe unavailable"}

    def test_unexpected_error_is_500(self, client):
        with patch("src.routes.payments.create_checkout_session_for_tier", side_effect=KeyError("url")):
            response = client.post("/stripe/create-checkout-session", json={"tier": "basic"})

        assert response.status_code == 500
        assert response.json()["error"] == "checkout_failed"


class TestPortalRoute:
    def test_customer_not_found(self, client):
        with patch("src.routes.payments.create_portal_session", side_effect=CustomerNotFoundError()):
            response = client.post("/stripe/create-portal-session", json={"uid": "u1"})

        assert response.status_code == 404
        assert response.json()["error"] == "customer_not_found"

    def test_missing_identity(self, client, mock_stripe):
        response = client.post("/stripe/create-portal-session", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "missing_identity"

    def test_success(self, client):
        portal = {"id": "bps_1", "url": "https://billing.stripe.com/p/session/bps_1"}
        with patch("src.routes.payments.create_portal_session", return_value=portal):
            response = client.post("/stripe/create-portal-session", json={"email": "a@b.co"})

        assert response.status_code == 200
        assert response.json() == {"url": portal["url"], "id": "bps_1"}


class TestUsageRoute:
    def test_free_user_counts_courtesy_allowance(self, client, fake_supabase):
        fake_supabase.rows("users").append({"id": "u1", "tier": "free", "exchanges_used": 4})

        response = client.get("/billing/usage", params={"uid": "u1"})

        assert response.status_code == 200
        body = response.json()
        assert body["base_allowance"] == 10
        assert body["courtesy_allowance"] == 12
        assert body["remaining_messages"] == 18

    def test_billing_allowance_is_returned(self, client, fake_supabase):
        fake_supabase.rows("users").append(
            {
                "id": "u1",
                "tier": "pro",
                "exchanges_used": 150,
                "billing": {"planTier": "basic", "messageAllowance": 200},
            }
        )

        response = client.get("/billing/usage", params={"uid": "u1"})

        body = response.json()
        assert body["unlimited"] is False
        assert body["message_allowance"] == 200
        assert body["remaining_messages"] == 50

    def test_unknown_user_gets_free_quota(self, client, fake_supabase):
        response = client.get("/billing/usage", params={"uid": "nobody"})

        assert response.status_code == 200
        assert response.json()["remaining_messages"] == 22

    def test_pro_without_allowance_is_unlimited(self, client, fake_supabase):
        fake_supabase.rows("users").append({"id": "u1", "tier": "pro"})

        body = client.get("/billing/usage", params={"uid": "u1"}).json()

        assert body["unlimited"] is True
        assert body["remaining_messages"] is None

    @pytest.mark.parametrize("params", [{}, {"uid": "  "}])
    def test_missing_uid_is_400(self, client, params):
        with patch("src.routes.payments.get_user") as lookup:
            response = client.get("/billing/usage", params=params)

        assert response.status_code == 400
        assert response.json()["error"] == "missing_identity"
        lookup.assert_not_called()

    def test_store_failure_is_500(self, client):
        with patch("src.routes.payments.get_user", side_effect=RuntimeError("db down")):
            response = client.get("/billing/usage", params={"uid": "u1"})

        assert response.status_code == 500
        assert response.json()["error"] == "usage_failed"


class TestWebhookRoute:
    def test_missing_signature_is_400(self, client, webhook_secret):
        with patch("src.routes.payments.handle_webhook_event") as handler:
            response = client.post("/stripe/webhook", content=b"{}")

        assert response.status_code == 400
        assert response.json()["error"] == "missing_signature"
        handler.assert_not_called()

    def test_bad_signature_is_400(self, client, webhook_secret):
        event = make_event("invoice.payment_succeeded", {"id": "in_1"})
        with patch("src.routes.payments.handle_webhook_event") as handler:
            response = _signed_webhook(client, event, secret="whsec_wrong")

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_signature"
        handler.assert_not_called()

    def test_verified_event_is_acknowledged(self, client, webhook_secret):
        event = make_event("invoice.payment_succeeded", {"id": "in_1"})
        with patch("src.routes.payments.handle_webhook_event", return_value=RESULT_PROCESSED) as handler:
            response = _signed_webhook(client, event)

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert handler.call_args.args[0]["id"] == "evt_test_1"

    def test_duplicate_is_acknowledged(self, client, webhook_secret):
        event = make_event("invoice.payment_succeeded", {"id": "in_1"})
        with patch("src.routes.payments.handle_webhook_event", return_value=RESULT_DUPLICATE):
            response = _signed_webhook(client, event)

        assert response.status_code == 200
        assert response.json() == {"received": True}

    def test_processing_failure_is_5xx_for_retry(self, client, webhook_secret):
        event = make_event("invoice.payment_succeeded", {"id": "in_1"})
        with patch("src.routes.payments.handle_webhook_event", side_effect=RuntimeError("db down")):
            response = _signed_webhook(client, event)

        assert response.status_code == 500
        assert response.json()["error"] == "webhook_failed"

    def test_secret_lookup_failure_is_500(self, client, monkeypatch):
        def _boom():
            raise BillingConfigurationError("Unable to load Stripe secrets")

        monkeypatch.setattr(webhooks_mod, "get_webhook_secret", _boom)

        response = client.post("/stripe/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=abc"})

        assert response.status_code == 500
        assert response.json()["error"] == "configuration_error"

    def test_end_to_end_checkout_event(self, client, webhook_secret, fake_supabase, mock_stripe):
        fake_supabase.rows("users").append({"id": "u1", "tier": "free", "exchanges_used": 12})
        mock_stripe.checkout.Session.retrieve.return_value = {
            "id": "cs_1",
            "mode": "payment",
            "payment_status": "paid",
            "customer": "cus_1",
            "metadata": {"firebase_uid": "u1"},
            "line_items": {"data": [{"price": {"id": "price_total123", "metadata": {}, "product": "prod_t"}}]},
        }
        event = make_event("checkout.session.completed", {"id": "cs_1"}, event_id="evt_route_1")

        first = _signed_webhook(client, event)
        second = _signed_webhook(client, event)

        assert first.status_code == second.status_code == 200
        user = fake_supabase.rows("users")[0]
        assert user["tier"] == "pro"
        assert user["billing"]["tier"] == "total"
        assert user["billing"]["messageAllowance"] == 6000
        assert user["exchanges_used"] == 0
        assert mock_stripe.checkout.Session.retrieve.call_count == 1
