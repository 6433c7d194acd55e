from unittest.mock import MagicMock

import pytest

from src.config.config import _reset_tier_price_cache
from src.config.stripe_config import reset_stripe_state
from tests.helpers.fake_supabase import FakeSupabase

TEST_PRICES = {
    "PRICE_BASIC": "price_basic123",
    "PRICE_MEDIUM": "price_medium123",
    "PRICE_INTENSIVE": "price_intensive123",
    "PRICE_TOTAL": "price_total123",
}

PRICE_ENV_PREFIXES = ("PRICE_", "STRIPE_PRICE_", "VITE_STRIPE_PRICE_")


@pytest.fixture(autouse=True)
def _isolate_billing_state(monkeypatch):
    """Every test starts with a known price table and no memoised Stripe state."""
    import os

    for name in list(os.environ):
        if name.startswith(PRICE_ENV_PREFIXES):
            monkeypatch.delenv(name, raising=False)
    for name, value in TEST_PRICES.items():
        monkeypatch.setenv(name, value)

    _reset_tier_price_cache()
    reset_stripe_state()
    yield
    _reset_tier_price_cache()
    reset_stripe_state()


@pytest.fixture
def fake_supabase(monkeypatch):
    """Route every src.db query through an in-memory Supabase double."""
    import src.config.supabase_config as supabase_config_mod

    sb = FakeSupabase()
    monkeypatch.setattr(supabase_config_mod, "get_supabase_client", lambda: sb)
    return sb


@pytest.fixture
def mock_stripe(monkeypatch):
    """
    MagicMock standing in for the configured ``stripe`` module.

    Exceptions raised from it should still be real ``stripe`` exception types.
    """
    import src.services.checkout as checkout_mod
    import src.services.webhooks as webhooks_mod

    client = MagicMock(name="stripe")
    client.Customer.search.return_value = {"data": []}
    client.Customer.list.return_value = {"data": []}
    client.Customer.create.return_value = {"id": "cus_new"}
    client.checkout.Session.create.return_value = {
        "id": "cs_test_1",
        "url": "https://checkout.stripe.com/c/pay/cs_test_1",
    }
    client.billing_portal.Session.create.return_value = {
        "id": "bps_test_1",
        "url": "https://billing.stripe.com/p/session/bps_test_1",
    }

    monkeypatch.setattr(checkout_mod, "get_stripe", lambda: client)
    monkeypatch.setattr(webhooks_mod, "get_stripe", lambda: client)
    return client

