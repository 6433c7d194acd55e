"""
Tests for src/config/stripe_config.py

Secret resolution order, Secrets Manager payload parsing and memoisation.
"""

import json
from unittest.mock import MagicMock

import pytest
import stripe
from botocore.exceptions import ClientError

import src.config.stripe_config as stripe_config_mod
from src.config.config import Config
from src.config.stripe_config import (
    get_stripe,
    get_webhook_secret,
    load_stripe_secrets,
    parse_secret_payload,
)
from src.utils.exceptions import BillingConfigurationError

ARN = "arn:aws:secretsmanager:eu-west-1:123456789012:secret:lucia/stripe"


@pytest.fixture
def no_env_secrets(monkeypatch):
    monkeypatch.setattr(Config, "STRIPE_SECRET_KEY", None)
    monkeypatch.setattr(Config, "STRIPE_WEBHOOK_SECRET", None)
    monkeypatch.setattr(Config, "STRIPE_SECRET_ARN", None)


@pytest.fixture
def secrets_manager(monkeypatch, no_env_secrets):
    """boto3 secretsmanager client returning a JSON payload"""
    client = MagicMock()
    client.get_secret_value.return_value = {
        "SecretString": json.dumps({"STRIPE_SECRET_KEY": "sk_from_aws", "webhookSecret": "whsec_from_aws"})
    }
    factory = MagicMock(return_value=client)
    monkeypatch.setattr(stripe_config_mod.boto3, "client", factory)
    monkeypatch.setattr(Config, "STRIPE_SECRET_ARN", ARN)
    return client


class TestParseSecretPayload:
    def test_json_object_key_names(self):
        secrets = parse_secret_payload(json.dumps({"secretKey": " sk_1 ", "WEBHOOK_SIGNING_SECRET": "whsec_1"}))
        assert secrets.secret_key == "sk_1"
        assert secrets.webhook_secret == "whsec_1"

    def test_bare_string_is_the_secret_key(self):
        secrets = parse_secret_payload("sk_live_plain\n")
        assert secrets.secret_key == "sk_live_plain"
        assert secrets.webhook_secret is None

    def test_json_without_known_keys(self):
        secrets = parse_secret_payload(json.dumps({"unrelated": "x"}))
        assert secrets.secret_key is None
        assert secrets.webhook_secret is None


class TestLoadStripeSecrets:
    def test_environment_wins_over_secrets_manager(self, monkeypatch, secrets_manager):
        monkeypatch.setattr(Config, "STRIPE_SECRET_KEY", "sk_env")
        monkeypatch.setattr(Config, "STRIPE_WEBHOOK_SECRET", "whsec_env")

        secrets = load_stripe_secrets()

        assert secrets.secret_key == "sk_env"
        assert secrets.webhook_secret == "whsec_env"
        secrets_manager.get_secret_value.assert_not_called()

    def test_missing_values_filled_from_secrets_manager(self, monkeypatch, secrets_manager):
        monkeypatch.setattr(Config, "STRIPE_SECRET_KEY", "sk_env")

        secrets = load_stripe_secrets()

        assert secrets.secret_key == "sk_env"
        assert secrets.webhook_secret == "whsec_from_aws"
        secrets_manager.get_secret_value.assert_called_once_with(SecretId=ARN)

    def test_success_is_memoised(self, secrets_manager):
        load_stripe_secrets()
        load_stripe_secrets()
        assert get_webhook_secret() == "whsec_from_aws"

        assert secrets_manager.get_secret_value.call_count == 1

    def test_failure_is_not_memoised(self, secrets_manager):
        secrets_manager.get_secret_value.side_effect = [
            ClientError({"Error": {"Code": "ThrottlingException", "Message": "Rate exceeded"}}, "GetSecretValue"),
            {"SecretString": "sk_second_try"},
        ]

        with pytest.raises(BillingConfigurationError):
            load_stripe_secrets()

        assert load_stripe_secrets().secret_key == "sk_second_try"
        assert secrets_manager.get_secret_value.call_count == 2

    def test_nothing_configured(self, no_env_secrets):
        secrets = load_stripe_secrets()
        assert secrets.secret_key is None
        assert get_webhook_secret() is None


class TestGetStripe:
    def test_missing_key_raises(self, no_env_secrets):
        with pytest.raises(BillingConfigurationError):
            get_stripe()

    def test_configures_module_once(self, monkeypatch, no_env_secrets):
        monkeypatch.setattr(Config, "STRIPE_SECRET_KEY", "sk_test_123")
        monkeypatch.setattr(stripe, "api_key", None)
        monkeypatch.setattr(stripe, "api_version", None)
        monkeypatch.setattr(stripe, "max_network_retries", 0)
        monkeypatch.setattr(stripe, "default_http_client", None)

        client = get_stripe()

        assert client is stripe
        assert stripe.api_key == "sk_test_123"
        assert stripe.api_version == Config.STRIPE_API_VERSION
        assert stripe.max_network_retries == Config.STRIPE_MAX_NETWORK_RETRIES
        assert isinstance(stripe.default_http_client, stripe.RequestsClient)
