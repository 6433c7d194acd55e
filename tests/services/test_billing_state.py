"""
Tests for src/services/billing_state.py
"""

from datetime import UTC, datetime

from src.services.billing_state import (
    SUBSCRIPTION_EVENT_COLUMN,
    PlanUpdate,
    apply_plan_update,
    build_plan_fields,
    epoch_to_iso,
    iso_to_epoch,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _update(**overrides):
    values = {
        "uid": "u1",
        "event_id": "evt_1",
        "event_type": "invoice.payment_succeeded",
        "customer_id": "cus_1",
        "subscription_id": "sub_1",
        "price_id": "price_basic123",
        "product_id": "prod_1",
        "tier": "Standard-Monthly",
        "mode": "subscription",
        "status": "Active",
        "current_period_end": 1_702_000_000,
        "message_allowance": 200,
        "reset_usage": True,
        "event_created": 1_700_000_000,
    }
    values.update(overrides)
    return PlanUpdate(**values)


class TestEpochConversion:
    def test_epoch_to_iso(self):
        assert epoch_to_iso(1_702_000_000) == "2023-12-08T01:46:40+00:00"
        assert epoch_to_iso(None) is None
        assert epoch_to_iso(0) is None
        assert epoch_to_iso(True) is None

    def test_iso_to_epoch(self):
        assert iso_to_epoch("2023-12-08T01:46:40+00:00") == 1_702_000_000
        assert iso_to_epoch("2023-12-08T01:46:40Z") == 1_702_000_000
        assert iso_to_epoch(1_702_000_000) == 1_702_000_000
        assert iso_to_epoch("not a date") is None
        assert iso_to_epoch(None) is None


class TestBuildPlanFields:
    def test_snapshots_are_complete_and_consistent(self):
        fields = build_plan_fields(_update(), now=NOW)

        billing = fields["billing"]
        stripe_state = fields["stripe"]
        assert billing["tier"] == billing["planTier"] == stripe_state["planTier"] == "basic"
        assert billing["messageAllowance"] == stripe_state["messageAllowance"] == 200
        assert billing["status"] == "active"
        assert billing["currentPeriodEnd"] == "2023-12-08T01:46:40+00:00"
        assert billing["stripeCustomerId"] == stripe_state["customerId"] == "cus_1"
        assert billing["updatedAt"] == NOW.isoformat()
        assert fields["updated_at"] == NOW.isoformat()

    def test_reset_writes_usage_counters(self):
        fields = build_plan_fields(_update(), now=NOW)

        assert fields["exchanges_used"] == 0
        assert fields["courtesy_used"] is False
        assert fields["last_billing_reset_at"] == NOW.isoformat()
        assert fields["tier"] == "pro"

    def test_no_reset_leaves_usage_counters_out(self):
        fields = build_plan_fields(_update(reset_usage=False), now=NOW)

        assert "exchanges_used" not in fields
        assert "courtesy_used" not in fields

    def test_ambiguous_status_leaves_tier_out(self):
        fields = build_plan_fields(_update(status=None, reset_usage=False), now=NOW)

        assert "tier" not in fields
        assert fields["billing"]["status"] is None

    def test_cancelled_is_free(self):
        fields = build_plan_fields(_update(status="canceled", message_allowance=None), now=NOW)

        assert fields["tier"] == "free"
        assert fields["billing"]["messageAllowance"] is None

    def test_subscription_events_carry_ordering_stamp(self):
        fields = build_plan_fields(_update(event_type="customer.subscription.updated"), now=NOW)
        assert fields[SUBSCRIPTION_EVENT_COLUMN] == 1_700_000_000

        fields = build_plan_fields(_update(event_type="invoice.payment_succeeded"), now=NOW)
        assert SUBSCRIPTION_EVENT_COLUMN not in fields


class TestApplyPlanUpdate:
    def test_without_uid_nothing_is_written(self, fake_supabase):
        assert apply_plan_update(_update(uid=None)) is False
        assert fake_supabase.calls == []

    def test_single_upsert_merges_into_existing_row(self, fake_supabase):
        fake_supabase.rows("users").append({"id": "u1", "display_name": "Ana", "exchanges_used": 9})

        assert apply_plan_update(_update()) is True

        upserts = fake_supabase.calls_for("users", "upsert")
        assert len(upserts) == 1
        row = fake_supabase.rows("users")[0]
        assert row["display_name"] == "Ana"
        assert row["exchanges_used"] == 0
        assert row["billing"]["tier"] == "basic"

    def test_creates_row_for_new_uid(self, fake_supabase):
        apply_plan_update(_update(uid="u_new"))

        assert fake_supabase.rows("users")[0]["id"] == "u_new"
