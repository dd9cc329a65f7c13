"""
Tests for the Subscription State Machine

Run with: pytest tests/test_subscription.py -v
"""

import pytest

from core.subscription import VALID_TRANSITIONS, is_valid_transition, transition_subscription
from core.store import parse_db_time, utcnow
from core.usage_limits import day_key, month_key


@pytest.fixture
def tenant(store):
    _, tenant, _ = store.provision_user(firebase_uid="u1", email="alice@example.com")
    return tenant


class TestTransitions:
    """Tests for the transition table."""

    @pytest.mark.parametrize("from_status,to_status", [
        ("TRIAL", "ACTIVE"),
        ("TRIAL", "PAST_DUE"),
        ("ACTIVE", "SUSPENDED"),
        ("PAST_DUE", "ACTIVE"),
        ("SUSPENDED", "ACTIVE"),
        ("CANCELED", "TRIAL"),
    ])
    def test_valid(self, from_status, to_status):
        assert is_valid_transition(from_status, to_status)

    @pytest.mark.parametrize("from_status,to_status", [
        ("TRIAL", "SUSPENDED"),
        ("SUSPENDED", "CANCELED"),
        ("CANCELED", "PAST_DUE"),
        ("ACTIVE", "TRIAL"),
        ("UNKNOWN", "ACTIVE"),
    ])
    def test_invalid(self, from_status, to_status):
        assert not is_valid_transition(from_status, to_status)

    def test_every_status_has_an_exit(self):
        assert all(VALID_TRANSITIONS[status] for status in VALID_TRANSITIONS)


class TestTransitionSubscription:
    """Tests for transition_subscription against a real store."""

    def test_activate_with_plan_change(self, store, redis_client, tenant):
        redis_client.set(month_key(tenant["id"]), 150)
        redis_client.set(day_key(tenant["id"]), 10)

        result = transition_subscription(store, redis_client, tenant["id"], "ACTIVE", new_plan_code="PRO")

        assert result["ok"] is True
        assert result["from"] == "TRIAL"
        assert result["to"] == "ACTIVE"
        assert result["tenant"]["plan_id"] == store.get_plan_by_code("PRO")["id"]
        assert redis_client.get(month_key(tenant["id"])) is None
        assert redis_client.get(day_key(tenant["id"])) is None

    def test_status_only_keeps_counters(self, store, redis_client, tenant):
        redis_client.set(month_key(tenant["id"]), 3)
        transition_subscription(store, redis_client, tenant["id"], "CANCELED")
        assert redis_client.get(month_key(tenant["id"])) == "3"

    def test_invalid_transition_leaves_tenant_unchanged(self, store, redis_client, tenant):
        result = transition_subscription(store, redis_client, tenant["id"], "SUSPENDED")

        assert result["ok"] is False
        assert "TRIAL" in result["error"]
        assert result["valid_targets"] == ["ACTIVE", "PAST_DUE", "CANCELED"]
        assert store.get_tenant(tenant["id"])["subscription_status"] == "TRIAL"

    def test_unknown_plan(self, store, redis_client, tenant):
        result = transition_subscription(store, redis_client, tenant["id"], "ACTIVE", new_plan_code="GOLD")
        assert result == {"ok": False, "error": "Plan 'GOLD' not found"}

    def test_unknown_tenant(self, store, redis_client):
        assert transition_subscription(store, redis_client, 999, "ACTIVE")["ok"] is False

    def test_new_trial_sets_end_date(self, store, redis_client, tenant):
        store.update_tenant(tenant["id"], subscription_status="CANCELED")
        result = transition_subscription(store, None, tenant["id"], "TRIAL", trial_days=7)

        trial_end = parse_db_time(result["tenant"]["trial_ends_at"])
        assert 6 < (trial_end - utcnow()).total_seconds() / 86400 <= 7
