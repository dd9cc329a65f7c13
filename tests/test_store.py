"""
Tests for the Store Module

This test suite verifies:
- Plan seeding is idempotent
- First-login provisioning (user, tenant, membership)
- User listing filters and pagination
- Face search request visibility and retention
- Share token cascade and access counting
- Audit log filters and admin aggregates

Run with: pytest tests/test_store.py -v
"""

from datetime import timedelta

import pytest

from core.plans import DEFAULT_PLANS, seed_plans
from core.store import DuplicateUserError, Store, parse_db_time, to_db_time, utcnow


@pytest.fixture
def mem_store():
    store = Store(":memory:")
    seed_plans(store)
    yield store
    store.close()


def provision(store, uid, email, ip=None):
    user, tenant, membership = store.provision_user(firebase_uid=uid, email=email, signup_ip=ip)
    return user, tenant, membership


class TestPlans:
    """Tests for plan seeding."""

    def test_seed_creates_default_plans(self, mem_store):
        codes = [plan["code"] for plan in mem_store.list_plans()]
        assert codes == [plan["code"] for plan in DEFAULT_PLANS]

    def test_seed_is_idempotent(self, mem_store):
        seed_plans(mem_store)
        seed_plans(mem_store)
        assert len(mem_store.list_plans()) == len(DEFAULT_PLANS)

    def test_seed_updates_existing_plan(self, mem_store):
        mem_store.upsert_plan({"code": "FREE", "name": "Free", "daily_request_limit": 99})
        seed_plans(mem_store)
        assert mem_store.get_plan_by_code("FREE")["daily_request_limit"] == 15

    def test_bool_columns_decoded(self, mem_store):
        pro = mem_store.get_plan_by_code("PRO")
        assert pro["soft_daily_limit"] is True
        assert pro["allow_video_processing"] is True

    def test_list_plans_counts_tenants(self, mem_store):
        provision(mem_store, "u1", "a@example.com")
        free = next(p for p in mem_store.list_plans() if p["code"] == "FREE")
        assert free["tenant_count"] == 1


class TestProvisioning:
    """Tests for first-login provisioning."""

    def test_provision_creates_trial_tenant(self, mem_store):
        user, tenant, membership = provision(mem_store, "u1", "alice@example.com")

        assert tenant["name"] == "alice-tenant"
        assert tenant["subscription_status"] == "TRIAL"
        assert membership["role"] == "MEMBER"
        assert membership["tenant_id"] == tenant["id"]
        assert user["system_role"] == "USER"

        trial_end = parse_db_time(tenant["trial_ends_at"])
        assert timedelta(days=13, hours=23) < trial_end - utcnow() <= timedelta(days=14)

    def test_provision_without_email(self, mem_store):
        _, tenant, _ = provision(mem_store, "u1", None)
        assert tenant["name"] == "New Tenant"

    def test_provision_requires_free_plan(self):
        store = Store(":memory:")
        with pytest.raises(LookupError):
            store.provision_user(firebase_uid="u1", email="a@example.com")
        store.close()

    def test_duplicate_uid_rolls_back(self, mem_store):
        user, _, _ = provision(mem_store, "u1", "a@example.com")

        with pytest.raises(DuplicateUserError) as exc:
            provision(mem_store, "u1", "a@example.com")

        assert exc.value.user["id"] == user["id"]
        assert mem_store._scalar("SELECT COUNT(*) FROM tenants") == 1
        assert mem_store._scalar("SELECT COUNT(*) FROM tenant_users") == 1

    def test_find_user_by_email_fragment(self, mem_store):
        provision(mem_store, "u1", "Alice@Example.com")
        assert mem_store.find_user_by_email("alice")["firebase_uid"] == "u1"
        assert mem_store.find_user_by_email("nobody") is None

    def test_record_login_counts_sessions_only(self, mem_store):
        user, _, _ = provision(mem_store, "u1", "a@example.com")
        mem_store.record_login(user["id"], new_session=True)
        mem_store.record_login(user["id"], new_session=False)

        updated = mem_store.get_user(user["id"])
        assert updated["login_count"] == 1
        assert updated["last_login_at"] is not None

    def test_update_user_encodes_bools_and_datetimes(self, mem_store):
        user, _, _ = provision(mem_store, "u1", "a@example.com")
        now = utcnow()
        updated = mem_store.update_user(user["id"], is_banned=True, banned_at=now)
        assert updated["is_banned"] is True
        assert updated["banned_at"] == to_db_time(now)


class TestUserListing:
    """Tests for the admin user listing."""

    @pytest.fixture
    def populated(self, mem_store):
        a, _, _ = provision(mem_store, "u1", "alice@example.com")
        b, tenant_b, _ = provision(mem_store, "u2", "bob@example.com")
        c, _, _ = provision(mem_store, "u3", "carol@example.com")
        mem_store.update_user(b["id"], is_suspended=True)
        mem_store.update_user(c["id"], is_banned=True, system_role="ADMIN")
        mem_store.update_tenant(tenant_b["id"], plan_id=mem_store.get_plan_by_code("PRO")["id"])
        return mem_store

    def test_list_all(self, populated):
        rows, total = populated.list_users()
        assert total == 3
        assert rows[0]["tenant_name"] is not None

    def test_filter_by_status(self, populated):
        rows, total = populated.list_users(status="suspended")
        assert total == 1 and rows[0]["email"] == "bob@example.com"

        rows, total = populated.list_users(status="active")
        assert [r["email"] for r in rows] == ["alice@example.com"]

    def test_filter_by_role_and_search(self, populated):
        _, total = populated.list_users(role="ADMIN")
        assert total == 1
        rows, _ = populated.list_users(search="ALI")
        assert rows[0]["email"] == "alice@example.com"

    def test_filter_by_plan(self, populated):
        rows, total = populated.list_users(plan="PRO")
        assert total == 1
        assert rows[0]["plan_code"] == "PRO"

    def test_pagination_and_sort(self, populated):
        rows, total = populated.list_users(sort="email", order="asc", page=2, limit=2)
        assert total == 3
        assert [r["email"] for r in rows] == ["carol@example.com"]

    def test_unknown_sort_column_falls_back(self, populated):
        rows, _ = populated.list_users(sort="password; DROP TABLE users")
        assert len(rows) == 3


class TestFaceSearchRequests:
    """Tests for stored results."""

    @pytest.fixture
    def tenant_pair(self, mem_store):
        owner, tenant, _ = provision(mem_store, "u1", "owner@example.com")
        teammate = mem_store.create_user(firebase_uid="u2", email="mate@example.com")
        mem_store.add_membership(tenant["id"], teammate["id"], "ADMIN")
        return mem_store, tenant, owner, teammate

    def test_members_see_only_their_rows(self, tenant_pair):
        store, tenant, owner, teammate = tenant_pair
        row = store.create_face_search_request(tenant["id"], owner["id"], "ONE_TO_ONE", {"a": 1}, {"match": True})

        assert store.get_face_search_request(row["id"], tenant["id"], owner["id"], "MEMBER") is not None
        other = store.create_user(firebase_uid="u3", email="x@example.com")
        assert store.get_face_search_request(row["id"], tenant["id"], other["id"], "MEMBER") is None

    def test_tenant_admin_sees_whole_tenant(self, tenant_pair):
        store, tenant, owner, teammate = tenant_pair
        store.create_face_search_request(tenant["id"], owner["id"], "ONE_TO_N", {}, {})
        rows, total = store.list_face_search_requests(tenant["id"], teammate["id"], role="ADMIN")
        assert total == 1
        assert "result_data" not in rows[0]

    def test_json_payloads_round_trip(self, tenant_pair):
        store, tenant, owner, _ = tenant_pair
        row = store.create_face_search_request(tenant["id"], owner["id"], "N_TO_N", {"n": 2}, {"matches": [1, 2]})
        assert row["request_data"] == {"n": 2}
        assert row["result_data"] == {"matches": [1, 2]}

    def test_list_filters_by_type(self, tenant_pair):
        store, tenant, owner, _ = tenant_pair
        store.create_face_search_request(tenant["id"], owner["id"], "ONE_TO_ONE", {}, {})
        store.create_face_search_request(tenant["id"], owner["id"], "N_TO_N", {}, {})
        rows, total = store.list_face_search_requests(tenant["id"], owner["id"], request_type="n_to_n")
        assert total == 1 and rows[0]["type"] == "N_TO_N"

    def test_purge_expired(self, tenant_pair):
        store, tenant, owner, _ = tenant_pair
        store.create_face_search_request(tenant["id"], owner["id"], "ONE_TO_ONE", {}, {}, retention_days=-1)
        store.create_face_search_request(tenant["id"], owner["id"], "ONE_TO_ONE", {}, {})
        assert store.purge_expired_requests() == 1
        assert store.count_requests_for_user(owner["id"]) == 1

    def test_deleting_request_removes_share_tokens(self, tenant_pair):
        store, tenant, owner, _ = tenant_pair
        row = store.create_face_search_request(tenant["id"], owner["id"], "ONE_TO_ONE", {}, {})
        token = store.create_share_token(
            tenant["id"], owner["id"], row["id"], "hash-1", "ONE_TO_ONE", utcnow() + timedelta(hours=1)
        )
        store.delete_face_search_request(row["id"])
        assert store.get_share_token(token["id"]) is None

    def test_share_token_access_counting(self, tenant_pair):
        store, tenant, owner, _ = tenant_pair
        row = store.create_face_search_request(tenant["id"], owner["id"], "ONE_TO_ONE", {}, {})
        token = store.create_share_token(
            tenant["id"], owner["id"], row["id"], "hash-1", "ONE_TO_ONE", utcnow() + timedelta(hours=1)
        )
        store.record_share_token_access(token["id"])
        store.record_share_token_access(token["id"])

        updated = store.get_share_token_by_hash("hash-1")
        assert updated["access_count"] == 2
        assert updated["last_accessed_at"] is not None


class TestAuditAndStats:
    """Tests for audit queries and admin aggregates."""

    def test_list_audit_logs_filters(self, mem_store):
        user, tenant, _ = provision(mem_store, "u1", "alice@example.com")
        mem_store.insert_audit_log("API_CALL", user_id=user["id"], tenant_id=tenant["id"],
                                   endpoint="/api/me", ip_address="10.0.0.1", response_status=200)
        mem_store.insert_audit_log("LOGIN", user_id=user["id"], tenant_id=tenant["id"])
        mem_store.insert_audit_log("API_CALL", endpoint="/api/other")

        rows, total = mem_store.list_audit_logs(user_email="alice")
        assert total == 2
        assert rows[0]["user_email"] == "alice@example.com"

        _, total = mem_store.list_audit_logs(action="API_CALL")
        assert total == 2

        rows, total = mem_store.list_audit_logs(search="10.0.0")
        assert total == 1 and rows[0]["endpoint"] == "/api/me"

    def test_unknown_email_yields_empty_page(self, mem_store):
        mem_store.insert_audit_log("API_CALL")
        assert mem_store.list_audit_logs(user_email="ghost") == ([], 0)

    def test_date_range(self, mem_store):
        old = utcnow() - timedelta(days=10)
        mem_store.insert_audit_log("API_CALL", timestamp=old)
        mem_store.insert_audit_log("API_CALL")
        _, total = mem_store.list_audit_logs(start_date=utcnow() - timedelta(days=1))
        assert total == 1

    def test_admin_stats(self, mem_store):
        user, tenant, _ = provision(mem_store, "u1", "alice@example.com")
        mem_store.record_login(user["id"], new_session=True)
        mem_store.insert_audit_log("API_CALL", user_id=user["id"])
        mem_store.create_abuse_flag(user["id"], "test", "LOW")

        stats = mem_store.get_admin_stats()
        assert stats["users"]["total"] == 1
        assert stats["users"]["active"] == 1
        assert stats["api_calls"]["today"] == 1
        assert stats["abuse_flags"] == 1
        assert {"code": "FREE", "name": "Free", "count": 1} in stats["plans"]
        assert stats["revenue"]["monthly"] == 0.0

    def test_api_key_call_stats(self, mem_store):
        user, tenant, _ = provision(mem_store, "u1", "alice@example.com")
        key = mem_store.create_api_key(tenant["id"], user["id"], "ci", "vra_live_abc", "h", None, None)
        for status in (200, 200, 429):
            mem_store.insert_audit_log("API_CALL", user_id=user["id"], endpoint="/api/v1/faces/compare",
                                       response_status=status, detail={"api_key_id": key["id"]})

        stats = mem_store.api_key_call_stats(key["id"])
        assert stats["total_calls"] == 3
        assert stats["success_calls"] == 2
        assert stats["error_calls"] == 1

        breakdown = mem_store.api_key_call_breakdown(key["id"])
        assert breakdown["calls_by_endpoint"][0]["calls"] == 3
        assert len(breakdown["recent_calls"]) == 3

        summary = mem_store.api_key_summary()
        assert summary["active_keys"] == 1
        assert summary["calls_today"] == 3
