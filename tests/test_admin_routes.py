"""
Tests for the Admin API

This test suite verifies:
- SUPER_ADMIN gating and ADMIN_ACCESS auditing
- User listing, detail and every user action
- Audit log and abuse flag endpoints
- Admin API key management

Run with: pytest tests/test_admin_routes.py -v
"""

from unittest.mock import patch

import pytest

from api.dependencies import require_admin
from core.errors import GatewayError
from core.tenant_context import SaasContext
from core.usage_limits import day_key, month_key

from tests.conftest import bearer

ROOT = bearer("root-token")


@pytest.fixture(autouse=True)
def firebase_accounts():
    with patch("api.routes.admin.set_account_disabled", return_value=True) as disabled:
        yield disabled


@pytest.fixture
def alice_user(alice, store):
    return store.get_user_by_firebase_uid("uid-alice")


def tenant_of(store, user):
    return store.get_tenant(store.get_membership(user["id"])["tenant_id"])


def actions(store, action):
    return store.list_audit_logs(action=action)[0]


class TestAccess:
    """Tests for SUPER_ADMIN gating."""

    def test_member_is_forbidden(self, client, alice):
        response = client.get("/api/admin/stats", headers=bearer("alice-token"))
        assert response.status_code == 403
        assert response.json()["code"] == "forbidden"

    def test_admin_role_is_not_enough(self, client, alice_user, store):
        store.update_user(alice_user["id"], system_role="ADMIN")
        response = client.get("/api/admin/stats", headers=bearer("alice-token"))
        assert response.status_code == 403

    @pytest.mark.parametrize("system_role,allowed", [
        ("USER", False),
        ("ADMIN", True),
        ("SUPER_ADMIN", True),
    ])
    def test_require_admin(self, system_role, allowed):
        ctx = SaasContext(user={"id": 1, "system_role": system_role}, tenant={"id": 1}, role="MEMBER", plan={})
        if allowed:
            assert require_admin(ctx) is ctx
        else:
            with pytest.raises(GatewayError) as exc:
                require_admin(ctx)
            assert exc.value.code == "forbidden"

    def test_access_is_audited_once(self, client, super_admin, store):
        response = client.get("/api/admin/plans", headers=ROOT)
        assert response.status_code == 200
        assert [p["code"] for p in response.json()["plans"]] == ["FREE", "PRO", "ENTERPRISE", "UNLIMITED"]

        rows = actions(store, "ADMIN_ACCESS")
        assert len(rows) == 1
        assert rows[0]["endpoint"] == "/api/admin/plans"


class TestStats:
    """Tests for /api/admin/stats."""

    def test_stats(self, client, super_admin, alice_user):
        data = client.get("/api/admin/stats", headers=ROOT).json()

        assert data["users"]["total"] == 2
        assert data["users"]["recent_signups"] == 2
        assert {row["code"]: row["count"] for row in data["plans"]} == {"FREE": 2}
        assert data["abuse_flags"] == 0
        assert data["revenue"]["monthly"] == 0.0


class TestUsers:
    """Tests for user listing and detail."""

    def test_list_users(self, client, super_admin, alice_user):
        data = client.get("/api/admin/users", params={"search": "ALICE"}, headers=ROOT).json()

        assert data["pagination"] == {"total": 1, "page": 1, "limit": 25, "total_pages": 1}
        user = data["users"][0]
        assert user["email"] == "alice@example.com"
        assert user["tenant"]["plan"] == "FREE"
        assert user["tenant"]["subscription_status"] == "TRIAL"

    def test_filter_by_role(self, client, super_admin, alice_user):
        data = client.get("/api/admin/users", params={"role": "SUPER_ADMIN"}, headers=ROOT).json()
        assert [u["email"] for u in data["users"]] == ["root@visionera.live"]

    def test_user_detail(self, client, super_admin, alice_user):
        data = client.get(f"/api/admin/users/{alice_user['id']}", headers=ROOT).json()

        assert data["user"]["email"] == "alice@example.com"
        assert data["tenants"][0]["plan"]["code"] == "FREE"
        assert data["tenants"][0]["role"] == "MEMBER"
        assert data["stats"]["total_requests"] == 0

    def test_unknown_user(self, client, super_admin):
        response = client.get("/api/admin/users/999", headers=ROOT)
        assert response.status_code == 404


class TestUserActions:
    """Tests for the state-changing user actions."""

    def test_change_plan_clears_counters(self, client, super_admin, alice_user, store, redis_client):
        tenant = tenant_of(store, alice_user)
        redis_client.set(month_key(tenant["id"]), 120)

        response = client.post(
            f"/api/admin/users/{alice_user['id']}/change-plan", json={"plan_code": "PRO"}, headers=ROOT
        )
        assert response.json()["message"] == "Plan changed to PRO"

        tenant = tenant_of(store, alice_user)
        assert tenant["plan_id"] == store.get_plan_by_code("PRO")["id"]
        assert tenant["subscription_status"] == "ACTIVE"
        assert redis_client.get(month_key(tenant["id"])) is None
        assert actions(store, "PLAN_CHANGE")[0]["detail"]["target_user_id"] == alice_user["id"]

    def test_change_plan_invalid(self, client, super_admin, alice_user):
        response = client.post(
            f"/api/admin/users/{alice_user['id']}/change-plan", json={"plan_code": "GOLD"}, headers=ROOT
        )
        assert response.status_code == 400

    def test_change_role(self, client, super_admin, alice_user, store):
        response = client.post(
            f"/api/admin/users/{alice_user['id']}/change-role", json={"system_role": "ADMIN"}, headers=ROOT
        )
        assert response.status_code == 200
        assert store.get_user(alice_user["id"])["system_role"] == "ADMIN"
        assert actions(store, "ROLE_CHANGE")[0]["detail"]["new_role"] == "ADMIN"

    def test_cannot_demote_self(self, client, super_admin):
        response = client.post(
            f"/api/admin/users/{super_admin['id']}/change-role", json={"system_role": "USER"}, headers=ROOT
        )
        assert response.status_code == 403

    def test_invalid_role(self, client, super_admin, alice_user):
        response = client.post(
            f"/api/admin/users/{alice_user['id']}/change-role", json={"system_role": "OWNER"}, headers=ROOT
        )
        assert response.status_code == 400

    def test_suspend_and_unsuspend(self, client, super_admin, alice_user, store):
        client.post(f"/api/admin/users/{alice_user['id']}/suspend", json={"reason": "Chargeback"}, headers=ROOT)

        user = store.get_user(alice_user["id"])
        assert user["is_suspended"] is True
        assert user["suspend_reason"] == "Chargeback"
        assert tenant_of(store, alice_user)["subscription_status"] == "SUSPENDED"

        response = client.get("/api/me", headers=bearer("alice-token"))
        assert response.json() == {"code": "account_suspended", "message": "Chargeback"}

        client.post(f"/api/admin/users/{alice_user['id']}/unsuspend", headers=ROOT)
        assert store.get_user(alice_user["id"])["is_suspended"] is False
        assert tenant_of(store, alice_user)["subscription_status"] == "TRIAL"

    def test_super_admin_cannot_be_suspended(self, client, super_admin):
        response = client.post(f"/api/admin/users/{super_admin['id']}/suspend", headers=ROOT)
        assert response.status_code == 403

    def test_ban_and_unban(self, client, super_admin, alice_user, store, firebase_accounts):
        client.post(f"/api/admin/users/{alice_user['id']}/ban", headers=ROOT)

        user = store.get_user(alice_user["id"])
        assert user["is_banned"] is True
        assert user["ban_reason"] == "Banned by admin"
        assert tenant_of(store, alice_user)["subscription_status"] == "CANCELED"
        firebase_accounts.assert_called_with("uid-alice", True)

        client.post(f"/api/admin/users/{alice_user['id']}/unban", headers=ROOT)
        assert store.get_user(alice_user["id"])["is_banned"] is False
        assert tenant_of(store, alice_user)["subscription_status"] == "TRIAL"
        firebase_accounts.assert_called_with("uid-alice", False)

    def test_unban_paid_tenant_restores_active(self, client, super_admin, alice_user, store):
        tenant = tenant_of(store, alice_user)
        store.update_tenant(tenant["id"], plan_id=store.get_plan_by_code("PRO")["id"])

        client.post(f"/api/admin/users/{alice_user['id']}/ban", headers=ROOT)
        client.post(f"/api/admin/users/{alice_user['id']}/unban", headers=ROOT)
        assert tenant_of(store, alice_user)["subscription_status"] == "ACTIVE"

    def test_extend_trial(self, client, super_admin, alice_user, store):
        before = tenant_of(store, alice_user)["trial_ends_at"]
        response = client.post(
            f"/api/admin/users/{alice_user['id']}/extend-trial", json={"days": 7}, headers=ROOT
        )
        data = response.json()
        assert data["message"] == "Trial extended by 7 days"
        assert data["trial_ends_at"] > before

    def test_reset_usage(self, client, super_admin, alice_user, store, redis_client):
        tenant = tenant_of(store, alice_user)
        redis_client.set(month_key(tenant["id"]), 10)
        redis_client.set(day_key(tenant["id"]), 3)
        redis_client.set(f"rate:tenant:{tenant['id']}:1", 1)

        response = client.post(f"/api/admin/users/{alice_user['id']}/reset-usage", headers=ROOT)
        assert response.json()["deleted_keys"] == 3
        assert redis_client.get(month_key(tenant["id"])) is None


class TestAuditAndAbuse:
    """Tests for audit logs and abuse flags."""

    def test_audit_logs_filter(self, client, super_admin, alice_user):
        data = client.get(
            "/api/admin/audit-logs", params={"action": "LOGIN", "user_email": "alice"}, headers=ROOT
        ).json()
        assert data["pagination"]["total"] == 1
        assert data["logs"][0]["user_email"] == "alice@example.com"

    def test_audit_logs_bad_date(self, client, super_admin):
        response = client.get("/api/admin/audit-logs", params={"start_date": "yesterday"}, headers=ROOT)
        assert response.status_code == 400
        assert response.json()["field"] == "start_date"

    def test_scan_then_resolve(self, client, super_admin, alice_user, store, redis_client):
        tenant = tenant_of(store, alice_user)
        redis_client.set(month_key(tenant["id"]), 500)

        scan = client.post("/api/admin/abuse-scan", headers=ROOT).json()
        assert scan["new_flags"] == 1

        flags = client.get("/api/admin/abuse-flags", headers=ROOT).json()["flags"]
        assert flags[0]["user"]["email"] == "alice@example.com"
        assert flags[0]["severity"] == "HIGH"

        response = client.post(f"/api/admin/abuse-flags/{flags[0]['id']}/resolve", headers=ROOT)
        assert response.json()["success"] is True
        assert client.get("/api/admin/abuse-flags", headers=ROOT).json()["flags"] == []
        assert len(client.get("/api/admin/abuse-flags?resolved=all", headers=ROOT).json()["flags"]) == 1

    def test_resolve_unknown_flag(self, client, super_admin):
        response = client.post("/api/admin/abuse-flags/nope/resolve", headers=ROOT)
        assert response.status_code == 404


class TestAdminApiKeys:
    """Tests for /api/admin/api-keys."""

    @pytest.fixture
    def key_id(self, client, alice):
        response = client.post("/api/api-keys", json={"name": "CI"}, headers=bearer("alice-token"))
        return response.json()["data"]["id"]

    def test_list_and_detail(self, client, super_admin, key_id):
        data = client.get("/api/admin/api-keys", headers=ROOT).json()
        assert data["keys"][0]["id"] == key_id
        assert data["keys"][0]["user"]["email"] == "alice@example.com"
        assert data["keys"][0]["tenant"]["plan"] == "FREE"

        detail = client.get(f"/api/admin/api-keys/{key_id}", headers=ROOT).json()
        assert detail["key"]["status"] == "active"
        assert detail["key"]["tenant"]["total_keys"] == 1
        assert detail["stats"]["total_calls"] == 0
        assert detail["stats"]["success_rate"] == 0

    def test_revoke(self, client, super_admin, key_id, store):
        response = client.delete(f"/api/admin/api-keys/{key_id}", headers=ROOT)
        assert response.status_code == 200
        assert store.get_api_key(key_id)["revoked_at"] is not None
        assert actions(store, "API_KEY_REVOKED")[0]["detail"]["by_admin"] is True

        response = client.delete(f"/api/admin/api-keys/{key_id}", headers=ROOT)
        assert response.json()["code"] == "ALREADY_REVOKED"

    def test_unknown_key(self, client, super_admin):
        response = client.get("/api/admin/api-keys/missing", headers=ROOT)
        assert response.status_code == 404
        assert response.json()["code"] == "KEY_NOT_FOUND"
