"""
Tests for the Abuse Scanner

Run with: pytest tests/test_abuse_detection.py -v
"""

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
import redis

from core.abuse_detection import abuse_scanner_loop, run_abuse_scan
from core.store import utcnow
from core.usage_limits import month_key


def provision(store, n, ip=None):
    user, tenant, _ = store.provision_user(firebase_uid=f"u{n}", email=f"u{n}@example.com", signup_ip=ip)
    return user, tenant


def flags_for(store, user_id):
    return store.list_abuse_flags(resolved=None, user_id=user_id)[0]


class TestClientErrors:
    """Tests for the 4xx rule."""

    def test_over_threshold_flags_medium(self, store):
        user, tenant = provision(store, 1)
        for _ in range(101):
            store.insert_audit_log("API_CALL", user_id=user["id"], tenant_id=tenant["id"], response_status=404)

        run_abuse_scan(store)

        flags = flags_for(store, user["id"])
        assert len(flags) == 1
        assert flags[0]["severity"] == "MEDIUM"
        assert "101 4xx" in flags[0]["reason"]

    def test_at_threshold_is_quiet(self, store):
        user, _ = provision(store, 1)
        for _ in range(100):
            store.insert_audit_log("API_CALL", user_id=user["id"], response_status=400)
        store.insert_audit_log("API_CALL", user_id=user["id"], response_status=500)

        run_abuse_scan(store)
        assert flags_for(store, user["id"]) == []

    def test_old_entries_ignored(self, store):
        user, _ = provision(store, 1)
        old = utcnow() - timedelta(hours=25)
        for _ in range(150):
            store.insert_audit_log("API_CALL", user_id=user["id"], response_status=429, timestamp=old)

        run_abuse_scan(store)
        assert flags_for(store, user["id"]) == []


class TestRateLimitHits:
    """Tests for the RATE_LIMIT_HIT rule."""

    def test_over_threshold(self, store):
        user, _ = provision(store, 1)
        for _ in range(21):
            store.insert_audit_log("RATE_LIMIT_HIT", user_id=user["id"])

        findings = run_abuse_scan(store)

        assert [f["reason"] for f in findings] == ["21 rate-limit hits in 24h"]
        assert findings[0]["severity"] == "MEDIUM"
        assert "flag_id" in findings[0]


class TestSignupFarms:
    """Tests for the duplicate signup IP rule."""

    def test_four_accounts_from_one_ip(self, store):
        users = [provision(store, n, ip="6.6.6.6")[0] for n in range(4)]
        provision(store, 99, ip="7.7.7.7")

        run_abuse_scan(store)

        for user in users:
            flags = flags_for(store, user["id"])
            assert len(flags) == 1
            assert flags[0]["severity"] == "HIGH"
            assert "6.6.6.6" in flags[0]["reason"]
        assert store.count_unresolved_abuse_flags() == 4

    def test_critical_above_ten(self, store):
        for n in range(11):
            provision(store, n, ip="6.6.6.6")

        run_abuse_scan(store)

        flags, total = store.list_abuse_flags()
        assert total == 11
        assert {flag["severity"] for flag in flags} == {"CRITICAL"}

    def test_three_accounts_are_fine(self, store):
        for n in range(3):
            provision(store, n, ip="6.6.6.6")
        assert run_abuse_scan(store) == []


class TestUsage:
    """Tests for the usage rule."""

    def test_over_limit_is_high(self, store, redis_client):
        user, tenant = provision(store, 1)
        redis_client.set(month_key(tenant["id"]), 250)

        run_abuse_scan(store, redis_client)

        flags = flags_for(store, user["id"])
        assert flags[0]["severity"] == "HIGH"
        assert flags[0]["tenant_id"] == tenant["id"]
        assert flags[0]["reason"] == "Usage over limit: 250/200 (125%)"

    def test_near_limit_is_low(self, store, redis_client):
        user, tenant = provision(store, 1)
        redis_client.set(month_key(tenant["id"]), 190)

        run_abuse_scan(store, redis_client)
        assert flags_for(store, user["id"])[0]["severity"] == "LOW"

    def test_unlimited_plan_skipped(self, store, redis_client):
        user, tenant = provision(store, 1)
        store.update_tenant(tenant["id"], plan_id=store.get_plan_by_code("UNLIMITED")["id"])
        redis_client.set(month_key(tenant["id"]), 10_000)

        run_abuse_scan(store, redis_client)
        assert flags_for(store, user["id"]) == []

    def test_redis_error_skips_rule(self, store):
        provision(store, 1)
        broken = MagicMock()
        broken.get.side_effect = redis.ConnectionError("down")
        assert run_abuse_scan(store, broken) == []


class TestDeduplication:
    """Tests for the 24h (user, reason) de-duplication."""

    def test_second_scan_does_not_duplicate(self, store, redis_client):
        user, tenant = provision(store, 1)
        redis_client.set(month_key(tenant["id"]), 250)

        run_abuse_scan(store, redis_client)
        findings = run_abuse_scan(store, redis_client)

        assert len(findings) == 1
        assert "flag_id" not in findings[0]
        assert len(flags_for(store, user["id"])) == 1


class TestScannerLoop:
    """Tests for the background loop."""

    def test_loop_survives_scan_errors(self, store):
        calls = []

        def failing_scan(*args):
            calls.append(args)
            raise RuntimeError("boom")

        async def run():
            task = asyncio.create_task(abuse_scanner_loop(store, lambda: None, interval_sec=0))
            while len(calls) < 2:
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        with patch("core.abuse_detection.run_abuse_scan", side_effect=failing_scan):
            asyncio.run(run())

        assert len(calls) >= 2
