"""
Tests for Share Tokens

This test suite verifies:
- Token layout and payload encryption
- Validation: tampering, payload expiry, unknown tokens, DB expiry
- Access statistics and the curl helper
- The /api/share, /api/result and /api/share/tokens endpoints

Run with: pytest tests/test_share_tokens.py -v
"""

import base64
from datetime import timedelta

import pytest

from core.share_tokens import (
    decrypt_share_token,
    generate_curl_command,
    generate_share_token,
    hash_token,
    is_expired,
    parse_authorization_header,
    validate_and_get_result,
)
from core.store import utcnow

from tests.conftest import bearer, image

SECRET = "unit-test-share-token-secret-0123456789"


@pytest.fixture
def stored_request(store):
    user, tenant, _ = store.provision_user(firebase_uid="u1", email="alice@example.com")
    row = store.create_face_search_request(tenant["id"], user["id"], "ONE_TO_ONE", {}, {"match": True})
    return user, tenant, row


def issue(store, stored_request, expiry_hours=24):
    user, tenant, row = stored_request
    issued = generate_share_token(row["id"], user["id"], tenant["id"], "ONE_TO_ONE",
                                  expiry_hours=expiry_hours, secret=SECRET)
    share = store.create_share_token(tenant["id"], user["id"], row["id"], issued["token_hash"],
                                     "ONE_TO_ONE", issued["expires_at"])
    return issued, share


class TestTokenFormat:
    """Tests for token generation and decryption."""

    def test_layout(self):
        issued = generate_share_token("req-1", 1, 2, "ONE_TO_N", expiry_hours=24, secret=SECRET)
        token = issued["token"]

        assert "=" not in token and "+" not in token and "/" not in token
        raw = base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))
        assert len(raw) > 32
        assert issued["token_hash"] == hash_token(token)

    def test_payload(self):
        issued = generate_share_token("req-1", 1, 2, "ONE_TO_N", expiry_hours=24, secret=SECRET)
        payload = decrypt_share_token(issued["token"], secret=SECRET)

        assert payload["request_id"] == "req-1"
        assert payload["user_id"] == 1
        assert payload["tenant_id"] == 2
        assert payload["api_type"] == "ONE_TO_N"
        assert len(payload["nonce"]) == 32

    def test_tokens_are_unique(self):
        first = generate_share_token("req-1", 1, 2, "ONE_TO_ONE", secret=SECRET)
        second = generate_share_token("req-1", 1, 2, "ONE_TO_ONE", secret=SECRET)
        assert first["token"] != second["token"]

    def test_wrong_secret(self):
        issued = generate_share_token("req-1", 1, 2, "ONE_TO_ONE", secret=SECRET)
        assert decrypt_share_token(issued["token"], secret="another-secret") is None

    @pytest.mark.parametrize("token", ["", "abc", "!!!not-base64!!!", "A" * 40])
    def test_garbage(self, token):
        assert decrypt_share_token(token, secret=SECRET) is None

    def test_is_expired(self):
        assert is_expired(utcnow() - timedelta(seconds=1))
        assert not is_expired((utcnow() + timedelta(hours=1)).isoformat())
        assert is_expired("not a date")
        assert is_expired(None)


class TestValidation:
    """Tests for validate_and_get_result."""

    def test_valid_token_returns_result(self, store, stored_request):
        issued, share = issue(store, stored_request)
        result = validate_and_get_result(issued["token"], store, secret=SECRET)

        assert result["valid"] is True
        assert result["face_search_request"]["result_data"] == {"match": True}
        assert store.get_share_token(share["id"])["access_count"] == 1

    def test_tampered_token(self, store, stored_request):
        issued, _ = issue(store, stored_request)
        token = issued["token"]
        tampered = token[:-2] + ("AA" if token[-2:] != "AA" else "BB")
        assert validate_and_get_result(tampered, store, secret=SECRET) == {
            "valid": False, "error": "Invalid token format",
        }

    def test_payload_expired(self, store, stored_request):
        issued, _ = issue(store, stored_request, expiry_hours=-1)
        result = validate_and_get_result(issued["token"], store, secret=SECRET)
        assert result["valid"] is False
        assert result["expired"] is True

    def test_unknown_token(self, store):
        issued = generate_share_token("req-1", 1, 2, "ONE_TO_ONE", secret=SECRET)
        assert validate_and_get_result(issued["token"], store, secret=SECRET)["error"] == "Token not found"

    def test_db_expiry_wins(self, store, stored_request):
        user, tenant, row = stored_request
        issued = generate_share_token(row["id"], user["id"], tenant["id"], "ONE_TO_ONE", secret=SECRET)
        store.create_share_token(tenant["id"], user["id"], row["id"], issued["token_hash"],
                                 "ONE_TO_ONE", utcnow() - timedelta(minutes=1))
        result = validate_and_get_result(issued["token"], store, secret=SECRET)
        assert result["expired"] is True


class TestHelpers:
    """Tests for header parsing and curl generation."""

    def test_parse_authorization_header(self):
        assert parse_authorization_header("Bearer abc") == "abc"
        assert parse_authorization_header("Basic abc") is None
        assert parse_authorization_header("Bearer ") is None
        assert parse_authorization_header(None) is None

    def test_curl_command(self):
        curl = generate_curl_command("tok", "https://api.example.com/")
        assert 'curl -X GET "https://api.example.com/api/result"' in curl
        assert '-H "Authorization: Bearer tok"' in curl


class TestShareEndpoints:
    """Tests for the share flow over HTTP."""

    @pytest.fixture
    def request_id(self, client, alice):
        response = client.post(
            "/api/face-search/one-to-one",
            files={"source": image("alice"), "target": image("alice")},
            headers=bearer("alice-token"),
        )
        assert response.status_code == 200
        return response.json()["id"]

    def test_share_and_replay(self, client, request_id):
        response = client.post("/api/share", json={"request_id": request_id}, headers=bearer("alice-token"))
        assert response.status_code == 200
        share = response.json()
        assert share["expires_in_hours"] == 24
        assert share["token"] in share["curl"]

        result = client.get("/api/result", headers=bearer(share["token"]))
        assert result.status_code == 200
        body = result.json()
        assert body["id"] == request_id
        assert body["type"] == "ONE_TO_ONE"
        assert body["result"]["match"] is True

        tokens = client.get("/api/share/tokens", headers=bearer("alice-token")).json()["tokens"]
        assert tokens[0]["access_count"] == 1
        assert "token_hash" not in tokens[0]

    def test_result_requires_token(self, client):
        response = client.get("/api/result")
        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

    def test_result_rejects_garbage(self, client):
        response = client.get("/api/result", headers=bearer("garbage"))
        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_TOKEN"

    def test_revoked_token_stops_working(self, client, request_id):
        share = client.post("/api/share", json={"request_id": request_id}, headers=bearer("alice-token")).json()
        response = client.delete(f"/api/share/tokens/{share['id']}", headers=bearer("alice-token"))
        assert response.status_code == 200

        response = client.get("/api/result", headers=bearer(share["token"]))
        assert response.json()["code"] == "INVALID_TOKEN"

    def test_cannot_share_foreign_request(self, client, request_id):
        client.post("/api/auth/init", headers=bearer("bob-token"))
        response = client.post("/api/share", json={"request_id": request_id}, headers=bearer("bob-token"))
        assert response.status_code == 404
