"""
Shared fixtures for the gateway test suite.

- store:        fresh SQLite store in a temp dir, default plans seeded
- redis_client: fakeredis instance installed as the shared Redis client
- frs:          FRSClient backed by an httpx.MockTransport fake of FRS
- client:       FastAPI TestClient with Firebase verification stubbed out

Images sent to the fake FRS carry their identity in the bytes:
b"FACE=alice" is a face of "alice", b"NOFACE" has no face. Faces with the
same name verify at 0.95, different names at 0.30.
"""

import os
import re
import sys
import uuid
from typing import Dict

import fakeredis
import httpx
import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi.testclient import TestClient

from core.errors import GatewayError
from core.frs_client import FRSClient, set_frs_client
from core.identity import AuthInfo
from core.plans import seed_plans
from core.redis_client import set_redis
from core.store import get_store, reset_store


IDENTITIES: Dict[str, AuthInfo] = {
    "alice-token": AuthInfo(uid="uid-alice", email="alice@example.com", email_verified=True, provider="password"),
    "bob-token": AuthInfo(uid="uid-bob", email="bob@example.com", email_verified=True, provider="google.com"),
    "root-token": AuthInfo(uid="uid-root", email="root@visionera.live", email_verified=True, provider="password"),
}

FACE_PATTERN = re.compile(rb"FACE=(\w+)")


def fake_verify_id_token(token):
    if not token:
        raise GatewayError(401, "missing_auth_token", "Authorization token required.")
    if token not in IDENTITIES:
        raise GatewayError(401, "invalid_auth_token", "Invalid authentication token.")
    return IDENTITIES[token]


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def image(name: str, filename: str = "face.jpg"):
    """Multipart file tuple for a face of `name` (or no face for None)."""
    content = b"NOFACE" if name is None else f"FACE={name}".encode("ascii")
    return (filename, content, "image/jpeg")


# ============================================================
# Fake FRS
# ============================================================

class FakeFRS:
    """Request handler for httpx.MockTransport emulating the FRS APIs."""

    def __init__(self):
        self.requests = []
        self.fail_detect = False
        self.video_status = "finished"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/detect":
            if self.fail_detect:
                return httpx.Response(500, json={"detail": "detector down"})
            match = FACE_PATTERN.search(request.content)
            if match is None:
                return httpx.Response(200, json={"objects": {"face": []}})
            face_id = f"{match.group(1).decode()}-{uuid.uuid4().hex[:6]}"
            return httpx.Response(200, json={"objects": {"face": [{
                "id": face_id,
                "bbox": [10, 20, 110, 140],
                "attributes": {"age": 30},
            }]}})

        if path == "/verify":
            name1 = request.url.params["object1"].split(":", 1)[1].split("-")[0]
            name2 = request.url.params["object2"].split(":", 1)[1].split("-")[0]
            return httpx.Response(200, json={"confidence": 0.95 if name1 == name2 else 0.30})

        if path == "/videos/" and request.method == "POST":
            return httpx.Response(201, json={"id": 42, "name": "clip"})
        if path == "/videos/42/upload/source_file/" or path == "/videos/42/process/":
            return httpx.Response(200, json={})
        if path == "/videos/42/":
            return httpx.Response(200, json={
                "id": 42, "name": "clip", "status": self.video_status,
                "created": "2026-01-01T00:00:00Z", "duration": 12.5,
            })
        if path == "/events/faces/":
            return httpx.Response(200, json={"results": [
                {"id": 1, "bbox": [1, 2, 3, 4], "thumbnail": "t.jpg", "timestamp": 1.5, "cluster": 7},
            ]})
        if path == "/clusters/faces/":
            return httpx.Response(200, json={"results": [{"id": 7, "faces_count": 1, "face": "c.jpg"}]})

        return httpx.Response(404, json={"detail": "Not found"})


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def store(tmp_path):
    """Fresh store installed as the singleton, with default plans."""
    reset_store()
    instance = get_store(str(tmp_path / "gateway.sqlite"))
    seed_plans(instance)
    yield instance
    reset_store()


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    set_redis(client)
    yield client
    set_redis(None)


@pytest.fixture
def fake_frs():
    return FakeFRS()


@pytest.fixture
def frs(fake_frs):
    client = FRSClient(base_url="http://frs.test", api_token="test-token", transport=httpx.MockTransport(fake_frs))
    set_frs_client(client)
    yield client
    set_frs_client(None)


@pytest.fixture
def client(store, redis_client, frs, monkeypatch):
    """TestClient without lifespan (plans are seeded by the store fixture)."""
    monkeypatch.setattr("api.dependencies.verify_id_token", fake_verify_id_token)
    from api.app import app
    return TestClient(app)


@pytest.fixture
def alice(client):
    """Provision alice through the API and return the /api/auth/init body."""
    response = client.post("/api/auth/init", headers=bearer("alice-token"))
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def super_admin(client, store):
    """Provision root and promote to SUPER_ADMIN."""
    client.post("/api/auth/init", headers=bearer("root-token"))
    user = store.get_user_by_firebase_uid("uid-root")
    return store.update_user(user["id"], system_role="SUPER_ADMIN")
