"""
Share Tokens Module

Encrypted, non-guessable tokens for replaying a stored face-search result
without a user session.

Token layout:
    base64url( iv[16] | auth_tag[16] | AES-256-GCM ciphertext )

The ciphertext holds a JSON payload:
    {request_id, user_id, tenant_id, api_type, created_at, expires_at, nonce}

Only the SHA-256 hash of a token is stored; the token itself is shown to
the user once. Tokens expire after 24 hours by default.

Usage:
    from core.share_tokens import generate_share_token, validate_and_get_result

    issued = generate_share_token(request_id, user_id, tenant_id, "ONE_TO_ONE")
    store.create_share_token(..., token_hash=issued["token_hash"], ...)

    result = validate_and_get_result(issued["token"], store)
"""

import base64
import binascii
import hashlib
import json
import logging
import os
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.config import get_share_tokens_config
from core.store import Store, utcnow

logger = logging.getLogger(__name__)


IV_LENGTH = 16
AUTH_TAG_LENGTH = 16
TOKEN_EXPIRY_HOURS = 24
DEFAULT_PUBLIC_URL = "https://www.visionera.live"

# Used when no secret is configured; tokens do not survive a restart
_ephemeral_key: Optional[bytes] = None


# =============================================================================
# Key handling
# =============================================================================

def derive_key(secret: str) -> bytes:
    """
    Turn a configured secret into a 32-byte AES-256 key.

    The first 32 bytes of the secret are used as-is; shorter secrets are
    stretched with SHA-256.
    """
    raw = secret.encode("utf-8")
    if len(raw) >= 32:
        return raw[:32]
    return hashlib.sha256(raw).digest()


def _share_key(secret: Optional[str] = None) -> bytes:
    global _ephemeral_key

    if secret is None:
        secret = get_share_tokens_config().get("secret")
    if secret:
        return derive_key(secret)

    if _ephemeral_key is None:
        logger.warning("No share token secret configured, using a random per-process key")
        _ephemeral_key = os.urandom(32)
    return _ephemeral_key


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def hash_token(token: str) -> str:
    """SHA-256 hex digest used for DB lookup."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# =============================================================================
# Generation / decryption
# =============================================================================

def generate_share_token(
    request_id: str,
    user_id: int,
    tenant_id: int,
    api_type: str,
    expiry_hours: Optional[int] = None,
    secret: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Issue a new share token.

    Args:
        request_id: Stored face-search request ID.
        user_id: Issuing user.
        tenant_id: Issuing tenant.
        api_type: Request type (ONE_TO_ONE, ONE_TO_N, N_TO_N).
        expiry_hours: Lifetime; defaults to share_tokens.expiry_hours.
        secret: Encryption secret override.

    Returns:
        Dict with token, token_hash, expires_at (datetime) and payload.
    """
    if expiry_hours is None:
        expiry_hours = get_share_tokens_config().get("expiry_hours", TOKEN_EXPIRY_HOURS)

    now = utcnow()
    expires_at = now + timedelta(hours=expiry_hours)
    payload = {
        "request_id": request_id,
        "user_id": user_id,
        "tenant_id": tenant_id,
        "api_type": api_type,
        "created_at": now.isoformat(),
        "expires_at": expires_at.isoformat(),
        "nonce": secrets.token_hex(16),
    }

    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(_share_key(secret)).encrypt(iv, json.dumps(payload).encode("utf-8"), None)
    ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]

    token = _b64url_encode(iv + tag + ciphertext)
    return {
        "token": token,
        "token_hash": hash_token(token),
        "expires_at": expires_at,
        "payload": payload,
    }


def decrypt_share_token(token: str, secret: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Decrypt a share token.

    Returns:
        The payload dict, or None if the token is malformed or tampered with.
    """
    try:
        data = _b64url_decode(token)
        if len(data) <= IV_LENGTH + AUTH_TAG_LENGTH:
            return None
        iv = data[:IV_LENGTH]
        tag = data[IV_LENGTH:IV_LENGTH + AUTH_TAG_LENGTH]
        ciphertext = data[IV_LENGTH + AUTH_TAG_LENGTH:]
        plaintext = AESGCM(_share_key(secret)).decrypt(iv, ciphertext + tag, None)
        return json.loads(plaintext)
    except (InvalidTag, binascii.Error, ValueError) as e:
        logger.debug(f"Token decryption failed: {e!r}")
        return None


def is_expired(expires_at) -> bool:
    """
    Check an expiry given as datetime or ISO string.

    Unparseable values count as expired.
    """
    if isinstance(expires_at, str):
        try:
            expires_at = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
        except ValueError:
            return True
    if expires_at is None:
        return True
    return expires_at < utcnow()


def generate_curl_command(token: str, base_url: str = DEFAULT_PUBLIC_URL) -> str:
    return (
        f'curl -X GET "{base_url.rstrip("/")}/api/result" \\\n'
        f'  -H "Authorization: Bearer {token}"'
    )


def parse_authorization_header(header: Optional[str]) -> Optional[str]:
    if not header or not header.startswith("Bearer "):
        return None
    return header[7:].strip() or None


# =============================================================================
# Validation
# =============================================================================

def validate_and_get_result(token: str, store: Store, secret: Optional[str] = None) -> Dict[str, Any]:
    """
    Validate a share token and load the result it points to.

    Checks, in order: decryption, payload expiry, DB presence, DB expiry.
    On success the token's access count and last access time are bumped.

    Returns:
        {"valid": True, "payload", "share_token", "face_search_request"} or
        {"valid": False, "error", ["expired": True]}.
    """
    payload = decrypt_share_token(token, secret)
    if payload is None:
        return {"valid": False, "error": "Invalid token format"}

    if is_expired(payload.get("expires_at")):
        return {"valid": False, "expired": True, "error": "Token expired"}

    share_token = store.get_share_token_by_hash(hash_token(token))
    if share_token is None:
        return {"valid": False, "error": "Token not found"}

    if is_expired(share_token["expires_at"]):
        return {"valid": False, "expired": True, "error": "Token expired"}

    store.record_share_token_access(share_token["id"])
    return {
        "valid": True,
        "payload": payload,
        "share_token": share_token,
        "face_search_request": store.get_face_search_request(share_token["face_search_request_id"]),
    }
