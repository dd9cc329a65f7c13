"""
API Keys Module

Tenant API keys for the public v1 API.

Key design:
    - Raw key format: vra_live_<48 hex chars>
    - SHA-256 hash stored for O(1) auth lookups
    - AES-256-GCM encrypted copy ("iv:tag:ciphertext", hex) kept for reveal
    - Prefix (first 12 chars) shown in listings
    - Plan-based limits: FREE=1, PRO=5, ENTERPRISE=10, UNLIMITED=25
    - Expiry presets: 30d, 90d, 180d, 365d, never, or a future ISO date
"""

import hashlib
import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from core.config import get_api_keys_config, get_share_tokens_config
from core.errors import GatewayError
from core.share_tokens import derive_key
from core.store import Store, parse_db_time, utcnow
from core.tenant_context import SaasContext, trial_expired

logger = logging.getLogger(__name__)


KEY_PREFIX = "vra_live_"
KEY_PREFIX_LENGTH = 12
IV_LENGTH = 16
AUTH_TAG_LENGTH = 16

DEFAULT_KEY_LIMITS = {
    "FREE": 1,
    "PRO": 5,
    "ENTERPRISE": 10,
    "UNLIMITED": 25,
}

EXPIRY_PRESETS = {"30d": 30, "90d": 90, "180d": 180, "365d": 365}

INACTIVE_SUBSCRIPTIONS = ("SUSPENDED", "CANCELED", "PAST_DUE")

FALLBACK_SECRET = "visionera-default-api-key-secret-k"


class InvalidExpiry(ValueError):
    """Raised by parse_expiry for unknown presets or past dates."""


# =============================================================================
# Generation / hashing / encryption
# =============================================================================

def generate_api_key() -> str:
    return f"{KEY_PREFIX}{secrets.token_hex(24)}"


def hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def key_prefix(raw_key: str) -> str:
    return raw_key[:KEY_PREFIX_LENGTH]


def mask_key(prefix: str) -> str:
    return prefix + "•" * 45


def _encryption_key(secret: Optional[str] = None) -> bytes:
    if secret is None:
        secret = (
            get_api_keys_config().get("encryption_secret")
            or get_share_tokens_config().get("secret")
        )
    if not secret:
        logger.warning("API key encryption secret not configured, using built-in default")
        secret = FALLBACK_SECRET
    return derive_key(secret)


def encrypt_key(raw_key: str, secret: Optional[str] = None) -> str:
    """Encrypt a raw key as "iv:tag:ciphertext" (hex)."""
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(_encryption_key(secret)).encrypt(iv, raw_key.encode("utf-8"), None)
    ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt_key(encrypted: str, secret: Optional[str] = None) -> str:
    """
    Decrypt a value produced by encrypt_key.

    Raises:
        ValueError: On malformed input.
        cryptography.exceptions.InvalidTag: On a wrong key or tampering.
    """
    iv_hex, tag_hex, ciphertext_hex = encrypted.split(":")
    iv, tag, ciphertext = bytes.fromhex(iv_hex), bytes.fromhex(tag_hex), bytes.fromhex(ciphertext_hex)
    return AESGCM(_encryption_key(secret)).decrypt(iv, ciphertext + tag, None).decode("utf-8")


# =============================================================================
# Limits / expiry
# =============================================================================

def get_max_keys(plan: Dict[str, Any]) -> int:
    max_keys = plan.get("max_api_keys")
    if max_keys is not None and max_keys > 0:
        return max_keys
    return DEFAULT_KEY_LIMITS.get(plan.get("code"), 1)


def parse_expiry(value: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Resolve an expiry input.

    Args:
        value: Preset ("30d", "90d", "180d", "365d"), "never" or an ISO date.
        now: Reference time (tests).

    Returns:
        Expiry datetime, or None for keys that never expire.

    Raises:
        InvalidExpiry: For unknown input or a date not in the future.
    """
    now = now or utcnow()
    if not value or value == "never":
        return None
    if value in EXPIRY_PRESETS:
        return now + timedelta(days=EXPIRY_PRESETS[value])

    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise InvalidExpiry(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    if parsed <= now:
        raise InvalidExpiry(value)
    return parsed


def key_status(api_key: Dict[str, Any]) -> str:
    """"revoked", "expired" or "active"."""
    if api_key.get("revoked_at"):
        return "revoked"
    expires_at = parse_db_time(api_key.get("expires_at"))
    if expires_at is not None and expires_at <= utcnow():
        return "expired"
    return "active"


# =============================================================================
# Authentication
# =============================================================================

def extract_api_key(authorization: Optional[str], x_api_key: Optional[str]) -> Optional[str]:
    """
    Pull a raw key from request headers.

    Authorization: Bearer is only used when the token looks like an API key,
    so Firebase tokens on the same header are ignored.
    """
    if authorization and authorization.startswith("Bearer "):
        token = authorization[7:].strip()
        if token.startswith("vra_"):
            return token
    if x_api_key and x_api_key.startswith("vra_"):
        return x_api_key
    return None


def authenticate_api_key(store: Store, raw_key: Optional[str]) -> SaasContext:
    """
    Resolve an API key into a SaasContext.

    Args:
        store: Store instance.
        raw_key: Raw key from the request, or None.

    Returns:
        SaasContext with api_key set.

    Raises:
        GatewayError: 401 AUTHENTICATION_REQUIRED / INVALID_API_KEY /
            API_KEY_REVOKED / API_KEY_EXPIRED, 403 ACCOUNT_BANNED /
            ACCOUNT_SUSPENDED / SUBSCRIPTION_INACTIVE.
    """
    if not raw_key:
        raise GatewayError(
            401, "AUTHENTICATION_REQUIRED",
            "API key is required. Pass it as Authorization: Bearer <key> or x-api-key: <key>.",
        )

    api_key = store.get_api_key_by_hash(hash_key(raw_key))
    if api_key is None:
        raise GatewayError(401, "INVALID_API_KEY", "The API key provided is invalid or does not exist.")

    if api_key.get("revoked_at"):
        raise GatewayError(
            401, "API_KEY_REVOKED",
            "This API key has been revoked. Generate a new one from the dashboard.",
        )

    expires_at = parse_db_time(api_key.get("expires_at"))
    if expires_at is not None and expires_at < utcnow():
        raise GatewayError(
            401, "API_KEY_EXPIRED",
            "This API key has expired. Generate a new one from the dashboard.",
        )

    user = store.get_user(api_key["user_id"])
    tenant = store.get_tenant(api_key["tenant_id"])

    if user.get("is_banned"):
        raise GatewayError(403, "ACCOUNT_BANNED", "Your account has been banned.")
    if user.get("is_suspended"):
        raise GatewayError(403, "ACCOUNT_SUSPENDED", "Your account has been suspended. Contact support.")

    status = tenant["subscription_status"]
    if status in INACTIVE_SUBSCRIPTIONS:
        raise GatewayError(
            403, "SUBSCRIPTION_INACTIVE",
            "Your subscription is not active. Please upgrade your plan.",
            subscription_status=status,
        )

    if trial_expired(tenant):
        store.update_tenant(tenant["id"], subscription_status="PAST_DUE")
        raise GatewayError(
            403, "SUBSCRIPTION_INACTIVE",
            "Your trial has expired. Please upgrade your plan.",
            subscription_status="PAST_DUE",
        )

    membership = store.get_membership_for(tenant["id"], user["id"])
    store.touch_api_key(api_key["id"])

    return SaasContext(
        user=user,
        tenant=tenant,
        role=membership["role"] if membership else "MEMBER",
        plan=store.get_plan(tenant["plan_id"]),
        api_key=api_key,
    )
