"""
Identity verification with Firebase Admin.

Rules:
    1. Production: verify the Firebase ID token with a revocation check.
    2. Development bypass (auth.skip_in_dev and environment "development"):
       a fixed dev identity is returned without any token.
    3. Disposable e-mail domains are rejected.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import firebase_admin
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials
from firebase_admin import exceptions as firebase_exceptions

from core.config import get_auth_config, get_firebase_config, is_development
from core.errors import GatewayError

logger = logging.getLogger(__name__)


DISPOSABLE_DOMAINS = frozenset({
    "mailinator.com", "guerrillamail.com", "tempmail.com", "throwaway.email",
    "yopmail.com", "sharklasers.com", "grr.la", "guerrillamailblock.com",
    "pokemail.net", "spam4.me", "bccto.me", "trashmail.com", "trashmail.net",
    "dispostable.com", "mailnesia.com", "maildrop.cc", "fakeinbox.com",
    "tempail.com", "temp-mail.org", "getnada.com", "10minutemail.com",
    "mohmal.com", "discard.email", "tempr.email", "emailondeck.com",
    "mailcatch.com", "meltmail.com",
})


@dataclass
class AuthInfo:
    """Verified caller identity."""

    uid: str
    email: Optional[str]
    email_verified: bool = False
    provider: Optional[str] = None
    display_name: Optional[str] = None


def is_disposable_email(email: Optional[str]) -> bool:
    if not email or "@" not in email:
        return False
    return email.split("@", 1)[1].lower() in DISPOSABLE_DOMAINS


def initialize_firebase() -> firebase_admin.App:
    """
    Initialize the default Firebase Admin app once.

    Raises:
        ValueError: If project id, client e-mail or private key is missing.
    """
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    firebase_config = get_firebase_config()
    project_id = firebase_config.get("project_id")
    client_email = firebase_config.get("client_email")
    private_key = firebase_config.get("private_key")

    if not project_id or not client_email or not private_key:
        raise ValueError("Firebase Admin credentials are missing")

    cred = credentials.Certificate({
        "type": "service_account",
        "project_id": project_id,
        "client_email": client_email,
        "private_key": private_key.replace("\\n", "\n"),
        "token_uri": "https://oauth2.googleapis.com/token",
    })
    app = firebase_admin.initialize_app(cred)
    logger.info(f"Firebase Admin initialized for project {project_id}")
    return app


def dev_bypass_enabled() -> bool:
    return bool(get_auth_config().get("skip_in_dev")) and is_development()


def dev_identity() -> AuthInfo:
    auth_config = get_auth_config()
    return AuthInfo(
        uid=auth_config.get("dev_uid", "dev-user"),
        email=auth_config.get("dev_email", "dev@test.com"),
        email_verified=True,
        provider="development",
    )


def verify_id_token(token: Optional[str]) -> AuthInfo:
    """
    Verify a Firebase ID token and return the caller identity.

    Args:
        token: Raw bearer token (may be None).

    Returns:
        AuthInfo for the token's user.

    Raises:
        GatewayError: 500 firebase_admin_not_configured, 401 missing_auth_token /
            token_revoked / invalid_auth_token, 403 disposable_email.
    """
    if dev_bypass_enabled():
        return dev_identity()

    try:
        initialize_firebase()
    except ValueError as e:
        logger.error(f"Firebase Admin not configured: {e}")
        raise GatewayError(500, "firebase_admin_not_configured", "Authentication is not configured.")

    if not token:
        raise GatewayError(401, "missing_auth_token", "Authorization token required.")

    try:
        decoded = firebase_auth.verify_id_token(token, check_revoked=True)
    except firebase_auth.RevokedIdTokenError:
        raise GatewayError(401, "token_revoked", "Token has been revoked.")
    except (firebase_exceptions.FirebaseError, ValueError) as e:
        logger.debug(f"Token rejected: {e}")
        raise GatewayError(401, "invalid_auth_token", "Invalid authentication token.")

    email = decoded.get("email")
    if is_disposable_email(email):
        raise GatewayError(403, "disposable_email", "Disposable email addresses are not allowed")

    return AuthInfo(
        uid=decoded["uid"],
        email=email,
        email_verified=bool(decoded.get("email_verified")),
        provider=(decoded.get("firebase") or {}).get("sign_in_provider"),
        display_name=decoded.get("name"),
    )


def set_account_disabled(firebase_uid: str, disabled: bool) -> bool:
    """
    Disable or re-enable a Firebase account; disabling also revokes tokens.

    Failures are logged and reported as False; they never abort the caller.
    """
    try:
        initialize_firebase()
        firebase_auth.update_user(firebase_uid, disabled=disabled)
        if disabled:
            firebase_auth.revoke_refresh_tokens(firebase_uid)
    except (ValueError, firebase_exceptions.FirebaseError) as e:
        logger.error(f"Firebase account update failed for {firebase_uid} (non-fatal): {e}")
        return False

    logger.info(f"Firebase account {'disabled' if disabled else 're-enabled'} for UID {firebase_uid}")
    return True
