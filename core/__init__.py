"""
Core Module for the VisionEra Gateway

This package contains the gateway logic that sits in front of the face
recognition service: identity, tenants and plans, limits, audit, abuse
detection, share tokens, API keys and the FRS client.

Main components:
    - config: Configuration loading and management
    - store: SQLite persistence for plans, tenants, users, keys, logs, results
    - identity / tenant_context: Firebase verification and caller context
    - api_keys: API key generation, encryption and authentication
    - rate_limits / usage_limits: Redis counters and plan enforcement
    - subscription: Subscription state machine
    - audit / abuse_detection: Audit trail and the abuse scanner
    - share_tokens: Encrypted share tokens for stored results
    - frs_client: Async client for the upstream recognition service

Usage:
    from core.config import get_config
    from core.store import get_store
    from core.frs_client import get_frs_client
"""

from core.config import (
    get_config,
    get_section,
    get_api_config,
    get_storage_config,
    get_server_config,
)

from core.errors import GatewayError

from core.store import Store, get_store

from core.tenant_context import SaasContext

from core.frs_client import (
    FRSClient,
    FRSError,
    NoFaceDetectedError,
    get_frs_client,
)

__all__ = [
    # Configuration
    "get_config",
    "get_section",
    "get_api_config",
    "get_storage_config",
    "get_server_config",
    # Errors
    "GatewayError",
    # Persistence
    "Store",
    "get_store",
    # Caller context
    "SaasContext",
    # FRS
    "FRSClient",
    "FRSError",
    "NoFaceDetectedError",
    "get_frs_client",
]
