"""
Configuration Management Module

This module provides a centralized way to load and access configuration settings
from the config.yaml file. It uses the Singleton pattern to ensure only one
configuration instance exists throughout the application.

Secrets and deployment URLs (FRS token, Redis URL, encryption secrets, ...)
are not meant to live in config.yaml. They are read from the environment
(optionally from a .env file) and override the YAML values at load time.

Usage:
    from core.config import get_config
    config = get_config()
    frs_config = config["frs"]
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import load_dotenv


# Store the singleton instance (module-level variable)
_config_instance: Optional[Dict[str, Any]] = None

# Environment variable -> (section, key, type)
ENV_OVERRIDES: Dict[str, Tuple[str, str, type]] = {
    "APP_ENV": ("api", "environment", str),
    "PUBLIC_API_URL": ("api", "public_url", str),
    "SKIP_AUTH_IN_DEV": ("auth", "skip_in_dev", bool),
    "FIREBASE_PROJECT_ID": ("firebase", "project_id", str),
    "FIREBASE_CLIENT_EMAIL": ("firebase", "client_email", str),
    "FIREBASE_PRIVATE_KEY": ("firebase", "private_key", str),
    "DATABASE_PATH": ("storage", "db_path", str),
    "REDIS_URL": ("redis", "url", str),
    "FRS_BASE_URL": ("frs", "base_url", str),
    "FRS_API_TOKEN": ("frs", "api_token", str),
    "VIDEO_API_BASE": ("frs", "video_base_url", str),
    "EVENTS_API_BASE": ("frs", "events_base_url", str),
    "SHARE_TOKEN_SECRET": ("share_tokens", "secret", str),
    "API_KEY_ENCRYPTION_SECRET": ("api_keys", "encryption_secret", str),
    "RAZORPAY_KEY_ID": ("payments", "razorpay_key_id", str),
    "RAZORPAY_WEBHOOK_SECRET": ("payments", "razorpay_webhook_secret", str),
    "SMTP_HOST": ("smtp", "host", str),
    "SMTP_PORT": ("smtp", "port", int),
    "SMTP_USER": ("smtp", "user", str),
    "SMTP_PASS": ("smtp", "password", str),
}


def get_project_root() -> Path:
    """
    Find the project root directory.

    The project root is identified by the presence of config.yaml file.
    This function walks up the directory tree from this file's location
    until it finds config.yaml.

    Returns:
        Path: The absolute path to the project root directory.

    Raises:
        FileNotFoundError: If config.yaml cannot be found in any parent directory.
    """
    current_dir = Path(__file__).resolve().parent

    while current_dir != current_dir.parent:
        config_path = current_dir / "config.yaml"
        if config_path.exists():
            return current_dir
        current_dir = current_dir.parent

    raise FileNotFoundError(
        "Could not find config.yaml in any parent directory. "
        "Make sure you're running from within the project directory."
    )


def _coerce(value: str, kind: type) -> Any:
    """Convert an environment string to the type of the config key."""
    if kind is bool:
        return value.strip().lower() in ("1", "true", "yes", "on")
    if kind is int:
        return int(value)
    return value


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Overlay environment variables listed in ENV_OVERRIDES onto the config.

    Empty environment values are ignored so that an unset variable in a
    .env template does not wipe out the YAML default.

    Args:
        config: Configuration dict loaded from YAML (modified in place).

    Returns:
        The same dict, for chaining.
    """
    for env_name, (section, key, kind) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        config.setdefault(section, {})[key] = _coerce(raw, kind)

    # PEM keys pasted into a single env line carry literal "\n" sequences
    private_key = config.get("firebase", {}).get("private_key")
    if private_key:
        config["firebase"]["private_key"] = private_key.replace("\\n", "\n")

    return config


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file and apply environment overrides.

    Args:
        config_path: Optional path to the config file.
                     If not provided, uses the default config.yaml in project root.

    Returns:
        Dict containing all configuration values.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the config file contains invalid YAML.
    """
    if config_path is None:
        project_root = get_project_root()
        config_path = project_root / "config.yaml"
    else:
        config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    load_dotenv(config_path.parent / ".env")

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    return apply_env_overrides(config)


def get_config(reload: bool = False) -> Dict[str, Any]:
    """
    Get the configuration singleton.

    Args:
        reload: If True, forces reloading the configuration from disk.
                Useful for testing or if the config file has changed.

    Returns:
        Dict containing all configuration values.

    Example:
        config = get_config()
        threshold = config["frs"]["match_threshold"]
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = load_config()

    return _config_instance


def get_section(section_name: str) -> Dict[str, Any]:
    """
    Get a specific section from the configuration.

    Args:
        section_name: Name of the configuration section
                      (e.g., "frs", "redis", "rate_limits")

    Returns:
        Dict containing the section's configuration values.

    Raises:
        KeyError: If the section doesn't exist in the configuration.
    """
    config = get_config()

    if section_name not in config:
        raise KeyError(
            f"Configuration section '{section_name}' not found. "
            f"Available sections: {list(config.keys())}"
        )

    return config[section_name]


def get_api_config() -> Dict[str, Any]:
    """Get API configuration."""
    return get_section("api")


def get_auth_config() -> Dict[str, Any]:
    """Get authentication bypass configuration."""
    return get_section("auth")


def get_firebase_config() -> Dict[str, Any]:
    """Get Firebase Admin credentials."""
    return get_section("firebase")


def get_storage_config() -> Dict[str, Any]:
    """Get storage configuration."""
    return get_section("storage")


def get_redis_config() -> Dict[str, Any]:
    """Get Redis configuration."""
    return get_section("redis")


def get_frs_config() -> Dict[str, Any]:
    """Get upstream face recognition service configuration."""
    return get_section("frs")


def get_uploads_config() -> Dict[str, Any]:
    """Get upload size/type limits."""
    return get_section("uploads")


def get_rate_limits_config() -> Dict[str, Any]:
    """Get default rate limits."""
    return get_section("rate_limits")


def get_share_tokens_config() -> Dict[str, Any]:
    """Get share token configuration."""
    return get_section("share_tokens")


def get_api_keys_config() -> Dict[str, Any]:
    """Get API key configuration."""
    return get_section("api_keys")


def get_abuse_scan_config() -> Dict[str, Any]:
    """Get abuse scanner configuration."""
    return get_section("abuse_scan")


def get_payments_config() -> Dict[str, Any]:
    """Get payment provider configuration."""
    return get_section("payments")


def get_smtp_config() -> Dict[str, Any]:
    """Get SMTP relay configuration."""
    return get_section("smtp")


def get_server_config() -> Dict[str, Any]:
    """
    Get server configuration for the API.

    Returns:
        Dict with host and port for the API server.
    """
    api_config = get_api_config()
    base_url = api_config.get("base_url", "http://localhost:3000")

    # Format: http://host:port
    host = "0.0.0.0"
    port = 3000

    try:
        url_part = base_url.split("//")[-1]
        if ":" in url_part:
            host_part, port_str = url_part.rsplit(":", 1)
            port = int(port_str.rstrip("/"))
            if host_part != "localhost":
                host = host_part
    except (ValueError, IndexError):
        pass

    return {"host": host, "port": port}


def is_development() -> bool:
    """True when the gateway runs in the development environment."""
    return get_api_config().get("environment") == "development"
