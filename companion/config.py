"""Configuration settings for Recovery Companion.

Settings come from ``COMPANION_*`` environment variables (or a ``.env``
file). Backend credentials may also live in ``<home>/credentials.json``;
environment variables win over the file.
"""

import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def get_companion_home() -> Path:
    """Directory holding the local database, keys and credentials."""
    override = os.environ.get("COMPANION_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".companion"


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="COMPANION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Backend
    backend_url: Optional[str] = None
    api_key: Optional[str] = None
    auth_token: Optional[str] = None
    user_id: Optional[str] = None
    network_timeout_seconds: float = 30.0

    # Sync engine
    sync_batch_size: int = 50
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    periodic_interval_seconds: float = 300.0

    # Local
    db_filename: str = "companion.db"
    log_level: str = "WARNING"

    @property
    def db_path(self) -> Path:
        return get_companion_home() / self.db_filename

    @property
    def key_dir(self) -> Path:
        return get_companion_home() / "keys"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def validate_backend_url(url: Optional[str], *, allow_localhost_http: bool = True) -> Optional[str]:
    """Validate a backend URL for safe credential transmission.

    Rejects non-http/https schemes, URLs with no host, and remote HTTP
    endpoints (only localhost/127.0.0.1 are allowed over plaintext HTTP).

    Returns:
        The URL unchanged if valid, or ``None`` if rejected.
    """
    if not url:
        return None

    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid backend_url scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid backend_url; missing host.")
        return None
    if parsed.scheme == "http":
        if not allow_localhost_http:
            logger.warning("HTTP not allowed in this context.")
            return None
        host = parsed.hostname or ""
        if host not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http backend_url for security.")
            return None
    return url


def load_credentials(settings: Optional[Settings] = None) -> Optional[Dict[str, str]]:
    """Resolve backend credentials.

    Priority:
    1. Environment (COMPANION_BACKEND_URL, COMPANION_API_KEY, COMPANION_AUTH_TOKEN, COMPANION_USER_ID)
    2. <home>/credentials.json

    Returns:
        Dict with 'backend_url', 'api_key', 'auth_token' and 'user_id', or None
        if no usable backend URL and key are configured.
    """
    settings = settings or get_settings()
    creds: Dict[str, Optional[str]] = {
        "backend_url": None,
        "api_key": None,
        "auth_token": None,
        "user_id": None,
    }

    credentials_path = get_companion_home() / "credentials.json"
    if credentials_path.exists():
        try:
            with open(credentials_path) as f:
                stored = json.load(f)
            for key in creds:
                creds[key] = stored.get(key)
        except (json.JSONDecodeError, OSError) as e:
            logger.debug(f"Failed to load credentials file: {e}")

    creds["backend_url"] = settings.backend_url or creds["backend_url"]
    creds["api_key"] = settings.api_key or creds["api_key"]
    creds["auth_token"] = settings.auth_token or creds["auth_token"]
    creds["user_id"] = settings.user_id or creds["user_id"]

    backend_url = validate_backend_url(creds["backend_url"])
    if not backend_url or not creds["api_key"]:
        return None

    return {
        "backend_url": backend_url.rstrip("/"),
        "api_key": creds["api_key"],
        "auth_token": creds["auth_token"] or creds["api_key"],
        "user_id": creds["user_id"] or "",
    }
