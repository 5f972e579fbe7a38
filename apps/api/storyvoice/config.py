"""Application configuration utilities."""
from __future__ import annotations

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class MigrationRetryPolicy(str, Enum):
    GIVE_UP_AFTER_FIRST_ATTEMPT = "give_up_after_first_attempt"
    RETRY_FAILED_ONLY = "retry_failed_only"


class SyncConfig(BaseModel):
    """Strongly typed configuration loaded from config.json and the environment."""

    supabase_url: Optional[str] = Field(default=None)
    supabase_anon_key: Optional[str] = Field(default=None)
    supabase_jwt_secret: Optional[str] = Field(default=None)
    supabase_jwks_url: Optional[str] = Field(default=None)
    supabase_jwt_audience: Optional[str] = Field(default="authenticated")
    cache_path: str = Field(default="./data/storyvoice_cache.db")
    request_timeout_seconds: float = Field(default=15.0, gt=0)
    fetch_concurrency: int = Field(default=4, ge=1)
    story_cache_limit: int = Field(default=50, ge=1)
    offline_story_limit: int = Field(default=20, ge=1)
    migration_retry_policy: MigrationRetryPolicy = Field(
        default=MigrationRetryPolicy.GIVE_UP_AFTER_FIRST_ATTEMPT
    )

    @property
    def is_backend_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)

    @property
    def base_url(self) -> str:
        return (self.supabase_url or "").rstrip("/")

    @property
    def resolved_jwks_url(self) -> str:
        return self.supabase_jwks_url or f"{self.base_url}/auth/v1/keys"

    @property
    def resolved_cache_path(self) -> Path:
        """Return the absolute path for the SQLite cache file."""
        path = Path(self.cache_path)
        if path.is_absolute():
            return path
        return (Path(__file__).resolve().parents[1] / path).resolve()


_ENV_OVERRIDES = {
    "supabase_url": ("SUPABASE_URL", "EXPO_PUBLIC_SUPABASE_URL"),
    "supabase_anon_key": ("SUPABASE_ANON_KEY", "EXPO_PUBLIC_SUPABASE_ANON_KEY"),
    "supabase_jwt_secret": ("SUPABASE_JWT_SECRET",),
    "supabase_jwks_url": ("SUPABASE_JWKS_URL",),
    "supabase_jwt_audience": ("SUPABASE_JWT_AUD",),
    "cache_path": ("STORYVOICE_CACHE_PATH",),
    "migration_retry_policy": ("STORYVOICE_MIGRATION_RETRY_POLICY",),
}


def _config_path() -> Path:
    return Path(__file__).resolve().parents[1] / "config.json"


def load_config(path: Optional[Path] = None) -> SyncConfig:
    """Load configuration from config.json (optional) overlaid with environment variables.

    A missing Supabase URL or key is not an error: the gateway then answers every
    call with a "not configured" result and the app keeps working from its cache.
    """

    config_file = path or _config_path()
    contents: Dict[str, Any] = {}
    if config_file.exists():
        contents = json.loads(config_file.read_text())

    for field, env_names in _ENV_OVERRIDES.items():
        for name in env_names:
            value = os.getenv(name)
            if value:
                contents[field] = value
                break

    config = SyncConfig(**contents)
    if not config.is_backend_configured:
        logger.warning(
            "Missing SUPABASE_URL and/or SUPABASE_ANON_KEY. "
            "Cloud sync is unavailable; serving from the local cache only."
        )
    return config
