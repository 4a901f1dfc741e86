"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Lattice happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. redis_url -> REDIS_URL). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Enforces the SECRET_KEY policy and rejects
      non-positive TTLs, intervals and retry counts.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. JWT signing relies
  on key entropy -- a short key weakens it.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a hard
  startup failure. Tokens signed with a random per-process key would be
  invalidated on every restart.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
cmdb/, graph/, cache/ or audit/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("lattice.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (DEBUG=true is still needed unless
    SECRET_KEY is set).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    token_expire_seconds: int = 3600

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------

    # Empty means the SQLite file inside the package directory.
    database_url: str = ""
    # Empty means "same as database_url".
    audit_database_url: str = ""
    # Empty selects the SQLite-backed cache at cache_db_path.
    redis_url: str = ""
    cache_db_path: str = ""
    # Bound on any single wait against a store (lock wait, socket, dashboard fan-out).
    store_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    ci_cache_ttl_seconds: int = 300
    cache_purge_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Graph sync
    # ------------------------------------------------------------------

    graph_sync_interval_seconds: int = 30
    graph_sync_max_attempts: int = 8
    graph_sync_base_delay_seconds: float = 2.0

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    audit_retention_days: int = 365

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # Comma-separated. "*" disables host checking.
    allowed_hosts: str = "*"
    cors_origins: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_positive_values(self) -> "Settings":
        for name in (
            "token_expire_seconds",
            "ci_cache_ttl_seconds",
            "cache_purge_interval_seconds",
            "graph_sync_interval_seconds",
            "graph_sync_max_attempts",
            "audit_retention_days",
            "store_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be positive.")
        if self.graph_sync_base_delay_seconds < 0:
            raise ValueError("GRAPH_SYNC_BASE_DELAY_SECONDS must not be negative.")
        return self

    def split_list(self, value: str) -> list[str]:
        return [item.strip() for item in value.split(",") if item.strip()]

    def resolved_audit_database_url(self) -> Optional[str]:
        return self.audit_database_url or self.database_url or None


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
