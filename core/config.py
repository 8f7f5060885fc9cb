"""
core/config.py -- DoorPro auth settings, read once from the environment.

Every tunable of the auth service lives on Settings: storage location and
backing, token lifetimes, bcrypt cost, sweep cadence and HTTP hardening. Field
names double as environment variable names (SESSION_TTL_SECONDS, BCRYPT_ROUNDS,
...), and a local .env file is honoured for development. Code elsewhere asks
get_settings() and never reads os.environ itself.

Startup refuses unsafe combinations instead of running with them:
  SECRET_KEY keys the HMAC that token records are stored under. It must be set
  (or is generated, with a warning, under DEBUG=true) and be at least 32
  characters. Rotating it invalidates every outstanding token, which is the
  intended kill switch.

  TOKEN_BACKEND=memory loses every session on restart. It is accepted only
  with DEBUG=true (tests, local dev).

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("doorpro.config")


class Settings(BaseSettings):
    """Auth service configuration. Every field has a development-friendly default
    except SECRET_KEY, which production must supply."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # "" means unset; validate_secret_key replaces it or refuses to start.
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    auth_db_url: str = "sqlite:///./doorpro_auth.db"
    token_backend: Literal["sql", "file", "memory"] = "sql"
    token_file_path: str = "./tokens.json"
    # Upper bound for any single store operation (lock wait, SQLite busy wait,
    # connection pool checkout).
    store_timeout_seconds: float = Field(default=5.0, gt=0)

    # ------------------------------------------------------------------
    # Token lifetimes
    # ------------------------------------------------------------------

    session_ttl_seconds: int = Field(default=24 * 3600, gt=0)
    email_verification_ttl_seconds: int = Field(default=24 * 3600, gt=0)
    password_reset_ttl_seconds: int = Field(default=3600, gt=0)

    # ------------------------------------------------------------------
    # Password hashing
    # ------------------------------------------------------------------

    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    sweep_interval_seconds: int = Field(default=5 * 60, gt=0)
    # Expired tokens are kept this long past expiry for audit before purge.
    sweep_grace_seconds: int = Field(default=24 * 3600, ge=0)
    sweep_batch_size: int = Field(default=500, gt=0)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Generate a throwaway key under DEBUG, otherwise require one of >= 32 chars.

        A key generated per boot would orphan every stored token hash on
        restart, so production refuses to start without an explicit key.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "Using auto-generated SECRET_KEY; issued tokens stop verifying after a restart."
                )
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
    def validate_token_backend(self) -> "Settings":
        """Refuse the in-memory token backend outside debug mode."""
        if self.token_backend == "memory" and not self.debug:
            raise ValueError(
                "TOKEN_BACKEND=memory does not survive restarts and is only allowed with DEBUG=true. "
                "Use TOKEN_BACKEND=sql or TOKEN_BACKEND=file."
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings, built on first call.

    Tests that need different environment values call get_settings.cache_clear()
    after changing them.
    """
    return Settings()
