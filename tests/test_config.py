"""Tests for core/config.py -- Settings defaults and startup validation.

Covers:
- production defaults (bcrypt cost 12, 24h sessions, 1h reset tokens, sql backend)
- SECRET_KEY required outside debug, auto-generated in debug, min 32 chars
- TOKEN_BACKEND=memory refused outside debug
- ttls_from_settings() maps the TTL fields onto token types
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from auth.models import TokenType
from auth.tokens import ttls_from_settings
from core.config import Settings

GOOD_KEY = "k" * 48


@pytest.fixture
def clean_env(monkeypatch):
    """Drop the test-suite overrides so defaults are visible."""
    for name in ("DEBUG", "BCRYPT_ROUNDS", "TOKEN_BACKEND", "SECRET_KEY"):
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    def test_production_defaults(self, clean_env) -> None:
        settings = Settings(_env_file=None, secret_key=GOOD_KEY)
        assert settings.debug is False
        assert settings.bcrypt_rounds == 12
        assert settings.token_backend == "sql"
        assert settings.session_ttl_seconds == 24 * 3600
        assert settings.email_verification_ttl_seconds == 24 * 3600
        assert settings.password_reset_ttl_seconds == 3600
        assert settings.sweep_interval_seconds == 300
        assert settings.login_rate_limit == "10/minute"

    def test_ttls_from_settings(self, clean_env) -> None:
        settings = Settings(_env_file=None, secret_key=GOOD_KEY, session_ttl_seconds=900)
        ttls = ttls_from_settings(settings)
        assert ttls[TokenType.SESSION] == timedelta(minutes=15)
        assert ttls[TokenType.PASSWORD_RESET] == timedelta(hours=1)


class TestSecretKey:
    def test_required_in_production(self, clean_env) -> None:
        with pytest.raises(ValidationError, match="SECRET_KEY is required"):
            Settings(_env_file=None)

    def test_generated_in_debug(self, clean_env) -> None:
        settings = Settings(_env_file=None, debug=True)
        assert len(settings.secret_key) == 64

    def test_too_short(self, clean_env) -> None:
        with pytest.raises(ValidationError, match="at least 32"):
            Settings(_env_file=None, secret_key="short")

    def test_read_from_env(self, clean_env, monkeypatch) -> None:
        monkeypatch.setenv("SECRET_KEY", GOOD_KEY)
        assert Settings(_env_file=None).secret_key == GOOD_KEY


class TestTokenBackend:
    def test_memory_refused_in_production(self, clean_env) -> None:
        with pytest.raises(ValidationError, match="TOKEN_BACKEND=memory"):
            Settings(_env_file=None, secret_key=GOOD_KEY, token_backend="memory")

    def test_memory_allowed_in_debug(self, clean_env) -> None:
        assert Settings(_env_file=None, debug=True, token_backend="memory").token_backend == "memory"

    def test_unknown_backend(self, clean_env) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, secret_key=GOOD_KEY, token_backend="redis")

    def test_bcrypt_rounds_bounds(self, clean_env) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, secret_key=GOOD_KEY, bcrypt_rounds=3)
