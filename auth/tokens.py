"""
auth/tokens.py -- Opaque token generation, hashing, issuance and verification.

Security design decisions:
  Values: secrets.token_hex(32) gives 256 bits from the OS CSPRNG. Nothing
       time-based or from the random module ever feeds a token value.

  Storage: stores hold HMAC-SHA256(SECRET_KEY, raw_token) as hex. The hash is
       deterministic, so lookup stays O(1) by unique index, and an attacker
       who dumps the token table cannot replay anything without SECRET_KEY.
       bcrypt's intentional slowness is unnecessary for 256-bit random input.

  Expiry: expires_at = issued_at + ttl(token_type). A token is valid while
       now < expires_at, so at exactly expires_at it is already expired.
       Timestamps are truncated to milliseconds at issue, matching what every
       backing persists, so a record reads back exactly as it was written.

  Type gating: verify() takes the expected TokenType. A password_reset token
       presented as a session token fails with WrongTokenTypeError.

  Error disclosure: TokenVerifier raises a distinct subclass per failure and
       logs the reason. The HTTP layer renders all of them with the single
       public message on TokenError.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from auth.errors import (
    DuplicateTokenError,
    ExpiredTokenError,
    InvalidTokenError,
    IssuanceExhaustedError,
    RevokedTokenError,
    WrongTokenTypeError,
)
from auth.models import IssuedToken, Token, TokenMetadata, TokenType

if TYPE_CHECKING:
    from auth.token_store import TokenStore
    from core.config import Settings

logger = logging.getLogger("doorpro.auth.tokens")

Clock = Callable[[], datetime]

MAX_ISSUE_ATTEMPTS = 3

DEFAULT_TTLS: dict[TokenType, timedelta] = {
    TokenType.SESSION: timedelta(hours=24),
    TokenType.EMAIL_VERIFICATION: timedelta(hours=24),
    # Short: a leaked reset token hands over the account.
    TokenType.PASSWORD_RESET: timedelta(hours=1),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ttls_from_settings(settings: Settings) -> dict[TokenType, timedelta]:
    return {
        TokenType.SESSION: timedelta(seconds=settings.session_ttl_seconds),
        TokenType.EMAIL_VERIFICATION: timedelta(seconds=settings.email_verification_ttl_seconds),
        TokenType.PASSWORD_RESET: timedelta(seconds=settings.password_reset_ttl_seconds),
    }


# ---------------------------------------------------------------------------
# Generation and hashing
# ---------------------------------------------------------------------------


def generate_token_value() -> str:
    """Return a new 64-hex-char token (256 bits of entropy)."""
    return secrets.token_hex(32)


def hash_token(raw_token: str, secret_key: str) -> str:
    """Return HMAC-SHA256(secret_key, raw_token) as a hex string."""
    return hmac.new(secret_key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


def _truncate_to_millis(value: datetime) -> datetime:
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


# ---------------------------------------------------------------------------
# Issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Create tokens bound to a user and type, and persist them before returning.

    Usage:
        issuer = TokenIssuer(store, secret_key=settings.secret_key)
        issued = issuer.issue(user.id, TokenType.SESSION, TokenMetadata(origin_ip="10.0.0.5"))
        issued.value        # hand to the client
    """

    def __init__(
        self,
        store: TokenStore,
        secret_key: str,
        ttls: dict[TokenType, timedelta] | None = None,
        clock: Clock = utcnow,
        token_factory: Callable[[], str] = generate_token_value,
    ) -> None:
        self.store = store
        self.secret_key = secret_key
        self.ttls = {**DEFAULT_TTLS, **(ttls or {})}
        self.clock = clock
        self.token_factory = token_factory

    def ttl_for(self, token_type: TokenType) -> timedelta:
        return self.ttls[TokenType(token_type)]

    def issue(self, user_id: int, token_type: TokenType, metadata: TokenMetadata | None = None) -> IssuedToken:
        """Generate, persist, and return a new token.

        Retries on DuplicateTokenError up to MAX_ISSUE_ATTEMPTS times, then
        raises IssuanceExhaustedError. StoreUnavailableError propagates.
        """
        token_type = TokenType(token_type)
        metadata = metadata or TokenMetadata()
        for attempt in range(1, MAX_ISSUE_ATTEMPTS + 1):
            value = self.token_factory()
            issued_at = _truncate_to_millis(self.clock())
            token = Token(
                token_hash=hash_token(value, self.secret_key),
                user_id=user_id,
                token_type=token_type,
                issued_at=issued_at,
                expires_at=issued_at + self.ttl_for(token_type),
                origin_ip=metadata.origin_ip,
                user_agent=metadata.user_agent,
            )
            try:
                self.store.put(token)
            except DuplicateTokenError:
                logger.warning("Token hash collision on attempt %d for user_id=%s", attempt, user_id)
                continue
            logger.debug("Issued %s token %s... for user_id=%s", token_type.value, token.token_hash[:8], user_id)
            return IssuedToken(value=value, token=token)
        logger.error("Token issuance exhausted after %d attempts for user_id=%s", MAX_ISSUE_ATTEMPTS, user_id)
        raise IssuanceExhaustedError(f"no unique token after {MAX_ISSUE_ATTEMPTS} attempts")


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------


class TokenVerifier:
    """Validate a presented token against an expected type and resolve its owner."""

    def __init__(self, store: TokenStore, secret_key: str, clock: Clock = utcnow) -> None:
        self.store = store
        self.secret_key = secret_key
        self.clock = clock

    def verify(self, token_value: str, expected_type: TokenType) -> int:
        """Return the owning user_id, or raise a TokenError subclass.

        Check order: existence, revocation, expiry, type. StoreUnavailableError
        from the store propagates unchanged.
        """
        if not token_value:
            raise InvalidTokenError("empty token")
        token_hash = hash_token(token_value, self.secret_key)
        token = self.store.get(token_hash)
        prefix = token_hash[:8]
        if token is None:
            logger.info("Token rejected (not_found) %s...", prefix)
            raise InvalidTokenError(f"token {prefix}... not found")
        if token.revoked:
            logger.info("Token rejected (revoked) %s... user_id=%s", prefix, token.user_id)
            raise RevokedTokenError(f"token {prefix}... revoked")
        if self.clock() >= token.expires_at:
            logger.info("Token rejected (expired) %s... user_id=%s", prefix, token.user_id)
            raise ExpiredTokenError(f"token {prefix}... expired at {token.expires_at.isoformat()}")
        if token.token_type != TokenType(expected_type):
            logger.warning(
                "Token rejected (wrong_type) %s... user_id=%s presented=%s expected=%s",
                prefix,
                token.user_id,
                token.token_type.value,
                TokenType(expected_type).value,
            )
            raise WrongTokenTypeError(f"token {prefix}... is {token.token_type.value}")
        return token.user_id
