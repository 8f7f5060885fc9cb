"""
auth/service.py -- Session/credential facade: the one entry point for HTTP handlers.

AuthService composes the password hasher, token issuer, verifier, revocation
service, user directory and notifier. Route code calls these methods and maps
AuthError subclasses to responses; it never reaches into the stores itself.

Login state machine:
  lookup user -> (missing/inactive/no credential: dummy bcrypt, fail)
              -> verify password -> (mismatch: fail)
              -> rehash if legacy -> issue session token -> stamp last_login
  Every failure raises the same InvalidCredentialsError. The precise reason is
  logged server-side only, for later rate limiting and audit.

Single-use tokens (password_reset, email_verification):
  verify with the expected type, then consume with store.revoke(). revoke()
  returns True for exactly one caller, so two concurrent redemptions of the same
  token cannot both succeed. Issuing a new one revokes older ones of the same
  type for that user (superseding issuance).

Availability vs validity:
  StoreUnavailableError is never caught here. It reaches the HTTP layer as a
  503 so an outage is not mistaken for a bad password or a bad token.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    InvalidCredentialsError,
    InvalidTokenError,
    RevokedTokenError,
    UsernameTakenError,
    WeakInputError,
)
from auth.models import TokenMetadata, TokenType, User, UserIdentity
from auth.notifier import LoggingNotifier, Notifier
from auth.passwords import BCRYPT, DUMMY_HASH, hash_password, needs_rehash, verify_password
from auth.revocation import RevocationService
from auth.store import UserStore
from auth.token_store import TokenStore, build_token_store
from auth.tokens import Clock, TokenIssuer, TokenVerifier, hash_token, ttls_from_settings, utcnow

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("doorpro.auth")

ADMIN_ROLE = "admin"
DEFAULT_ROLE = "user"


@dataclass(frozen=True)
class LoginResult:
    token: str
    expires_at: datetime
    user: UserIdentity


class AuthService:
    """Facade over the credential and token lifecycle.

    Usage:
        service = build_auth_service(get_settings())
        result = service.login("rep1", "secret", TokenMetadata(origin_ip="10.0.0.5"))
        identity = service.verify_session(result.token)
        service.logout(result.token)
        service.close()
    """

    def __init__(
        self,
        users: UserStore,
        tokens: TokenStore,
        secret_key: str,
        ttls: dict[TokenType, timedelta] | None = None,
        bcrypt_rounds: int | None = None,
        sweep_grace: timedelta = timedelta(hours=24),
        notifier: Notifier | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.secret_key = secret_key
        self.bcrypt_rounds = bcrypt_rounds
        self.notifier: Notifier = notifier or LoggingNotifier()
        self.issuer = TokenIssuer(tokens, secret_key, ttls=ttls, clock=clock)
        self.verifier = TokenVerifier(tokens, secret_key, clock=clock)
        self.revocation = RevocationService(tokens, secret_key, grace=sweep_grace, clock=clock)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def login(self, username: str, password: str, metadata: TokenMetadata | None = None) -> LoginResult:
        """Authenticate a username/password pair and issue a session token."""
        user = self.users.get_by_username(username)
        credential = self.users.get_credential(user.id) if user is not None else None
        if user is None or credential is None or not user.is_active:
            # Equalize timing -- do NOT return before running bcrypt.
            verify_password(password, DUMMY_HASH)
            reason = "unknown_user" if user is None else ("inactive" if not user.is_active else "no_credential")
            self._log_failed_login(username, reason, metadata)
            raise InvalidCredentialsError(reason)
        if not verify_password(password, credential.password_hash):
            self._log_failed_login(username, "bad_password", metadata)
            raise InvalidCredentialsError("bad_password")

        if needs_rehash(credential.password_hash, self.bcrypt_rounds):
            self._upgrade_hash(user.id, password, credential.hash_algorithm)

        issued = self.issuer.issue(user.id, TokenType.SESSION, metadata)
        self.users.update_last_login(user.id)
        logger.info("Login succeeded for user_id=%s", user.id)
        return LoginResult(token=issued.value, expires_at=issued.expires_at, user=user.identity())

    def verify_session(self, token: str) -> UserIdentity:
        """Resolve a session token to the current identity snapshot."""
        user_id = self.verifier.verify(token, TokenType.SESSION)
        user = self.users.get_by_id(user_id)
        if user is None or not user.is_active:
            logger.info("Session token for missing or inactive user_id=%s rejected", user_id)
            raise InvalidTokenError(f"user {user_id} not active")
        return user.identity()

    def logout(self, token: str) -> None:
        self.revocation.logout(token)

    def logout_all(self, user_id: int) -> int:
        """Revoke every session token a user holds."""
        return self.revocation.revoke_all_for_user(user_id, TokenType.SESSION)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def bootstrap_admin(self, username: str, email: str, password: str, full_name: str) -> UserIdentity:
        """Create the first admin account. Raises AlreadyBootstrappedError afterwards."""
        password_hash = hash_password(password, self.bcrypt_rounds)
        user = User(username=username, email=email, full_name=full_name, role=ADMIN_ROLE, email_verified=True)
        user_id = self.users.create_bootstrap_admin(user, password_hash, BCRYPT)
        logger.info("Bootstrap admin created (user_id=%s)", user_id)
        user.id = user_id
        return user.identity()

    def register_user(self, username: str, email: str, password: str, full_name: str) -> UserIdentity:
        """Create a regular account and send it an email verification token.

        Raises UsernameTakenError when the username is already registered.
        """
        password_hash = hash_password(password, self.bcrypt_rounds)
        user = User(username=username, email=email, full_name=full_name, role=DEFAULT_ROLE)
        try:
            user.id = self.users.create_user(user, password_hash, BCRYPT)
        except IntegrityError as exc:
            raise UsernameTakenError(username) from exc
        logger.info("Registered user_id=%s", user.id)
        self.send_email_verification(user.id)
        return user.identity()

    def change_password(self, user_id: int, current_password: str, new_password: str) -> int:
        """Replace a password after re-checking the current one.

        Revokes every session of the user, including the caller's, and returns
        how many were revoked.
        """
        credential = self.users.get_credential(user_id)
        if credential is None or not verify_password(current_password, credential.password_hash):
            logger.info("Password change rejected for user_id=%s", user_id)
            raise InvalidCredentialsError("bad_password")
        self.users.set_credential(user_id, hash_password(new_password, self.bcrypt_rounds), BCRYPT)
        revoked = self.revocation.revoke_all_for_user(user_id, TokenType.SESSION)
        logger.info("Password changed for user_id=%s", user_id)
        return revoked

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str, metadata: TokenMetadata | None = None) -> None:
        """Issue a reset token and hand it to the notifier.

        Silent for unknown or inactive emails so the endpoint cannot be used to
        enumerate accounts.
        """
        user = self.users.get_by_email(email)
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown email")
            return
        self.revocation.revoke_all_for_user(user.id, TokenType.PASSWORD_RESET)
        issued = self.issuer.issue(user.id, TokenType.PASSWORD_RESET, metadata)
        self.notifier.send_password_reset(user.identity(), issued.value, issued.expires_at)

    def reset_password(self, token: str, new_password: str) -> UserIdentity:
        """Redeem a password_reset token once and set a new password."""
        user_id = self.verifier.verify(token, TokenType.PASSWORD_RESET)
        password_hash = hash_password(new_password, self.bcrypt_rounds)
        self._consume(token, user_id)
        user = self.users.get_by_id(user_id)
        if user is None:
            raise InvalidTokenError(f"user {user_id} no longer exists")
        self.users.set_credential(user_id, password_hash, BCRYPT)
        self.revocation.revoke_all_for_user(user_id, TokenType.SESSION)
        logger.info("Password reset completed for user_id=%s", user_id)
        return user.identity()

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def send_email_verification(self, user_id: int) -> None:
        """Issue a fresh verification token for a user, superseding older ones."""
        user = self.users.get_by_id(user_id)
        if user is None:
            raise InvalidTokenError(f"user {user_id} not found")
        self.revocation.revoke_all_for_user(user_id, TokenType.EMAIL_VERIFICATION)
        issued = self.issuer.issue(user_id, TokenType.EMAIL_VERIFICATION)
        self.notifier.send_email_verification(user.identity(), issued.value, issued.expires_at)

    def resend_verification(self, email: str) -> None:
        """Public resend: silent when the email is unknown or already verified."""
        user = self.users.get_by_email(email)
        if user is None or user.email_verified:
            return
        self.send_email_verification(user.id)

    def verify_email(self, token: str) -> UserIdentity:
        user_id = self.verifier.verify(token, TokenType.EMAIL_VERIFICATION)
        self._consume(token, user_id)
        user = self.users.get_by_id(user_id) if self.users.update_user(user_id, email_verified=True) else None
        if user is None:
            raise InvalidTokenError(f"user {user_id} no longer exists")
        logger.info("Email verified for user_id=%s", user_id)
        return user.identity()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def token_count(self) -> int:
        return self.tokens.count()

    def sweep(self) -> int:
        return self.revocation.sweep()

    def revoke_user(self, user_id: int) -> int:
        """Revoke every token of every type for a user (account compromise)."""
        return self.revocation.revoke_all_for_user(user_id)

    def close(self) -> None:
        self.tokens.close()
        self.users.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _consume(self, token: str, user_id: int) -> None:
        if not self.tokens.revoke(hash_token(token, self.secret_key)):
            # Lost the race with a concurrent redemption of the same token.
            logger.warning("Single-use token for user_id=%s already consumed", user_id)
            raise RevokedTokenError("token already consumed")

    def _upgrade_hash(self, user_id: int, password: str, old_algorithm: str) -> None:
        try:
            new_hash = hash_password(password, self.bcrypt_rounds)
        except WeakInputError:
            # Over bcrypt's 72-byte input limit; the legacy hash stays in place.
            logger.info("Kept %s hash for user_id=%s: password too long for bcrypt", old_algorithm, user_id)
            return
        self.users.set_credential(user_id, new_hash, BCRYPT)
        logger.info("Upgraded %s password hash to bcrypt for user_id=%s", old_algorithm, user_id)

    def _log_failed_login(self, username: str, reason: str, metadata: TokenMetadata | None) -> None:
        logger.warning(
            "Failed login attempt for username=%r reason=%s ip=%s",
            username[:64],
            reason,
            metadata.origin_ip if metadata else None,
        )


def build_auth_service(settings: Settings, notifier: Notifier | None = None) -> AuthService:
    """Wire an AuthService from configuration. Caller owns close()."""
    users = UserStore(db_url=settings.auth_db_url, timeout=settings.store_timeout_seconds)
    tokens = build_token_store(settings)
    return AuthService(
        users=users,
        tokens=tokens,
        secret_key=settings.secret_key,
        ttls=ttls_from_settings(settings),
        bcrypt_rounds=settings.bcrypt_rounds,
        sweep_grace=timedelta(seconds=settings.sweep_grace_seconds),
        notifier=notifier,
    )
