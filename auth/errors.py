"""
auth/errors.py -- Exception taxonomy for the credential and token lifecycle.

Every class carries three attributes the HTTP layer reads:
  code            stable machine-readable error code for the response envelope
  status_code     HTTP status the exception handler maps it to
  public_message  the ONLY text an untrusted caller ever sees

The four token-validity failures (unknown, revoked, expired, wrong type) share
one code and one public message so a caller cannot learn which state a token is
in. The str() of each instance keeps the precise reason for server-side logs.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every error raised by the auth package."""

    code: str = "auth_error"
    status_code: int = 401
    public_message: str = "Authentication failed."


class InvalidCredentialsError(AuthError):
    """Wrong username, wrong password, inactive account -- all look the same."""

    code = "bad_credentials"
    status_code = 401
    public_message = "Invalid username or password."


# ---------------------------------------------------------------------------
# Token validity
# ---------------------------------------------------------------------------


class TokenError(AuthError):
    """A presented token cannot be accepted. Subclasses record why."""

    code = "invalid_token"
    status_code = 401
    public_message = "Invalid or expired token."
    reason: str = "invalid"


class InvalidTokenError(TokenError):
    reason = "not_found"


class RevokedTokenError(TokenError):
    reason = "revoked"


class ExpiredTokenError(TokenError):
    reason = "expired"


class WrongTokenTypeError(TokenError):
    reason = "wrong_type"


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------


class DuplicateTokenError(AuthError):
    """A store already holds a record under this token hash."""

    code = "token_collision"
    status_code = 500
    public_message = "Could not issue token."


class IssuanceExhaustedError(AuthError):
    """Every regeneration attempt collided. Unreachable with a working CSPRNG."""

    code = "issuance_failed"
    status_code = 500
    public_message = "Could not issue token."


# ---------------------------------------------------------------------------
# Everything else
# ---------------------------------------------------------------------------


class AlreadyBootstrappedError(AuthError):
    code = "already_bootstrapped"
    status_code = 400
    public_message = "An admin account already exists."


class StoreUnavailableError(AuthError):
    """The backing store timed out or failed. Never means "token invalid"."""

    code = "store_unavailable"
    status_code = 503
    public_message = "Authentication service temporarily unavailable."


class WeakInputError(AuthError):
    """Rejected password input. The message is safe to show to the user."""

    code = "weak_input"
    status_code = 400

    def __init__(self, message: str = "Password does not meet requirements.") -> None:
        super().__init__(message)
        self.public_message = message


class UsernameTakenError(AuthError):
    code = "conflict"
    status_code = 409
    public_message = "That username is already taken."
