"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores and services do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TokenType(str, Enum):
    """Verification context a token is valid for."""

    SESSION = "session"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


@dataclass
class User:
    """A DoorPro account as held by the user directory.

    The password hash lives in a separate Credential record so that directory
    reads (identity snapshots, admin listings) never carry it around.
    """

    username: str
    role: str  # "admin", "manager", "user"
    email: str = ""
    full_name: str = ""
    id: int | None = None
    is_active: bool = True
    email_verified: bool = False
    created_at: str | None = None
    last_login: str | None = None

    def identity(self) -> UserIdentity:
        return UserIdentity(
            id=self.id,
            username=self.username,
            email=self.email,
            full_name=self.full_name,
            role=self.role,
        )


@dataclass(frozen=True)
class UserIdentity:
    """Read projection returned to callers after a successful login or verify."""

    id: int
    username: str
    email: str
    full_name: str
    role: str


@dataclass
class Credential:
    """Stored password for one user.

    hash_algorithm is "bcrypt" for every hash written by this codebase.
    "pbkdf2_sha512" only appears on records imported from the legacy system and
    is replaced on the user's next successful login.
    """

    user_id: int
    password_hash: str
    hash_algorithm: str
    updated_at: str | None = None


@dataclass(frozen=True)
class TokenMetadata:
    """Optional request context recorded alongside an issued token."""

    origin_ip: str | None = None
    user_agent: str | None = None


@dataclass
class Token:
    """A persisted token record.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token). The raw value is handed
    to the client once at issue time and never stored, so a leaked store does
    not yield usable bearer tokens.
    """

    token_hash: str
    user_id: int
    token_type: TokenType
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    origin_ip: str | None = None
    user_agent: str | None = None
    id: int | None = None

    def __post_init__(self) -> None:
        self.token_type = TokenType(self.token_type)
        if self.expires_at <= self.issued_at:
            raise ValueError("expires_at must be later than issued_at")

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and now < self.expires_at


@dataclass(frozen=True)
class IssuedToken:
    """Result of a successful issue: the raw value plus the stored record."""

    value: str
    token: Token

    @property
    def expires_at(self) -> datetime:
        return self.token.expires_at
