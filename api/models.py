"""
API request and response models for DoorPro auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format is camelCase (fullName, expiresAt) to match the existing web and
mobile clients; Python attribute names stay snake_case. Requests accept either
spelling.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

from auth.models import UserIdentity

# Matches the 72-byte bcrypt input limit for ASCII passwords. Multi-byte input
# is re-checked in auth.passwords.hash_password().
_PASSWORD_MAX = 72
# Passwords only checked, never hashed, may be longer: legacy PBKDF2 records
# carry no length cap.
_CHECKED_PASSWORD_MAX = 1024
_TOKEN_MAX = 256

# Usernames are trimmed the same way at registration and at login. Passwords
# are never trimmed: whitespace is part of the secret.
Username = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class UserResponse(_CamelModel):
    """Identity snapshot: {id, username, email, fullName, role}."""

    id: int
    username: str
    email: str
    full_name: str
    role: str

    @classmethod
    def from_identity(cls, identity: UserIdentity) -> UserResponse:
        return cls(
            id=identity.id,
            username=identity.username,
            email=identity.email,
            full_name=identity.full_name,
            role=identity.role,
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class SuccessResponse(_CamelModel):
    success: bool = True


class MessageResponse(_CamelModel):
    message: str


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class LoginRequest(_CamelModel):
    username: Username
    password: str = Field(min_length=1, max_length=_CHECKED_PASSWORD_MAX)


class LoginResponse(_CamelModel):
    token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: UserResponse


class TokenRequest(_CamelModel):
    """Body for verify-token, logout-token, verify-email.

    Unbounded: an oversized token is simply unknown, which these endpoints
    report in their normal answer rather than as a validation error.
    """

    token: str = ""


class VerifyTokenResponse(_CamelModel):
    valid: bool
    user: Optional[UserResponse] = None


class LogoutAllResponse(_CamelModel):
    success: bool = True
    revoked: int


class TokenCountResponse(_CamelModel):
    count: int


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class CreateAdminRequest(_CamelModel):
    username: Username
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=8, max_length=_PASSWORD_MAX)
    full_name: str = Field(min_length=1, max_length=255)


class RegisterRequest(CreateAdminRequest):
    pass


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(min_length=1, max_length=_CHECKED_PASSWORD_MAX)
    new_password: str = Field(min_length=8, max_length=_PASSWORD_MAX)


class EmailRequest(_CamelModel):
    email: str = Field(min_length=3, max_length=255)


class ResetPasswordRequest(_CamelModel):
    token: str = Field(min_length=1, max_length=_TOKEN_MAX)
    password: str = Field(min_length=8, max_length=_PASSWORD_MAX)
