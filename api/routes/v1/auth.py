"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login              -- password login; returns bearer token
  POST /api/v1/auth/verify-token       -- query: is this session token valid?
  POST /api/v1/auth/logout-token       -- revoke a token; always 200
  POST /api/v1/auth/create-admin       -- first-run admin bootstrap
  POST /api/v1/auth/register           -- self-registration (sends verification)
  GET  /api/v1/auth/me                 -- current identity (requires auth)
  POST /api/v1/auth/logout-all         -- revoke all of the caller's sessions
  POST /api/v1/auth/change-password    -- requires auth; revokes all sessions
  POST /api/v1/auth/forgot-password    -- issue reset token; always 200
  POST /api/v1/auth/reset-password     -- redeem reset token
  POST /api/v1/auth/send-verification  -- re-send email verification (auth)
  POST /api/v1/auth/resend-verification -- re-send by email address; always 200
  POST /api/v1/auth/verify-email       -- redeem verification token
  GET  /api/v1/auth/token-count        -- stored token count (admin only)

Security:
  Credential-bearing endpoints are rate-limited per IP (LOGIN_RATE_LIMIT).
  @router.post sits above @limiter.limit so FastAPI registers the limited
  wrapper; SlowAPIMiddleware leaves decorated routes to the decorator.
  Login failures and token failures always render the same generic body, no
  matter which check failed; the exception handler in api/main.py uses only
  AuthError.public_message.
  verify-token never answers 401 -- it is a query, not an authorization gate.
  Cache-Control: no-store on every response that carries a token.

Handlers are plain `def` so FastAPI runs them in its threadpool; bcrypt and
store I/O never block the event loop.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import credential_rate_limit, limiter
from api.models import (
    ChangePasswordRequest,
    CreateAdminRequest,
    EmailRequest,
    LoginRequest,
    LoginResponse,
    LogoutAllResponse,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
    SuccessResponse,
    TokenCountResponse,
    TokenRequest,
    UserResponse,
    VerifyTokenResponse,
)
from auth.dependencies import get_auth_service, get_current_user, require_admin
from auth.errors import TokenError
from auth.models import TokenMetadata, UserIdentity

# Auth policy:
# - login, verify-token, logout-token, create-admin, register,
#   forgot-password, reset-password, resend-verification, verify-email: public
# - me, logout-all, change-password, send-verification: requires auth
# - token-count: requires admin
router = APIRouter()

_RESET_SENT = "If that email exists, a password reset link has been sent."
_VERIFICATION_SENT = "If that account exists and is unverified, a verification email has been sent."


def _metadata(request: Request) -> TokenMetadata:
    user_agent = request.headers.get("User-Agent")
    return TokenMetadata(
        origin_ip=request.client.host if request.client else None,
        user_agent=user_agent[:512] if user_agent else None,
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(credential_rate_limit)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; return a session token.

    InvalidCredentialsError propagates to the AuthError handler, which renders
    one body for unknown user, wrong password and inactive account alike.
    """
    result = get_auth_service(request).login(body.username, body.password, _metadata(request))
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            token=result.token,
            expires_at=result.expires_at,
            user=UserResponse.from_identity(result.user),
        ).model_dump(mode="json", by_alias=True),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/verify-token", response_model=VerifyTokenResponse, response_model_exclude_none=True)
def verify_token(request: Request, body: TokenRequest) -> VerifyTokenResponse:
    """Report whether a session token is currently valid.

    Invalid tokens answer 200 {valid: false}. Store outages still raise and
    become 503 -- "cannot tell" is not the same answer as "invalid".
    """
    try:
        identity = get_auth_service(request).verify_session(body.token)
    except TokenError:
        return VerifyTokenResponse(valid=False)
    return VerifyTokenResponse(valid=True, user=UserResponse.from_identity(identity))


@router.post("/auth/logout-token", response_model=SuccessResponse)
def logout_token(request: Request, body: TokenRequest) -> SuccessResponse:
    """Revoke the given token. Succeeds even if it was already invalid."""
    get_auth_service(request).logout(body.token)
    return SuccessResponse()


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(request: Request, current_user: UserIdentity = Depends(get_current_user)) -> LogoutAllResponse:
    """Revoke every session the caller holds, including this one."""
    revoked = get_auth_service(request).logout_all(current_user.id)
    return LogoutAllResponse(revoked=revoked)


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: UserIdentity = Depends(get_current_user)) -> UserResponse:
    """Return identity information for the currently authenticated user."""
    return UserResponse.from_identity(current_user)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@router.post("/auth/create-admin", response_model=UserResponse)
@limiter.limit(credential_rate_limit)
def create_admin(request: Request, body: CreateAdminRequest) -> UserResponse:
    """Create the first admin account. 400 already_bootstrapped once one exists."""
    identity = get_auth_service(request).bootstrap_admin(body.username, body.email, body.password, body.full_name)
    return UserResponse.from_identity(identity)


@router.post("/auth/register", response_model=UserResponse, status_code=201)
@limiter.limit(credential_rate_limit)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create a regular account and send an email verification token."""
    identity = get_auth_service(request).register_user(body.username, body.email, body.password, body.full_name)
    return UserResponse.from_identity(identity)


@router.post("/auth/change-password", response_model=LogoutAllResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: UserIdentity = Depends(get_current_user),
) -> LogoutAllResponse:
    """Change the caller's password. Every session, this one included, is revoked."""
    revoked = get_auth_service(request).change_password(current_user.id, body.current_password, body.new_password)
    return LogoutAllResponse(revoked=revoked)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
@limiter.limit(credential_rate_limit)
def forgot_password(request: Request, body: EmailRequest) -> MessageResponse:
    """Issue a reset token if the email exists. The answer is identical either way."""
    get_auth_service(request).request_password_reset(body.email, _metadata(request))
    return MessageResponse(message=_RESET_SENT)


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Redeem a reset token. All existing sessions of the account are revoked."""
    get_auth_service(request).reset_password(body.token, body.password)
    return MessageResponse(message="Password has been reset successfully.")


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.post("/auth/send-verification", response_model=MessageResponse)
def send_verification(request: Request, current_user: UserIdentity = Depends(get_current_user)) -> MessageResponse:
    get_auth_service(request).send_email_verification(current_user.id)
    return MessageResponse(message="Verification email sent.")


@router.post("/auth/resend-verification", response_model=MessageResponse)
@limiter.limit(credential_rate_limit)
def resend_verification(request: Request, body: EmailRequest) -> MessageResponse:
    get_auth_service(request).resend_verification(body.email)
    return MessageResponse(message=_VERIFICATION_SENT)


@router.post("/auth/verify-email", response_model=UserResponse)
def verify_email(request: Request, body: TokenRequest) -> UserResponse:
    identity = get_auth_service(request).verify_email(body.token)
    return UserResponse.from_identity(identity)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


@router.get("/auth/token-count", response_model=TokenCountResponse)
def token_count(request: Request, current_user: UserIdentity = Depends(require_admin)) -> TokenCountResponse:
    """Number of token records currently stored. Token values are never listed."""
    return TokenCountResponse(count=get_auth_service(request).token_count())
