"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Bearer tokens are the only auth method: clients send
`Authorization: Bearer <token>` with the session token returned by login.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.

StoreUnavailableError is deliberately NOT swallowed by try_get_current_user():
an outage must surface as 503, not as "you are logged out".

Layer rule: auth/dependencies.py may import from fastapi (for
Depends/HTTPException/Request) because this module is part of the FastAPI
dependency injection system. It does not import from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import TokenError
from auth.models import UserIdentity
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def bearer_token(request: Request) -> str | None:
    """Extract the raw token from the Authorization header, if present."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None


def try_get_current_user(request: Request) -> UserIdentity | None:
    """Attempt to authenticate the request via its bearer token.

    Returns the identity on success, None for a missing or invalid token.
    """
    token = bearer_token(request)
    if token is None:
        return None
    try:
        return get_auth_service(request).verify_session(token)
    except TokenError:
        return None


def get_current_user(request: Request) -> UserIdentity:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: UserIdentity = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_admin(request: Request) -> UserIdentity:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    user = get_current_user(request)
    if user.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user
