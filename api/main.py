"""
api/main.py -- FastAPI application entry point for DoorPro auth.

Exposes the credential and session-token lifecycle over HTTP for the DoorPro
web and mobile clients.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (auth service wiring, sweep task) and shutdown
(cancel sweep task, close stores) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError, StoreUnavailableError
from auth.revocation import run_sweeper
from auth.service import build_auth_service
from core.config import get_settings

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("doorpro.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters: the auth service (and its stores) must exist before
    the sweep task references it. Shutdown cancels the sweep and waits for any
    pass already running in its worker thread before the stores are closed.
    """
    logger.info("DoorPro auth API starting up (token backend=%s)", _settings.token_backend)
    app.state.auth_service = build_auth_service(_settings)
    app.state.sweep_task = asyncio.create_task(
        run_sweeper(app.state.auth_service.revocation, _settings.sweep_interval_seconds)
    )
    logger.info("Token sweep scheduled every %ds", _settings.sweep_interval_seconds)

    yield

    app.state.sweep_task.cancel()
    with suppress(asyncio.CancelledError):
        await app.state.sweep_task
    app.state.auth_service.close()
    logger.info("DoorPro auth API shutdown complete")

# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="DoorPro Auth API",
    description="Credential verification and session-token lifecycle for DoorPro.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Starlette wraps each add_middleware() call around the previous ones, so they
# are added innermost first: SlowAPI, then CORS, then TrustedHost.
# ---------------------------------------------------------------------------

app.state.limiter = limiter  # SlowAPIMiddleware reads it from app.state
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Access log line per request. Outermost, so rejected hosts are logged too."""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    client = request.client.host if request.client else "unknown"
    logger.info("%s %s %d %.1fms %s", request.method, request.url.path, response.status_code, elapsed_ms, client)
    return response

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])

# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error leaves through _error_response(), so clients parse one envelope:
# {"error": {"code", "message", "detail"?}}.
# ---------------------------------------------------------------------------

def _error_response(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    envelope = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(exclude_none=True),
        headers=headers,
    )

@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render auth failures with their public message only.

    str(exc) carries the precise reason (revoked, expired, unknown user...) and
    goes to the log, never to the client.
    """
    if isinstance(exc, StoreUnavailableError):
        logger.error("Store unavailable on %s %s: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return _error_response(exc.status_code, exc.code, exc.public_message, headers={"Cache-Control": "no-store"})

@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "?")
    return _error_response(
        429,
        "rate_limited",
        "Too many attempts. Try again later.",
        detail=str(exc.detail),
        headers={"Retry-After": "60"},
    )

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 naming the offending fields. Input values are left out: a rejected body may hold a password."""
    fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
    return _error_response(422, "validation_error", "Request validation failed.", detail=", ".join(fields))

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    # Dependencies raise with a ready {"code", "message"} dict as detail.
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)

@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort. The traceback goes to the log, the client gets a generic 500."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")

# ---------------------------------------------------------------------------
# Health endpoint
#
# Outside the auth router and never rate limited: load balancers poll it.
# ---------------------------------------------------------------------------

@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and token store reachability."""
    components = {"app": "ok"}
    try:
        request.app.state.auth_service.token_count()
        components["token_store"] = "ok"
    except StoreUnavailableError:
        components["token_store"] = "error"
    status = "healthy" if components["token_store"] == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
