"""
api/main.py -- FastAPI application entry point for LibraryAuth.

Exposes the authorization core (roles, permission bitmasks, lockout, password
reset) over HTTP for the library app's web front end and API clients.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- signed-cookie session identity (request.session)

Lifespan builds the store and the services on startup and disposes of the
engine on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.authorization import AuthorizationService
from auth.dependencies import require_admin
from auth.errors import ConstraintViolation, InvalidOrExpiredToken, NotFound, TransientStoreError
from auth.guard import AccountSecurityGuard
from auth.mailer import SmtpMailer
from auth.models import SessionUser
from auth.password_reset import PasswordResetFlow
from auth.store import UserStore
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("libraryauth.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(app: FastAPI, store: UserStore) -> None:
    """Attach the store and every service built on it to app.state.

    Shared by the real lifespan and the test lifespan so both wire the same
    graph; only the store differs.
    """
    app.state.user_store = store
    app.state.guard = AccountSecurityGuard(
        store,
        max_attempts=_settings.max_login_attempts,
        lockout=timedelta(minutes=_settings.lockout_minutes),
    )
    app.state.authz = AuthorizationService(store)
    app.state.reset_flow = PasswordResetFlow(store, ttl=timedelta(seconds=_settings.reset_token_ttl_seconds))
    app.state.mailer = SmtpMailer(_settings)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the store and services on startup, dispose of the engine on shutdown."""
    logger.info("LibraryAuth API starting up")
    store = UserStore(_settings.database_url)
    wire_services(app, store)
    if not store.has_users():
        logger.warning("No users exist yet. Create the first admin with: python main.py create-admin USERNAME EMAIL")
    logger.info(
        "Auth initialized (max_login_attempts=%d, lockout_minutes=%d)",
        _settings.max_login_attempts,
        _settings.lockout_minutes,
    )

    yield

    app.state.user_store.close()
    logger.info("LibraryAuth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="LibraryAuth API",
    description="Roles, permission bitmasks, account lockout and password reset for the library app.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by admin-only routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the existing stack, so the LAST call is outermost.
# Registered innermost-first: Session -> SlowAPI -> CORS -> TrustedHost.
# ---------------------------------------------------------------------------

app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    session_cookie="library_session",
    max_age=_settings.token_expire_seconds,
    same_site="lax",
    https_only=_settings.secure_cookies,
)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Admin-only API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: SessionUser = Depends(require_admin)):
    """Swagger UI -- admin only."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="LibraryAuth API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: SessionUser = Depends(require_admin)):
    """ReDoc UI -- admin only."""
    return get_redoc_html(openapi_url="/openapi.json", title="LibraryAuth API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every handler returns the same ErrorResponse envelope. Messages are fixed
# strings: SQL, driver messages and stack traces never reach the client.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a Retry-After header.

    Plain def: SlowAPIMiddleware calls this handler directly for sync routes
    and does not await it.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured error for HTTPException.

    Route handlers raise HTTPException with detail={"code": ..., "message": ...}.
    A dict detail is used as the error field directly; str(dict) would be a
    Python repr, not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(InvalidOrExpiredToken)
async def invalid_token_handler(request: Request, exc: InvalidOrExpiredToken) -> JSONResponse:
    return _error(400, "invalid_token", "Reset token is invalid or has expired.")


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return _error(404, "not_found", str(exc) or "Not found.")


@app.exception_handler(ConstraintViolation)
async def conflict_handler(request: Request, exc: ConstraintViolation) -> JSONResponse:
    return _error(409, "conflict", "A record with that value already exists.")


@app.exception_handler(TransientStoreError)
async def store_unavailable_handler(request: Request, exc: TransientStoreError) -> JSONResponse:
    logger.warning("Store unavailable on %s %s", request.method, request.url.path)
    return _error(503, "service_unavailable", "The service is temporarily unavailable. Try again shortly.")


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined here rather than in a router so it is always reachable. Not rate
# limited: load balancer probes must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    store: UserStore = request.app.state.user_store
    database = "ok" if store.ping() else "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
