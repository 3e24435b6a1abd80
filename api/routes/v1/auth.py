"""
api/routes/v1/auth.py -- Authentication and self-service account endpoints.

Routes:
  POST /api/v1/auth/register          -- self-registration (student role)
  POST /api/v1/auth/login             -- password login; session cookie + bearer JWT
  POST /api/v1/auth/logout            -- clears the session (requires auth)
  GET  /api/v1/auth/me                -- current user and effective permissions
  POST /api/v1/auth/change-password   -- requires auth and the current password
  POST /api/v1/auth/forgot-password   -- emails a single-use reset link
  POST /api/v1/auth/reset-password    -- spends a reset token

Security:
  POST /login and /forgot-password are rate-limited per IP (LOGIN_RATE_LIMIT).
  check_credentials() provides timing equalization -- use it, never inline
  get_by_username() + verify_password().
  Wrong username and wrong password share one error code (bad_credentials).
  /forgot-password answers identically whether or not the email is known.
  Cache-Control: no-store on login responses.
"""

from __future__ import annotations

import logging
import re
import smtplib

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_LIMIT, limiter
from api.models import (
    RESET_TOKEN_PATTERN,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
)
from auth import permissions
from auth.authorization import AuthorizationService
from auth.dependencies import get_current_user
from auth.errors import InvalidOrExpiredToken, StoreError
from auth.guard import AccountSecurityGuard
from auth.mailer import Mailer
from auth.models import SessionUser, User
from auth.password_reset import PasswordResetFlow
from auth.store import UserStore
from auth.tokens import (
    check_credentials,
    create_access_token,
    hash_password,
    is_password_expired,
    session_payload,
    verify_password,
)
from core.config import get_settings

logger = logging.getLogger("libraryauth.api")

_settings = get_settings()

FORGOT_PASSWORD_MESSAGE = "If an account exists for that email, a reset link has been sent."

# Auth policy:
# - POST /auth/register:         public, disabled by SELF_REGISTRATION_ENABLED=false
# - POST /auth/login:            public, rate limited
# - POST /auth/logout:           requires auth (get_current_user)
# - GET  /auth/me:               requires auth (get_current_user)
# - POST /auth/change-password:  requires auth (get_current_user)
# - POST /auth/forgot-password:  public, rate limited
# - POST /auth/reset-password:   public; the token is the credential
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=MeResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> MeResponse:
    """Create a student account.

    Username and email uniqueness are checked up front for a friendly error;
    the unique constraints still back this up against a concurrent insert
    (ConstraintViolation -> 409).
    """
    if not _settings.self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    store: UserStore = request.app.state.user_store

    if store.username_exists(body.username):
        raise HTTPException(
            status_code=409,
            detail={"code": "username_taken", "message": "That username is already taken."},
        )
    if store.email_exists(body.email):
        raise HTTPException(
            status_code=409,
            detail={"code": "email_taken", "message": "That email is already registered."},
        )

    role = store.get_role_by_name("student")
    user_id = store.create_user(
        User(
            username=body.username,
            email=body.email,
            password_hash=hash_password(body.password),
            phone=body.phone,
            address=body.address,
            role_id=role.id if role else None,
            user_type="student",
        )
    )
    logger.info("User %s registered (id=%s)", body.username, user_id)
    return MeResponse(
        user_id=user_id,
        username=body.username,
        email=body.email,
        user_type="student",
        role_id=role.id if role else None,
        role_name=role.name if role else None,
        permissions=[p.name for p in permissions.permissions_to_names(role.permissions)] if role else [],
        phone=body.phone,
        address=body.address,
    )


@limiter.limit(LOGIN_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password.

    Order of checks:
      1. credentials (timing-equalized)
      2. lock state -- a locked account answers 423 even with the right password
      3. wrong password -> count the failure, 401
      4. expired password -> 200 with password_expired and no session
      5. success -> reset the counter, set the session, issue a JWT
    """
    store: UserStore = request.app.state.user_store
    guard: AccountSecurityGuard = request.app.state.guard

    check = check_credentials(store, body.username, body.password)
    user = check.user

    if user is not None and guard.is_locked(user.id):
        return _no_store(
            JSONResponse(
                status_code=423,
                content={
                    "error": {
                        "code": "account_locked",
                        "message": "Account is temporarily locked after too many failed logins.",
                        "detail": None,
                    }
                },
            )
        )

    if user is None or not check.password_ok:
        if user is not None:
            guard.record_failed_login(user.id)
        return _no_store(
            JSONResponse(
                status_code=401,
                content={
                    "error": {
                        "code": "bad_credentials",
                        "message": "Invalid username or password.",
                        "detail": None,
                    }
                },
            )
        )

    if is_password_expired(user.password_created_at):
        logger.info("User %s logged in with an expired password", user.id)
        return _no_store(
            JSONResponse(
                status_code=200,
                content=LoginResponse(
                    user_id=user.id,
                    username=user.username,
                    user_type=user.user_type,
                    password_expired=True,
                ).model_dump(),
            )
        )

    guard.record_successful_login(user.id)
    request.session["user"] = session_payload(user)
    token = create_access_token(user.id, user.username, user.user_type, role_id=user.role_id)
    logger.info("User %s logged in", user.id)
    return _no_store(
        JSONResponse(
            status_code=200,
            content=LoginResponse(
                user_id=user.id,
                username=user.username,
                user_type=user.user_type,
                access_token=token,
                token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
                expires_in=_settings.token_expire_seconds,
            ).model_dump(),
        )
    )


@limiter.limit(LOGIN_LIMIT)
@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(
    request: Request,
    body: ForgotPasswordRequest,
    background_tasks: BackgroundTasks,
) -> MessageResponse:
    """Email a reset link if the address belongs to an active account.

    The lookup and the mail run after the response is sent, so neither the
    body nor the response time depends on whether the address is known.
    """
    background_tasks.add_task(
        _send_reset_link,
        request.app.state.reset_flow,
        body.email,
        request.app.state.mailer,
    )
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Spend a reset token and set a new password.

    Unknown, used, expired and malformed tokens all answer 400 invalid_token.
    """
    if not re.fullmatch(RESET_TOKEN_PATTERN, body.token):
        raise InvalidOrExpiredToken()
    reset_flow: PasswordResetFlow = request.app.state.reset_flow
    reset_flow.consume(body.token, body.new_password)
    return MessageResponse(message="Password has been reset. You can now log in.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, current_user: SessionUser = Depends(get_current_user)) -> MessageResponse:
    """End the session. Bearer JWTs stay valid until they expire."""
    request.session.clear()
    logger.info("User %s logged out", current_user.id)
    return MessageResponse(message="Logged out.")


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, current_user: SessionUser = Depends(get_current_user)) -> MeResponse:
    """Return the current account and the names of its effective permissions."""
    user = _load_active(request, current_user)
    authz: AuthorizationService = request.app.state.authz
    return MeResponse(
        user_id=user.id,
        username=user.username,
        email=user.email,
        user_type=user.user_type,
        role_id=user.role_id,
        role_name=user.role_name,
        permissions=[p.name for p in authz.list_permissions(user.id)],
        phone=user.phone,
        address=user.address,
        last_login=user.last_login,
    )


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: SessionUser = Depends(get_current_user),
) -> MessageResponse:
    """Replace the password after re-checking the current one."""
    user = _load_active(request, current_user)
    if not user.password_hash or not verify_password(body.current_password, user.password_hash):
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_password", "message": "Current password is incorrect."},
        )
    if body.new_password == body.current_password:
        raise HTTPException(
            status_code=400,
            detail={"code": "password_reused", "message": "New password must differ from the current one."},
        )
    store: UserStore = request.app.state.user_store
    store.set_password(user.id, hash_password(body.new_password))
    logger.info("User %s changed their password", user.id)
    return MessageResponse(message="Password changed.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _no_store(response: JSONResponse) -> JSONResponse:
    response.headers["Cache-Control"] = "no-store"
    return response


def _load_active(request: Request, current_user: SessionUser) -> User:
    """Fresh user row for the session identity. 401 if it is gone or deactivated."""
    store: UserStore = request.app.state.user_store
    user = store.get_by_id(current_user.id)
    if user is None or not user.is_active:
        request.session.clear()
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def _send_reset_link(reset_flow: PasswordResetFlow, email: str, mailer: Mailer) -> None:
    """Background half of /forgot-password. Failures are logged, never reported."""
    try:
        reset_flow.request_reset(email, _settings.public_base_url, mailer)
    except StoreError:
        logger.exception("Password reset lookup failed")
    except (smtplib.SMTPException, OSError):
        logger.exception("Could not send password reset mail")
