"""
api/routes/v1/auth.py -- Self-service authentication endpoints.

Routes (mounted under /api):
  POST /auth/register         -- create an account; 201, never returns a token
  POST /auth/login            -- password login; returns {token}
  POST /auth/logout           -- stateless acknowledgement (requires auth)
  GET  /auth/profile          -- current profile (requires auth)
  PUT  /auth/profile          -- update full_name / email / phone (requires auth)
  PUT  /auth/email-settings   -- toggle login alerts (requires auth)
  PUT  /auth/change-password  -- change password; returns {message, nextExpiry}
  GET  /auth/password-policy  -- public policy constants

Security:
  [H2] POST /auth/login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] Unknown usernames and wrong passwords return the same 401 body, and
       AuthService burns a bcrypt verify on unknown usernames.
  [M5] Cache-Control: no-store on every login response, success or failure.
  Expiry: get_current_user blocks every route here with 403 PASSWORD_EXPIRED
       once the password is older than PASSWORD_MAX_AGE_DAYS, except
       change-password and logout.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.errors import auth_error_response
from api.limiter import limiter
from api.models import (
    ChangePasswordRequest,
    ChangePasswordResponse,
    EmailSettingsUpdate,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordPolicyResponse,
    ProfileResponse,
    ProfileUpdate,
    RegisterRequest,
)
from auth.dependencies import get_auth_service, get_current_user
from auth.errors import AuthError
from auth.models import User
from auth.service import AuthService
from core.config import get_settings

# Auth policy:
# - POST /auth/register:        public
# - POST /auth/login:           public, rate limited
# - GET  /auth/password-policy: public -- the registration form renders the rules
# - everything else:            requires auth (get_current_user)
router = APIRouter()

_settings = get_settings()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=MessageResponse, status_code=201)
async def register(body: RegisterRequest, service: AuthService = Depends(get_auth_service)) -> MessageResponse:
    """Create an account with the "user" role. The caller must log in afterwards."""
    await service.register(body.username, body.password)
    return MessageResponse(message="Registration successful. Please log in.")


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(_settings.login_rate_limit)  # [H2]
async def login(
    request: Request,
    body: LoginRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Authenticate with username and password and return a session token.

    Lockout errors (403) and bad credentials (401) are rendered here rather
    than by the global handler so they also carry Cache-Control: no-store.
    """
    ip = request.client.host if request.client else "unknown"
    browser = request.headers.get("user-agent", "unknown")
    try:
        result = await service.login(body.username, body.password, ip=ip, browser=browser)
    except AuthError as exc:
        resp = auth_error_response(exc)
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    resp = JSONResponse(status_code=200, content=LoginResponse(token=result.token).model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/auth/password-policy", response_model=PasswordPolicyResponse)
async def password_policy(service: AuthService = Depends(get_auth_service)) -> PasswordPolicyResponse:
    policy = service.policy
    description = (
        f"Passwords must be {policy.min_length}-{policy.max_length} characters long and include upper- and "
        f"lowercase letters, a digit and a special character. They expire every {policy.max_age_days} days "
        f"and may not repeat any of the last {policy.history_size}."
    )
    return PasswordPolicyResponse(policy=policy.describe(), description=description)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(current_user: User = Depends(get_current_user)) -> MessageResponse:
    """Tokens are stateless; the client discards its copy."""
    return MessageResponse(message="Logged out.")


@router.get("/auth/profile", response_model=ProfileResponse)
async def get_profile(
    current_user: User = Depends(get_current_user),
) -> ProfileResponse:
    return ProfileResponse.from_user(current_user)


@router.put("/auth/profile", response_model=ProfileResponse)
async def update_profile(
    body: ProfileUpdate,
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> ProfileResponse:
    fields = body.model_dump(exclude_unset=True)
    updated = await service.update_profile(current_user.id, **fields)
    return ProfileResponse.from_user(updated)


@router.put("/auth/email-settings", response_model=MessageResponse)
async def update_email_settings(
    body: EmailSettingsUpdate,
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await service.set_login_alerts(current_user.id, body.receive_login_alerts)
    return MessageResponse(message="Email settings updated.")


@router.put("/auth/change-password", response_model=ChangePasswordResponse)
async def change_password(
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> ChangePasswordResponse:
    """Change the caller's password.

    The token used for this call becomes stale afterwards (its
    pwd_changed_at snapshot no longer matches), so the client logs in again.
    """
    next_expiry = await service.change_password(current_user.id, body.old_password, body.new_password)
    return ChangePasswordResponse(message="Password changed successfully.", next_expiry=next_expiry.isoformat())
