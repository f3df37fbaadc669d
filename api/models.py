"""
API request and response models for LoginGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Password fields carry only a generous max_length: the policy engine, not
Pydantic, decides what a valid password is, so clients get the itemized
violation list (400) instead of a schema error (422).
"""

from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from auth.models import User

_PASSWORD_FIELD_MAX = 1024


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=False)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=_PASSWORD_FIELD_MAX)


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=_PASSWORD_FIELD_MAX)


class ProfileUpdate(BaseModel):
    """Body for PUT /auth/profile. Omitted fields are left unchanged."""

    full_name: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: Optional[str] = Field(default=None, max_length=50)


class EmailSettingsUpdate(BaseModel):
    receive_login_alerts: bool


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(min_length=1, max_length=_PASSWORD_FIELD_MAX)
    new_password: str = Field(min_length=1, max_length=_PASSWORD_FIELD_MAX)


class AdminUserCreate(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=_PASSWORD_FIELD_MAX)
    role: str = "user"


class AdminUserUpdate(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    role: str = "user"


class LockRequest(BaseModel):
    lock: bool


class ResetPasswordRequest(BaseModel):
    new_password: str = Field(min_length=1, max_length=_PASSWORD_FIELD_MAX)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str


class ChangePasswordResponse(BaseModel):
    """next_expiry is serialized as nextExpiry for existing clients."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    message: str
    next_expiry: str = Field(serialization_alias="nextExpiry")


class ProfileResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str
    full_name: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    receive_login_alerts: bool
    password_changed_at: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "ProfileResponse":
        return cls(
            id=user.id,
            username=user.username,
            role=user.role,
            full_name=user.full_name,
            email=user.email,
            phone=user.phone,
            receive_login_alerts=user.receive_login_alerts,
            password_changed_at=_iso(user.password_changed_at),
        )


class PasswordPolicyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    policy: dict
    description: str


class AdminUserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str
    is_locked: bool
    failed_login_attempts: int
    lockout_until: Optional[str]
    created_at: str
    password_changed_at: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "AdminUserResponse":
        return cls(
            id=user.id,
            username=user.username,
            role=user.role,
            is_locked=user.is_locked,
            failed_login_attempts=user.failed_login_attempts,
            lockout_until=_iso(user.lockout_until),
            created_at=user.created_at or "",
            password_changed_at=_iso(user.password_changed_at),
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    detail carries structured context where the client needs it:
    violations for 400s, remaining_seconds for temporary locks,
    redirect_to for PASSWORD_EXPIRED.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Union[dict, str]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
