"""
auth/errors.py -- Typed failures raised by the auth service and store.

Each class carries an HTTP status_code and a stable machine-readable
error_code. api/main.py turns any AuthError into the standard
{"error": {"code", "message", "detail"}} envelope, so the service layer never
imports FastAPI.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for errors mapped to HTTP responses."""

    status_code: int = 400
    error_code: str = "bad_request"

    def __init__(self, message: str, *, detail: dict | None = None, error_code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        if error_code is not None:
            self.error_code = error_code


class ValidationError(AuthError):
    """Malformed input or a password that breaks the policy (400)."""

    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str, violations: list[str] | None = None, *, error_code: str | None = None) -> None:
        self.violations = list(violations or [])
        detail = {"violations": self.violations} if self.violations else None
        super().__init__(message, detail=detail, error_code=error_code)


class AuthenticationError(AuthError):
    """Bad credentials or a missing/invalid token (401).

    The login path always uses the same generic message, whichever of
    username or password was wrong.
    """

    status_code = 401
    error_code = "bad_credentials"


class TemporaryLockError(AuthError):
    """Login refused because lockout_until is in the future (403)."""

    status_code = 403
    error_code = "ACCOUNT_TEMP_LOCKED"

    def __init__(self, remaining_seconds: int) -> None:
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"Account temporarily locked. Try again in {remaining_seconds}s.",
            detail={"remaining_seconds": remaining_seconds},
        )


class PermanentLockError(AuthError):
    """Login refused because an administrator locked the account (403)."""

    status_code = 403
    error_code = "ACCOUNT_LOCKED"

    def __init__(self) -> None:
        super().__init__("Account has been locked by an administrator.")


class PasswordExpiredError(AuthError):
    """Authenticated request refused until the password is changed (403)."""

    status_code = 403
    error_code = "PASSWORD_EXPIRED"

    def __init__(self, redirect_to: str = "/profile") -> None:
        self.redirect_to = redirect_to
        super().__init__(
            "Your password has expired. Change it to continue.",
            detail={"redirect_to": redirect_to},
        )


class ForbiddenError(AuthError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(AuthError):
    status_code = 404
    error_code = "not_found"


class ConflictError(AuthError):
    status_code = 409
    error_code = "conflict"


class StoreError(AuthError):
    """The credential store failed. Clients only ever see a generic message."""

    status_code = 500
    error_code = "internal_error"
