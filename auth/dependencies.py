"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Tokens arrive as "Authorization: Bearer <jwt>". Every protected request goes
through AuthService.resolve_session(), which re-reads the live record, so an
admin lock, a password change or an expired password takes effect on the very
next call instead of waiting for the token to expire.

get_current_user() raises AuthError subclasses; api/main.py maps them to the
error envelope (401 / 403 PASSWORD_EXPIRED / 403 ACCOUNT_LOCKED).
require_admin() wraps get_current_user() and adds a 403 for non-admins.

Layer rule: no imports from api/. This module may import from fastapi
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.errors import AuthenticationError, ForbiddenError
from auth.models import ROLE_ADMIN, User
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


async def get_current_user(request: Request, service: AuthService = Depends(get_auth_service)) -> User:
    """Require a valid, fresh session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise AuthenticationError("Missing token.", error_code="unauthorized")
    return await service.resolve_session(token, request.url.path)


async def require_admin(user: User = Depends(get_current_user)) -> User:
    """Require admin role. 401 if unauthenticated, 403 if not admin."""
    if user.role != ROLE_ADMIN:
        raise ForbiddenError("Admin role required.")
    return user
