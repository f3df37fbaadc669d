"""
api/routes/v1/admin.py -- Administrator account management (thin wrapper).

Routes (mounted under /api, all require_admin):
  GET    /admin/users                      -- list accounts
  POST   /admin/users                      -- create account (password policy applies)
  PUT    /admin/users/{id}                 -- rename / change role
  PUT    /admin/users/{id}/lock            -- set or clear the permanent lock
  PUT    /admin/users/{id}/reset-password  -- new password, counters cleared
  DELETE /admin/users/{id}                 -- delete account

Every action is written to the "loginguard.audit" logger by AuthService.
Self-lock and self-delete are refused so an admin cannot lock themselves out.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import (
    AdminUserCreate,
    AdminUserResponse,
    AdminUserUpdate,
    LockRequest,
    MessageResponse,
    ResetPasswordRequest,
)
from auth.dependencies import get_auth_service, require_admin
from auth.models import User
from auth.service import AuthService

router = APIRouter()


@router.get("/admin/users", response_model=list[AdminUserResponse])
async def list_users(
    admin: User = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> list[AdminUserResponse]:
    return [AdminUserResponse.from_user(u) for u in await service.list_users()]


@router.post("/admin/users", response_model=AdminUserResponse, status_code=201)
async def create_user(
    body: AdminUserCreate,
    admin: User = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> AdminUserResponse:
    created = await service.create_user(admin, body.username, body.password, body.role)
    return AdminUserResponse.from_user(created)


@router.put("/admin/users/{user_id}", response_model=AdminUserResponse)
async def update_user(
    user_id: int,
    body: AdminUserUpdate,
    admin: User = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> AdminUserResponse:
    updated = await service.update_user(admin, user_id, body.username, body.role)
    return AdminUserResponse.from_user(updated)


@router.put("/admin/users/{user_id}/lock", response_model=MessageResponse)
async def lock_user(
    user_id: int,
    body: LockRequest,
    admin: User = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await service.set_locked(admin, user_id, body.lock)
    return MessageResponse(message="User locked." if body.lock else "User unlocked.")


@router.put("/admin/users/{user_id}/reset-password", response_model=MessageResponse)
async def reset_password(
    user_id: int,
    body: ResetPasswordRequest,
    admin: User = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await service.reset_password(admin, user_id, body.new_password)
    return MessageResponse(message="Password reset successfully.")


@router.delete("/admin/users/{user_id}", response_model=MessageResponse)
async def delete_user(
    user_id: int,
    admin: User = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    await service.delete_user(admin, user_id)
    return MessageResponse(message="User deleted.")
