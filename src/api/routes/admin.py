"""
Admin User Management Endpoints.

All endpoints require an access token with the admin role.
"""
import logging

from fastapi import APIRouter, Depends, status

from ..models import (
    AdminCreateClientRequest,
    AdminSetPasswordRequest,
    AdminSetRoleRequest,
    AdminRoleResponse,
    AdminUserResponse,
    UserListResponse,
    ErrorResponse,
)
from ..deps import get_auth_service, require_admin
from ...auth.service import AuthService
from ...auth.tokens import TokenClaims

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/admin/users",
    tags=["Admin"],
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid token"},
        403: {"model": ErrorResponse, "description": "Admin access required"},
    },
)


@router.get("", response_model=UserListResponse)
def list_users(
    admin: TokenClaims = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
):
    return {"users": service.list_users()}


@router.post(
    "",
    response_model=AdminUserResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid input"},
        409: {"model": ErrorResponse, "description": "Email already exists"},
    },
)
def create_client(
    body: AdminCreateClientRequest,
    admin: TokenClaims = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
):
    """
    Create a client record without a password (invoice-only client).

    The email is treated as verified.
    """
    user = service.create_client(
        body.email,
        body.first_name,
        body.last_name,
        phone_number=body.phone_number,
    )
    return {
        "message": f"Client {user['first_name']} {user['last_name']} created successfully",
        "user": user,
    }


@router.delete(
    "/{user_id}",
    response_model=AdminUserResponse,
    responses={404: {"model": ErrorResponse, "description": "User not found"}},
)
def deactivate_user(
    user_id: int,
    admin: TokenClaims = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
):
    """Soft-delete: the account is deactivated, never removed."""
    user = service.deactivate_user(admin.user_id, user_id)
    return {"message": f"User {user['username']} has been deactivated", "user": user}


@router.put(
    "/{user_id}/activate",
    response_model=AdminUserResponse,
    responses={404: {"model": ErrorResponse, "description": "User not found"}},
)
def activate_user(
    user_id: int,
    admin: TokenClaims = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
):
    user = service.activate_user(user_id)
    return {"message": f"User {user['username']} has been activated", "user": user}


@router.put(
    "/{user_id}/role",
    response_model=AdminRoleResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid role or last admin"},
        403: {"model": ErrorResponse, "description": "Cannot change own role"},
        404: {"model": ErrorResponse, "description": "User not found"},
    },
)
def set_user_role(
    user_id: int,
    body: AdminSetRoleRequest,
    admin: TokenClaims = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
):
    """
    Promote a client to admin or demote an admin to client.

    Takes effect for the target's session at its next token refresh.
    """
    user, changed = service.set_role(admin.user_id, user_id, body.role)
    if changed:
        message = f"User {user['username']} role updated to {user['role']}"
    else:
        message = f"User {user['username']} already has role {user['role']}"
    return {"message": message, "user_id": user["id"], "role": user["role"]}


@router.put(
    "/{user_id}/reset-password",
    response_model=AdminUserResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing or weak password"},
        404: {"model": ErrorResponse, "description": "User not found"},
    },
)
def reset_user_password(
    user_id: int,
    body: AdminSetPasswordRequest,
    admin: TokenClaims = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
):
    user = service.admin_set_password(user_id, body.new_password)
    logger.info(f"Admin {admin.user_id} reset password for user {user_id}")
    return {"message": f"Password reset successfully for user {user['username']}", "user": user}
