"""
Two-Factor Enrollment Endpoints.

For a logged-in user: check status, start setup (QR code), enable with a
first TOTP code, disable, and regenerate backup codes.
"""
import logging

from fastapi import APIRouter, Depends

from ..models import (
    TwoFactorStatusResponse,
    TwoFactorSetupResponse,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    BackupCodesResponse,
    MessageResponse,
    ErrorResponse,
)
from ..deps import get_auth_service, get_current_user, check_two_factor_rate_limit
from ...auth.service import AuthService
from ...auth.tokens import TokenClaims

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/2fa", tags=["Two-Factor Authentication"])


@router.get("/status", response_model=TwoFactorStatusResponse)
def two_factor_status(
    user: TokenClaims = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    return service.two_factor_status(user.user_id)


@router.post(
    "/setup",
    response_model=TwoFactorSetupResponse,
    responses={400: {"model": ErrorResponse, "description": "2FA already enabled"}},
)
def setup_two_factor(
    user: TokenClaims = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    """
    Start 2FA enrollment.

    Returns the secret and a QR code for the authenticator app. 2FA is not
    active until /2fa/enable confirms a code.
    """
    setup = service.begin_two_factor_setup(user.user_id)
    return {
        "secret": setup.secret,
        "qr_code": setup.qr_code,
        "provisioning_uri": setup.provisioning_uri,
    }


@router.post(
    "/enable",
    response_model=BackupCodesResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Setup not started or already enabled"},
        401: {"model": ErrorResponse, "description": "Invalid 2FA token"},
    },
    dependencies=[Depends(check_two_factor_rate_limit)],
)
def enable_two_factor(
    body: TwoFactorCodeRequest,
    user: TokenClaims = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    """Confirm enrollment. Backup codes are returned once; store them securely."""
    codes = service.enable_two_factor(user.user_id, body.token)
    return {"message": "2FA enabled successfully", "backup_codes": codes}


@router.post(
    "/disable",
    response_model=MessageResponse,
    responses={
        400: {"model": ErrorResponse, "description": "2FA not enabled"},
        401: {"model": ErrorResponse, "description": "Invalid password or 2FA token"},
    },
    dependencies=[Depends(check_two_factor_rate_limit)],
)
def disable_two_factor(
    body: TwoFactorDisableRequest,
    user: TokenClaims = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    service.disable_two_factor(user.user_id, body.password, body.token)
    return {"message": "2FA disabled successfully"}


@router.post(
    "/backup-codes",
    response_model=BackupCodesResponse,
    responses={
        400: {"model": ErrorResponse, "description": "2FA not enabled"},
        401: {"model": ErrorResponse, "description": "Invalid 2FA token"},
    },
    dependencies=[Depends(check_two_factor_rate_limit)],
)
def regenerate_backup_codes(
    body: TwoFactorCodeRequest,
    user: TokenClaims = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    """Replace all backup codes. Old codes stop working."""
    codes = service.regenerate_backup_codes(user.user_id, body.token)
    return {"message": "Backup codes regenerated", "backup_codes": codes}
