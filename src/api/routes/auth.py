"""
Authentication Endpoints.

Login (with optional 2FA step), token refresh, logout, registration, email
verification and password reset. The refresh token is only ever sent in the
refreshToken cookie; access tokens travel in the response body.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Response, status

from ..cookies import REFRESH_COOKIE_NAME, clear_refresh_cookie, set_refresh_cookie
from ..models import (
    LoginRequest,
    LoginResponse,
    VerifyTwoFactorRequest,
    SessionResponse,
    RefreshResponse,
    MessageResponse,
    RegisterRequest,
    RegisterResponse,
    EmailRequest,
    ResetPasswordRequest,
    VerifyEmailResponse,
    ChangePasswordRequest,
    UserEnvelope,
    ErrorResponse,
)
from ..deps import (
    get_auth_service,
    get_current_user,
    check_auth_rate_limit,
    check_two_factor_rate_limit,
    check_password_reset_rate_limit,
    check_email_verification_rate_limit,
)
from ...auth.service import AuthService, LoginResult
from ...auth.tokens import TokenClaims

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["Authentication"])


def _login_body(result: LoginResult, response: Response, service: AuthService, message: str) -> dict:
    """Shape a LoginResult and set the refresh cookie on full success only."""
    if result.requires_2fa:
        return {
            "message": "2FA required",
            "requires_2fa": True,
            "temp_token": result.temp_token,
            "user_id": result.user_id,
        }

    set_refresh_cookie(response, result.session.refresh_token, service.tokens.refresh_max_age)
    return {
        "message": message,
        "requires_2fa": False,
        "user": result.session.user,
        "access_token": result.session.access_token,
    }


@router.post(
    "/login",
    response_model=LoginResponse,
    response_model_exclude_none=True,
    responses={
        400: {"model": ErrorResponse, "description": "Missing credentials"},
        401: {"model": ErrorResponse, "description": "Invalid credentials"},
        403: {"model": ErrorResponse, "description": "Account deactivated or email unverified"},
        429: {"model": ErrorResponse, "description": "Too many attempts"},
    },
    dependencies=[Depends(check_auth_rate_limit)],
)
def login(
    body: LoginRequest,
    response: Response,
    service: AuthService = Depends(get_auth_service),
):
    """
    Authenticate with email or username and password.

    If 2FA is enabled, no session is created yet: the response carries
    requires2FA, a short-lived tempToken and the userId for /auth/verify-2fa.
    """
    result = service.login(body.password, email=body.email, username=body.username)
    return _login_body(result, response, service, "Login successful")


@router.post(
    "/verify-2fa",
    response_model=SessionResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing fields or 2FA not enabled"},
        401: {"model": ErrorResponse, "description": "Invalid 2FA token"},
        403: {"model": ErrorResponse, "description": "Account deactivated"},
        404: {"model": ErrorResponse, "description": "User not found"},
        429: {"model": ErrorResponse, "description": "Too many attempts"},
    },
    dependencies=[Depends(check_two_factor_rate_limit)],
)
def verify_two_factor(
    body: VerifyTwoFactorRequest,
    response: Response,
    service: AuthService = Depends(get_auth_service),
):
    """Complete a 2FA login with a TOTP code or a single-use backup code."""
    result = service.verify_two_factor(
        body.user_id,
        body.token,
        is_backup_code=body.is_backup_code,
        temp_token=body.temp_token,
    )
    set_refresh_cookie(response, result.session.refresh_token, service.tokens.refresh_max_age)
    return {
        "message": "2FA verification successful",
        "user": result.session.user,
        "access_token": result.session.access_token,
    }


@router.post(
    "/refresh",
    response_model=RefreshResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid or expired refresh token"},
        403: {"model": ErrorResponse, "description": "Account deactivated"},
        404: {"model": ErrorResponse, "description": "User not found"},
    },
)
def refresh(
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE_NAME),
    service: AuthService = Depends(get_auth_service),
):
    """
    Issue a new access token and rotate the refresh cookie.

    Any failure clears the cookie.
    """
    session = service.refresh(refresh_token)
    set_refresh_cookie(response, session.refresh_token, service.tokens.refresh_max_age)
    return {"message": "Token refreshed successfully", "access_token": session.access_token}


@router.post("/logout", response_model=MessageResponse)
def logout(response: Response):
    """Clear the refresh cookie. Always succeeds."""
    clear_refresh_cookie(response)
    return {"message": "Logged out successfully"}


@router.get(
    "/me",
    response_model=UserEnvelope,
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid token"},
        403: {"model": ErrorResponse, "description": "Account deactivated"},
        404: {"model": ErrorResponse, "description": "User not found"},
    },
)
def me(
    user: TokenClaims = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    """Current user profile."""
    return {"user": service.get_profile(user.user_id)}



@router.put(
    "/password",
    response_model=MessageResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing fields, mismatch, weak or unchanged password"},
        401: {"model": ErrorResponse, "description": "Missing token or wrong current password"},
        403: {"model": ErrorResponse, "description": "Account deactivated"},
        429: {"model": ErrorResponse, "description": "Too many attempts"},
    },
    dependencies=[Depends(check_auth_rate_limit)],
)
def change_password(
    body: ChangePasswordRequest,
    user: TokenClaims = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
):
    """Change the password of the logged-in user. Requires the current password."""
    service.change_password(
        user.user_id,
        body.current_password,
        body.new_password,
        body.confirm_password,
    )
    return {"message": "Password changed successfully. Please login again with your new password."}


@router.post(
    "/register",
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid input"},
        409: {"model": ErrorResponse, "description": "Username or email already exists"},
        429: {"model": ErrorResponse, "description": "Too many attempts"},
    },
    dependencies=[Depends(check_auth_rate_limit)],
)
def register(
    body: RegisterRequest,
    service: AuthService = Depends(get_auth_service),
):
    """
    Register a new client account.

    The account must verify its email before it can log in.
    """
    user = service.register(
        body.username,
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        phone_number=body.phone_number,
    )
    return {
        "message": "Registration successful! Please check your email to verify your account.",
        "user": user,
        "email_verification_required": True,
    }


@router.post(
    "/forgot-password",
    response_model=MessageResponse,
    responses={429: {"model": ErrorResponse, "description": "Too many requests"}},
    dependencies=[Depends(check_password_reset_rate_limit)],
)
def forgot_password(
    body: EmailRequest,
    service: AuthService = Depends(get_auth_service),
):
    """Request a reset link. The response does not reveal whether the email exists."""
    return {"message": service.request_password_reset(body.email)}


@router.post(
    "/reset-password",
    response_model=MessageResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid, expired or mismatched input"},
        429: {"model": ErrorResponse, "description": "Too many requests"},
    },
    dependencies=[Depends(check_password_reset_rate_limit)],
)
def reset_password(
    body: ResetPasswordRequest,
    service: AuthService = Depends(get_auth_service),
):
    service.reset_password(body.token, body.new_password, body.confirm_password)
    return {"message": "Password reset successfully! You can now log in with your new password."}


@router.get(
    "/verify-email",
    response_model=VerifyEmailResponse,
    response_model_exclude_none=True,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid or expired token"},
        403: {"model": ErrorResponse, "description": "Account deactivated"},
    },
)
def verify_email(
    response: Response,
    token: Optional[str] = None,
    service: AuthService = Depends(get_auth_service),
):
    """Verify an email address and sign the user in."""
    result = service.verify_email(token)
    if result.already_verified:
        return {"message": "Email already verified", "already_verified": True}

    return _login_body(result.login, response, service, "Email verified successfully!")


@router.post(
    "/resend-verification",
    response_model=MessageResponse,
    responses={429: {"model": ErrorResponse, "description": "Too many requests"}},
    dependencies=[Depends(check_email_verification_rate_limit)],
)
def resend_verification(
    body: EmailRequest,
    service: AuthService = Depends(get_auth_service),
):
    return {"message": service.resend_verification(body.email)}
