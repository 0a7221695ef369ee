"""
Pydantic Models for the client portal API.

Request and response models for all API endpoints. JSON field names are
camelCase on the wire (accessToken, requires2FA, userId); Python attributes
stay snake_case.
"""
from datetime import datetime
from typing import Optional, List, Dict
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase aliases, accepting either form on input."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================
# User Models
# ============================================

class UserOut(CamelModel):
    """Sanitized user. Never carries hashes, secrets or tokens."""
    id: int
    username: str
    email: str
    role: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: bool
    email_verified: bool
    two_factor_enabled: bool = False
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UserEnvelope(CamelModel):
    user: UserOut


# ============================================
# Authentication Models
# ============================================

class LoginRequest(CamelModel):
    """
    Login request.

    Supply exactly one of email or username together with the password.
    """
    email: Optional[str] = Field(None, description="Registered email address")
    username: Optional[str] = Field(None, description="Username")
    password: Optional[str] = Field(None, description="Account password")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "email": "client@example.com",
                "password": "Passw0rd!123"
            }
        }
    )


class LoginResponse(CamelModel):
    """
    Login outcome.

    Either {user, accessToken, requires2FA: false} or
    {requires2FA: true, tempToken, userId}.
    """
    message: str
    requires_2fa: bool = Field(False, alias="requires2FA")
    user: Optional[UserOut] = None
    access_token: Optional[str] = None
    temp_token: Optional[str] = None
    user_id: Optional[int] = None


class VerifyTwoFactorRequest(CamelModel):
    """Second login step. token is a TOTP code or, with isBackupCode, a backup code."""
    user_id: Optional[int] = None
    token: Optional[str] = None
    is_backup_code: bool = False
    temp_token: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "userId": 42,
                "token": "123456",
                "isBackupCode": False,
                "tempToken": "eyJhbGciOi..."
            }
        }
    )


class SessionResponse(CamelModel):
    message: str
    user: UserOut
    access_token: str


class RefreshResponse(CamelModel):
    message: str
    access_token: str


class MessageResponse(BaseModel):
    message: str


class RegisterRequest(CamelModel):
    """
    Self-service registration.

    Password policy: at least 8 characters with upper and lower case
    letters, a digit and a special character.
    """
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None


class RegisterResponse(CamelModel):
    message: str
    user: UserOut
    email_verification_required: bool = True


class EmailRequest(CamelModel):
    email: Optional[str] = None


class ResetPasswordRequest(CamelModel):
    token: Optional[str] = None
    new_password: Optional[str] = None
    confirm_password: Optional[str] = None


class VerifyEmailResponse(LoginResponse):
    already_verified: Optional[bool] = None


class ChangePasswordRequest(CamelModel):
    current_password: Optional[str] = None
    new_password: Optional[str] = None
    confirm_password: Optional[str] = None


# ============================================
# Two-Factor Management Models
# ============================================

class TwoFactorStatusResponse(CamelModel):
    enabled: bool
    backup_codes_remaining: int


class TwoFactorSetupResponse(CamelModel):
    """Pending 2FA enrollment. Confirm with /2fa/enable."""
    secret: str
    qr_code: str = Field(..., description="PNG data URI")
    provisioning_uri: str


class TwoFactorCodeRequest(CamelModel):
    token: Optional[str] = Field(None, description="6-digit TOTP code")


class TwoFactorDisableRequest(CamelModel):
    password: Optional[str] = None
    token: Optional[str] = Field(None, description="6-digit TOTP code")


class BackupCodesResponse(CamelModel):
    """
    Backup codes, shown once.

    Each backup code can only be used once.
    """
    message: str
    backup_codes: List[str] = Field(..., description="One-time backup codes (format: XXXX-XXXX)")


# ============================================
# Admin Models
# ============================================

class AdminCreateClientRequest(CamelModel):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None


class AdminSetPasswordRequest(CamelModel):
    new_password: Optional[str] = None


class AdminSetRoleRequest(CamelModel):
    role: Optional[str] = Field(None, description="admin or client")


class UserListResponse(CamelModel):
    users: List[UserOut]


class AdminUserResponse(CamelModel):
    message: str
    user: UserOut


class AdminRoleResponse(CamelModel):
    message: str
    user_id: int
    role: str


# ============================================
# Health Models
# ============================================

class HealthStatus(BaseModel):
    """Health check response."""
    status: str = Field(..., description="healthy or unhealthy")
    version: str
    services: Dict[str, str]
    timestamp: datetime


# ============================================
# Error Models
# ============================================

class ErrorResponse(BaseModel):
    """
    Standard error response.

    All API errors return this format with an error message,
    optional detail, and error code for programmatic handling.
    """
    error: str = Field(..., description="Error type/summary")
    detail: Optional[str] = Field(None, description="Detailed error message")
    code: Optional[str] = Field(None, description="Error code for programmatic handling")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Unauthorized",
                "detail": "Invalid credentials",
                "code": "INVALID_CREDENTIALS"
            }
        }
    )
