"""
Authentication for the Generation Catalyst client portal.

This package provides:
- TOTP two-factor authentication and backup codes (mfa)
- Access, refresh and 2FA challenge JWTs (tokens)
- The login / 2FA / refresh / reset / verification flows (service)
"""
from .mfa import (
    generate_totp_secret,
    get_totp_provisioning_uri,
    verify_totp,
    setup_mfa,
    generate_backup_codes,
    verify_backup_code,
    consume_backup_code,
)
from .tokens import TokenIssuer, TokenClaims, TokenError, TokenFailure, get_token_issuer
from .service import AuthService, LoginResult, SessionResult, sanitize_user

__all__ = [
    "generate_totp_secret",
    "get_totp_provisioning_uri",
    "verify_totp",
    "setup_mfa",
    "generate_backup_codes",
    "verify_backup_code",
    "consume_backup_code",
    "TokenIssuer",
    "TokenClaims",
    "TokenError",
    "TokenFailure",
    "get_token_issuer",
    "AuthService",
    "LoginResult",
    "SessionResult",
    "sanitize_user",
]
