"""
Authentication orchestration for the client portal.

AuthService ties together the credential store, password hashing, the TOTP
engine and the token issuer. Per login attempt:

    START -> CREDENTIALS_CHECKED -> {2FA_REQUIRED | AUTHENTICATED}
    2FA_REQUIRED -> 2FA_VERIFIED -> AUTHENTICATED

The service never touches HTTP. It returns result objects and raises
PortalError subclasses; the route layer turns those into responses and
cookies.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

from . import mfa
from .tokens import TokenError, TokenIssuer
from ..database.user_db import UserDB, hash_password, verify_password
from ..errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from ..notifications.email import EmailService
from ..utils.secrets import mask_secret
from ..validation.inputs import (
    normalize_email,
    sanitize_input,
    validate_email,
    validate_password,
    validate_username,
)

logger = logging.getLogger(__name__)

PASSWORD_RESET_TTL = timedelta(hours=1)
EMAIL_VERIFICATION_TTL = timedelta(hours=24)

ROLES = ("admin", "client")

PASSWORD_RESET_SENT_MESSAGE = "If an account with that email exists, a password reset link has been sent."
VERIFICATION_SENT_MESSAGE = "If an account with that email exists, a verification email has been sent."

# Never returned to clients
SENSITIVE_USER_FIELDS = frozenset({
    "password_hash",
    "two_factor_secret",
    "two_factor_backup_codes",
    "email_verification_token",
    "email_verification_expires",
    "password_reset_token",
    "password_reset_expires",
})


def sanitize_user(user: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a user record with hashes, secrets and tokens removed."""
    return {k: v for k, v in user.items() if k not in SENSITIVE_USER_FIELDS}


@lru_cache(maxsize=1)
def _dummy_password_hash() -> str:
    return hash_password(secrets.token_urlsafe(16))


def _is_expired(expires: Optional[datetime], now: datetime) -> bool:
    if expires is None:
        return True
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)
    return now > expires


def _display_name(user: Dict[str, Any]) -> str:
    return user.get("first_name") or user.get("username") or "there"


@dataclass
class SessionResult:
    """A fully authenticated session: tokens plus the sanitized user."""
    access_token: str
    refresh_token: str
    user: Dict[str, Any]


@dataclass
class LoginResult:
    """
    Outcome of a successful primary authentication.

    Either session is set (AUTHENTICATED) or requires_2fa is True with a
    temp_token and user_id (2FA_REQUIRED). Never both.
    """
    requires_2fa: bool
    session: Optional[SessionResult] = None
    temp_token: Optional[str] = None
    user_id: Optional[int] = None


@dataclass
class EmailVerificationResult:
    already_verified: bool = False
    login: Optional[LoginResult] = None


@dataclass
class TwoFactorSetup:
    secret: str
    provisioning_uri: str
    qr_code: str


class AuthService:
    """
    Login, 2FA, refresh, verification, reset, registration and admin actions.

    Example usage:
        service = AuthService(get_user_db(), get_token_issuer(), get_email_service())
        result = service.login("Passw0rd!123", email="client@example.com")
        if result.requires_2fa:
            result = service.verify_two_factor(result.user_id, "123456", temp_token=result.temp_token)
    """

    def __init__(self, user_db: UserDB, token_issuer: TokenIssuer, email_service: EmailService):
        self.user_db = user_db
        self.tokens = token_issuer
        self.email = email_service

    # ==========================================
    # Login and 2FA
    # ==========================================

    def login(
        self,
        password: Optional[str],
        email: Optional[str] = None,
        username: Optional[str] = None,
    ) -> LoginResult:
        """
        Check primary credentials.

        Absent user, missing hash and wrong password are indistinguishable to
        the caller. Deactivation and unverified email are only reported after
        the password has matched.

        Raises:
            ValidationError: Identifier or password missing.
            AuthenticationError: INVALID_CREDENTIALS.
            AuthorizationError: ACCOUNT_DEACTIVATED or EMAIL_UNVERIFIED.
        """
        if not password or bool(email) == bool(username):
            raise ValidationError(
                "Password and either username or email are required",
                code="MISSING_CREDENTIALS",
            )

        if email:
            user = self.user_db.get_user_by_email(normalize_email(email))
        else:
            user = self.user_db.get_user_by_username(sanitize_input(username))

        stored_hash = user.get("password_hash") if user else None
        if stored_hash is None:
            # Burn the same bcrypt time as a real check
            verify_password(password, _dummy_password_hash())
            password_ok = False
        else:
            password_ok = verify_password(password, stored_hash)

        if not password_ok:
            logger.info(f"Failed login for {email or username}")
            raise AuthenticationError("Invalid credentials", code="INVALID_CREDENTIALS")

        if not user["is_active"]:
            raise AuthorizationError("Account is deactivated", code="ACCOUNT_DEACTIVATED")

        if not user["email_verified"]:
            raise AuthorizationError(
                "Please verify your email address before logging in",
                code="EMAIL_UNVERIFIED",
                email=user["email"],
            )

        return self._complete_primary_auth(user)

    def _complete_primary_auth(self, user: Dict[str, Any]) -> LoginResult:
        if user.get("two_factor_enabled"):
            logger.info(f"2FA challenge issued for user {user['id']}")
            return LoginResult(
                requires_2fa=True,
                temp_token=self.tokens.issue_challenge(user),
                user_id=user["id"],
            )
        return LoginResult(requires_2fa=False, session=self._issue_session(user))

    def verify_two_factor(
        self,
        user_id: Optional[int],
        code: Optional[str],
        is_backup_code: bool = False,
        temp_token: Optional[str] = None,
    ) -> LoginResult:
        """
        Complete a pending 2FA login with a TOTP or backup code.

        temp_token is the challenge issued by login; it binds this step to a
        password check that already succeeded for the same user.

        Raises:
            ValidationError: Missing fields, 2FA not enabled, no backup codes left.
            NotFoundError: USER_NOT_FOUND.
            AuthenticationError: INVALID_2FA_TOKEN.
            AuthorizationError: ACCOUNT_DEACTIVATED.
        """
        if not user_id or not code:
            raise ValidationError("User ID and 2FA token are required", code="MISSING_2FA_FIELDS")
        if not temp_token:
            raise ValidationError("Temporary login token is required", code="MISSING_TEMP_TOKEN")

        user = self.user_db.get_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")

        if not user.get("two_factor_enabled") or not user.get("two_factor_secret"):
            raise ValidationError("2FA is not enabled for this user", code="2FA_NOT_ENABLED")

        try:
            claims = self.tokens.verify_challenge(temp_token)
        except TokenError:
            raise AuthenticationError("Invalid 2FA token", code="INVALID_2FA_TOKEN")
        if claims.user_id != user["id"]:
            raise AuthenticationError("Invalid 2FA token", code="INVALID_2FA_TOKEN")

        if not user["is_active"]:
            raise AuthorizationError("Account is deactivated", code="ACCOUNT_DEACTIVATED")

        if is_backup_code:
            valid = self._spend_backup_code(user, code)
        else:
            valid = mfa.verify_totp(user["two_factor_secret"], code)

        if not valid:
            logger.info(f"Invalid 2FA code for user {user['id']} (backup={is_backup_code})")
            raise AuthenticationError("Invalid 2FA token", code="INVALID_2FA_TOKEN")

        return LoginResult(requires_2fa=False, session=self._issue_session(user))

    def _spend_backup_code(self, user: Dict[str, Any], code: str) -> bool:
        codes = user.get("two_factor_backup_codes") or []
        if not codes:
            raise ValidationError("No backup codes available", code="NO_BACKUP_CODES")

        remaining = mfa.consume_backup_code(code, codes)
        if len(remaining) == len(codes):
            return False

        # Another request may have spent the same code since we read the list
        return self.user_db.consume_backup_code(user["id"], codes, remaining)

    def _issue_session(self, user: Dict[str, Any]) -> SessionResult:
        updated = self.user_db.update_user(user["id"], last_login_at=datetime.now(timezone.utc))
        user = updated or user

        logger.info(f"Session issued for user {user['id']}")
        return SessionResult(
            access_token=self.tokens.issue_access(user),
            refresh_token=self.tokens.issue_refresh(user),
            user=sanitize_user(user),
        )

    # ==========================================
    # Session lifecycle
    # ==========================================

    def refresh(self, refresh_token: Optional[str]) -> SessionResult:
        """
        Rotate the token pair from a refresh cookie.

        Role and activation come from the current user record, not from the
        presented token. Every failure asks for the cookie to be cleared.
        """
        try:
            claims = self.tokens.verify_refresh(refresh_token)
        except TokenError as e:
            logger.info(f"Refresh rejected: {e.reason.value}")
            raise AuthenticationError(
                "Invalid or expired refresh token",
                code="INVALID_REFRESH_TOKEN",
                clear_refresh_cookie=True,
            )

        user = self.user_db.get_user_by_id(claims.user_id)
        if user is None:
            raise NotFoundError("User not found", code="USER_NOT_FOUND", clear_refresh_cookie=True)

        if not user["is_active"]:
            raise AuthorizationError(
                "Account is deactivated",
                code="ACCOUNT_DEACTIVATED",
                clear_refresh_cookie=True,
            )

        return SessionResult(
            access_token=self.tokens.issue_access(user),
            refresh_token=self.tokens.issue_refresh(user),
            user=sanitize_user(user),
        )

    def get_profile(self, user_id: int) -> Dict[str, Any]:
        user = self.user_db.get_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")
        if not user["is_active"]:
            raise AuthorizationError("Account is deactivated", code="ACCOUNT_DEACTIVATED")
        return sanitize_user(user)

    def change_password(
        self,
        user_id: int,
        current_password: Optional[str],
        new_password: Optional[str],
        confirm_password: Optional[str],
    ) -> None:
        """
        Replace the password of a logged-in user.

        Any outstanding reset token is cleared with it. Existing refresh
        tokens stay valid until they expire.

        Raises:
            ValidationError: Missing fields, mismatch, weak or unchanged password.
            AuthenticationError: INVALID_PASSWORD.
            AuthorizationError: ACCOUNT_DEACTIVATED.
            NotFoundError: USER_NOT_FOUND.
        """
        if not current_password or not new_password or not confirm_password:
            raise ValidationError(
                "Current password, new password, and confirmation are required",
                code="MISSING_FIELDS",
            )
        if new_password != confirm_password:
            raise ValidationError("New password and confirmation do not match", code="PASSWORD_MISMATCH")

        valid, errors = validate_password(new_password)
        if not valid:
            raise ValidationError(
                "New password does not meet requirements",
                code="WEAK_PASSWORD",
                details=errors,
            )

        user = self._require_user(user_id)
        if not user["is_active"]:
            raise AuthorizationError("Account is deactivated", code="ACCOUNT_DEACTIVATED")

        # Password-less accounts have nothing to match
        if not verify_password(current_password, user.get("password_hash")):
            raise AuthenticationError("Current password is incorrect", code="INVALID_PASSWORD")
        if verify_password(new_password, user["password_hash"]):
            raise ValidationError(
                "New password must be different from current password",
                code="SAME_PASSWORD",
            )

        self.user_db.update_user(
            user_id,
            password_hash=hash_password(new_password),
            password_reset_token=None,
            password_reset_expires=None,
        )
        logger.info(f"Password changed by user {user_id}")

    # ==========================================
    # Password reset
    # ==========================================

    def request_password_reset(self, email: Optional[str]) -> str:
        """
        Start a password reset.

        Returns:
            The same generic message whether or not the account exists.
        """
        if not email or not email.strip():
            raise ValidationError("Email is required", code="MISSING_EMAIL")

        user = self.user_db.get_user_by_email(normalize_email(email))
        if user is None:
            logger.info("Password reset requested for unknown email")
            return PASSWORD_RESET_SENT_MESSAGE

        token = secrets.token_hex(32)
        self.user_db.update_user(
            user["id"],
            password_reset_token=token,
            password_reset_expires=datetime.now(timezone.utc) + PASSWORD_RESET_TTL,
        )

        if not self.email.send_password_reset_email(user["email"], _display_name(user), token):
            logger.error(f"Password reset email could not be sent for user {user['id']}")

        logger.info(f"Password reset token {mask_secret(token)} issued for user {user['id']}")
        return PASSWORD_RESET_SENT_MESSAGE

    def reset_password(
        self,
        token: Optional[str],
        new_password: Optional[str],
        confirm_password: Optional[str],
    ) -> None:
        """
        Confirm a password reset. The token is spent in the same update that
        writes the new hash, so a second call with it fails.

        Raises:
            ValidationError: Missing fields, mismatch, weak password, unknown,
                spent or expired token.
        """
        if not token:
            raise ValidationError("Reset token is required", code="MISSING_TOKEN")
        if not new_password or not confirm_password:
            raise ValidationError("New password and confirmation are required", code="MISSING_PASSWORD")
        if new_password != confirm_password:
            raise ValidationError("Passwords do not match", code="PASSWORD_MISMATCH")

        valid, errors = validate_password(new_password)
        if not valid:
            raise ValidationError(
                "Password does not meet requirements",
                code="WEAK_PASSWORD",
                details=errors,
            )

        user = self.user_db.get_user_by_password_reset_token(token)
        if user is None:
            raise ValidationError("Invalid or expired reset token", code="INVALID_RESET_TOKEN")

        if _is_expired(user.get("password_reset_expires"), datetime.now(timezone.utc)):
            raise ValidationError(
                "Reset token has expired. Please request a new password reset.",
                code="RESET_TOKEN_EXPIRED",
            )

        if not self.user_db.consume_password_reset_token(user["id"], token, hash_password(new_password)):
            raise ValidationError("Invalid or expired reset token", code="INVALID_RESET_TOKEN")

        logger.info(f"Password reset completed for user {user['id']}")

    # ==========================================
    # Email verification and registration
    # ==========================================

    def verify_email(self, token: Optional[str]) -> EmailVerificationResult:
        """
        Consume a verification token and log the user in.

        Verification counts as a first successful login, so a session (or a
        2FA challenge) comes back with the result.
        """
        if not token:
            raise ValidationError("Verification token is required", code="MISSING_TOKEN")

        user = self.user_db.get_user_by_verification_token(token)
        if user is None:
            raise ValidationError(
                "Invalid or expired verification token",
                code="INVALID_VERIFICATION_TOKEN",
            )

        if _is_expired(user.get("email_verification_expires"), datetime.now(timezone.utc)):
            raise ValidationError(
                "Verification token has expired. Please request a new one.",
                code="VERIFICATION_TOKEN_EXPIRED",
            )

        if user["email_verified"]:
            return EmailVerificationResult(already_verified=True)

        if not user["is_active"]:
            raise AuthorizationError("Account is deactivated", code="ACCOUNT_DEACTIVATED")

        if not self.user_db.consume_verification_token(user["id"], token):
            raise ValidationError(
                "Invalid or expired verification token",
                code="INVALID_VERIFICATION_TOKEN",
            )

        logger.info(f"Email verified for user {user['id']}")
        user = self.user_db.get_user_by_id(user["id"]) or {**user, "email_verified": True}
        return EmailVerificationResult(login=self._complete_primary_auth(user))

    def resend_verification(self, email: Optional[str]) -> str:
        """Issue a fresh verification token. Same response for every email."""
        if not email or not email.strip():
            raise ValidationError("Email is required", code="MISSING_EMAIL")

        user = self.user_db.get_user_by_email(normalize_email(email))
        if user is None or user["email_verified"]:
            return VERIFICATION_SENT_MESSAGE

        token = self._store_verification_token(user["id"])
        if not self.email.send_verification_email(user["email"], _display_name(user), token):
            logger.error(f"Verification email could not be sent for user {user['id']}")

        return VERIFICATION_SENT_MESSAGE

    def _store_verification_token(self, user_id: int) -> str:
        token = secrets.token_hex(32)
        self.user_db.update_user(
            user_id,
            email_verification_token=token,
            email_verification_expires=datetime.now(timezone.utc) + EMAIL_VERIFICATION_TTL,
        )
        return token

    def register(
        self,
        username: Optional[str],
        email: Optional[str],
        password: Optional[str],
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create an unverified client account and send the verification email.

        No session is issued; the user logs in after verifying.

        Raises:
            ValidationError: Missing or invalid fields, weak password.
            ConflictError: Username or email already taken.
        """
        if not username or not email or not password:
            raise ValidationError("Username, email, and password are required", code="MISSING_FIELDS")

        username = sanitize_input(username)
        email = normalize_email(email)

        username_ok, username_error = validate_username(username)
        if not username_ok:
            raise ValidationError(username_error, code="INVALID_USERNAME")

        if not validate_email(email):
            raise ValidationError("Invalid email format", code="INVALID_EMAIL")

        valid, errors = validate_password(password)
        if not valid:
            raise ValidationError(
                "Password does not meet requirements",
                code="WEAK_PASSWORD",
                details=errors,
            )

        if self.user_db.get_user_by_username(username):
            raise ConflictError("Username already exists", code="USERNAME_EXISTS")
        if self.user_db.get_user_by_email(email):
            raise ConflictError("Email already registered", code="EMAIL_EXISTS")

        token = secrets.token_hex(32)
        password_hash = hash_password(password)
        try:
            user = self.user_db.create_user(
                username=username,
                email=email,
                password_hash=password_hash,
                first_name=sanitize_input(first_name) if first_name else None,
                last_name=sanitize_input(last_name) if last_name else None,
                phone_number=sanitize_input(phone_number) if phone_number else None,
                role="client",
                email_verified=False,
                email_verification_token=token,
                email_verification_expires=datetime.now(timezone.utc) + EMAIL_VERIFICATION_TTL,
            )
        except ValueError as e:
            # Lost a race with a concurrent registration
            raise ConflictError(str(e), code="DUPLICATE_USER")

        if not self.email.send_verification_email(user["email"], _display_name(user), token):
            logger.error(f"Verification email could not be sent for new user {user['id']}")

        return sanitize_user(user)

    # ==========================================
    # Two-factor management
    # ==========================================

    def _require_user(self, user_id: int) -> Dict[str, Any]:
        user = self.user_db.get_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")
        return user

    def _require_totp(self, user: Dict[str, Any], code: Optional[str]) -> None:
        if not mfa.verify_totp(user.get("two_factor_secret"), code):
            raise AuthenticationError("Invalid 2FA token", code="INVALID_2FA_TOKEN")

    def two_factor_status(self, user_id: int) -> Dict[str, Any]:
        user = self._require_user(user_id)
        return {
            "enabled": bool(user.get("two_factor_enabled")),
            "backup_codes_remaining": len(user.get("two_factor_backup_codes") or []),
        }

    def begin_two_factor_setup(self, user_id: int) -> TwoFactorSetup:
        """
        Generate a pending secret. 2FA stays disabled until enable_two_factor
        confirms a code from the authenticator app.
        """
        user = self._require_user(user_id)
        if user.get("two_factor_enabled"):
            raise ValidationError("2FA is already enabled", code="2FA_ALREADY_ENABLED")

        secret, uri, qr_code = mfa.setup_mfa(user["email"])
        self.user_db.update_user(user_id, two_factor_secret=secret)

        logger.info(f"2FA setup started for user {user_id}")
        return TwoFactorSetup(secret=secret, provisioning_uri=uri, qr_code=qr_code)

    def enable_two_factor(self, user_id: int, code: Optional[str]) -> List[str]:
        """
        Turn on 2FA after the user proves the pending secret works.

        Returns:
            Plain backup codes, shown to the user once.
        """
        user = self._require_user(user_id)
        if user.get("two_factor_enabled"):
            raise ValidationError("2FA is already enabled", code="2FA_ALREADY_ENABLED")
        if not user.get("two_factor_secret"):
            raise ValidationError("2FA setup has not been started", code="2FA_SETUP_REQUIRED")

        self._require_totp(user, code)

        plain, hashed = mfa.generate_backup_codes()
        self.user_db.update_user(
            user_id,
            two_factor_enabled=True,
            two_factor_backup_codes=hashed,
        )

        logger.info(f"2FA enabled for user {user_id}")
        return plain

    def disable_two_factor(self, user_id: int, password: Optional[str], code: Optional[str]) -> None:
        """Requires both the current password and a valid TOTP code."""
        user = self._require_user(user_id)
        if not user.get("two_factor_enabled"):
            raise ValidationError("2FA is not enabled for this user", code="2FA_NOT_ENABLED")

        if not password or not verify_password(password, user.get("password_hash")):
            raise AuthenticationError("Invalid password", code="INVALID_PASSWORD")
        self._require_totp(user, code)

        self.user_db.update_user(
            user_id,
            two_factor_enabled=False,
            two_factor_secret=None,
            two_factor_backup_codes=[],
        )
        logger.info(f"2FA disabled for user {user_id}")

    def regenerate_backup_codes(self, user_id: int, code: Optional[str]) -> List[str]:
        user = self._require_user(user_id)
        if not user.get("two_factor_enabled"):
            raise ValidationError("2FA is not enabled for this user", code="2FA_NOT_ENABLED")
        self._require_totp(user, code)

        plain, hashed = mfa.generate_backup_codes()
        self.user_db.update_user(user_id, two_factor_backup_codes=hashed)

        logger.info(f"Backup codes regenerated for user {user_id}")
        return plain

    # ==========================================
    # Admin
    # ==========================================

    def list_users(self) -> List[Dict[str, Any]]:
        return [sanitize_user(u) for u in self.user_db.list_users()]

    def create_client(
        self,
        email: Optional[str],
        first_name: Optional[str],
        last_name: Optional[str],
        phone_number: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Provision a password-less client record (invoice-only clients).

        The record cannot log in until a password is set for it.
        """
        if not email or not first_name or not last_name:
            raise ValidationError("Email, first name, and last name are required", code="MISSING_FIELDS")

        email = normalize_email(email)
        if not validate_email(email):
            raise ValidationError("Invalid email format", code="INVALID_EMAIL")

        if self.user_db.get_user_by_email(email):
            raise ConflictError("A client with this email already exists", code="EMAIL_EXISTS")

        local_part = email.split("@")[0][:40]
        username = f"{local_part}_{secrets.token_hex(4)}"

        try:
            user = self.user_db.create_user(
                username=username,
                email=email,
                password_hash=None,
                first_name=sanitize_input(first_name),
                last_name=sanitize_input(last_name),
                phone_number=sanitize_input(phone_number) if phone_number else None,
                role="client",
                email_verified=True,
            )
        except ValueError as e:
            raise ConflictError(str(e), code="DUPLICATE_USER")

        logger.info(f"Admin created client {user['id']}")
        return sanitize_user(user)

    def deactivate_user(self, actor_id: int, user_id: int) -> Dict[str, Any]:
        if actor_id == user_id:
            raise AuthorizationError("Cannot deactivate your own account", code="CANNOT_DEACTIVATE_SELF")

        user = self._require_user(user_id)
        if user["role"] == "admin":
            raise AuthorizationError("Cannot deactivate admin users", code="CANNOT_DEACTIVATE_ADMIN")

        updated = self.user_db.update_user(user_id, is_active=False)
        logger.info(f"User {user_id} deactivated by admin {actor_id}")
        return sanitize_user(updated or user)

    def activate_user(self, user_id: int) -> Dict[str, Any]:
        self._require_user(user_id)
        updated = self.user_db.update_user(user_id, is_active=True)
        logger.info(f"User {user_id} activated")
        return sanitize_user(updated)

    def set_role(self, actor_id: int, user_id: int, role: Optional[str]) -> Tuple[Dict[str, Any], bool]:
        """
        Change a user's role.

        The new role reaches the user's session at the next refresh, which
        re-reads the record. Admins cannot demote themselves and the last
        admin cannot be demoted.

        Returns:
            Tuple of (sanitized user, whether the role changed).
        """
        if role not in ROLES:
            raise ValidationError("Invalid role specified", code="INVALID_ROLE")

        user = self._require_user(user_id)
        if user["role"] == role:
            return sanitize_user(user), False

        if actor_id == user_id and role != "admin":
            raise AuthorizationError("You cannot change your own admin role", code="CANNOT_CHANGE_OWN_ROLE")

        if user["role"] == "admin":
            if not self.user_db.demote_admin(user_id, role):
                raise ValidationError("Cannot remove the last remaining admin", code="LAST_ADMIN")
            updated = self.user_db.get_user_by_id(user_id)
        else:
            updated = self.user_db.update_user(user_id, role=role)

        logger.info(f"User {user_id} role set to {role} by admin {actor_id}")
        return sanitize_user(updated or user), True

    def admin_set_password(self, user_id: int, new_password: Optional[str]) -> Dict[str, Any]:
        if not new_password:
            raise ValidationError("New password is required", code="MISSING_PASSWORD")

        valid, errors = validate_password(new_password)
        if not valid:
            raise ValidationError(
                "Password does not meet requirements",
                code="WEAK_PASSWORD",
                details=errors,
            )

        self._require_user(user_id)
        updated = self.user_db.update_user(
            user_id,
            password_hash=hash_password(new_password),
            password_reset_token=None,
            password_reset_expires=None,
        )
        return sanitize_user(updated)
