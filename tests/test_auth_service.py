"""
Tests for the AuthService login, 2FA, refresh, reset and verification flows.
"""
from datetime import datetime, timedelta, timezone

import pytest

from src.auth import mfa
from src.auth.service import (
    PASSWORD_RESET_SENT_MESSAGE,
    VERIFICATION_SENT_MESSAGE,
    SENSITIVE_USER_FIELDS,
    _dummy_password_hash,
)
from src.auth.tokens import PENDING_2FA_ROLE
from src.database.user_db import verify_password
from src.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)

PASSWORD = "Passw0rd!123"
NEW_PASSWORD = "N3wPassw0rd!"
# 84 bytes: over bcrypt's 72-byte input limit
LONG_PASSWORD = "Aa1!" + "x" * 80


@pytest.fixture
def two_factor_user(make_user):
    """Verified user with 2FA on; returns (user, secret, plain backup codes)."""
    secret = mfa.generate_totp_secret()
    plain, hashed = mfa.generate_backup_codes(3)
    user = make_user(
        two_factor_enabled=True,
        two_factor_secret=secret,
        two_factor_backup_codes=hashed,
    )
    return user, secret, plain


@pytest.fixture
def challenge_for(token_issuer):
    """Challenge token as login would issue it after the password check."""
    return token_issuer.issue_challenge


def assert_sanitized(user):
    assert not SENSITIVE_USER_FIELDS & set(user)


# ============================================
# Login
# ============================================

class TestLogin:

    def test_without_2fa_issues_session(self, auth_service, make_user, token_issuer, user_store):
        user = make_user()

        result = auth_service.login(PASSWORD, email=user["email"])

        assert result.requires_2fa is False
        assert result.temp_token is None
        assert token_issuer.verify_access(result.session.access_token).user_id == user["id"]
        assert token_issuer.verify_refresh(result.session.refresh_token).user_id == user["id"]
        assert_sanitized(result.session.user)
        assert user_store.users[user["id"]]["last_login_at"] is not None

    def test_with_2fa_returns_challenge_only(self, auth_service, two_factor_user, token_issuer, user_store):
        user, _, _ = two_factor_user

        result = auth_service.login(PASSWORD, email=user["email"])

        assert result.requires_2fa is True
        assert result.session is None
        assert result.user_id == user["id"]
        assert token_issuer.verify_challenge(result.temp_token).role == PENDING_2FA_ROLE
        assert user_store.users[user["id"]]["last_login_at"] is None

    def test_login_by_username(self, auth_service, make_user):
        user = make_user()
        result = auth_service.login(PASSWORD, username=user["username"])
        assert result.session.user["id"] == user["id"]

    def test_email_lookup_is_case_insensitive(self, auth_service, make_user):
        user = make_user()
        result = auth_service.login(PASSWORD, email=user["email"].upper())
        assert result.session is not None

    def test_unknown_user_and_wrong_password_are_identical(self, auth_service, make_user):
        user = make_user()

        with pytest.raises(AuthenticationError) as unknown:
            auth_service.login(PASSWORD, email="nobody@example.com")
        with pytest.raises(AuthenticationError) as wrong:
            auth_service.login("Wr0ngPassword!", email=user["email"])

        assert unknown.value.to_dict() == wrong.value.to_dict()
        assert unknown.value.code == "INVALID_CREDENTIALS"
        assert unknown.value.message == "Invalid credentials"

    def test_passwordless_account_does_full_bcrypt_work(self, auth_service, make_user, monkeypatch):
        user = make_user(password_hash=None)
        checked = []

        def recording_verify(password, password_hash):
            checked.append(password_hash)
            return verify_password(password, password_hash)

        monkeypatch.setattr("src.auth.service.verify_password", recording_verify)

        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.login(PASSWORD, email=user["email"])

        assert exc_info.value.code == "INVALID_CREDENTIALS"
        assert len(checked) == 1
        assert checked[0] == _dummy_password_hash()

    def test_missing_password_hash_is_invalid_credentials(self, auth_service, make_user):
        user = make_user(password_hash=None)
        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.login(PASSWORD, email=user["email"])
        assert exc_info.value.code == "INVALID_CREDENTIALS"

    @pytest.mark.parametrize("email,username", [(None, None), ("a@example.com", "alice")])
    def test_exactly_one_identifier_required(self, auth_service, email, username):
        with pytest.raises(ValidationError):
            auth_service.login(PASSWORD, email=email, username=username)

    def test_missing_password(self, auth_service):
        with pytest.raises(ValidationError):
            auth_service.login("", email="a@example.com")

    def test_deactivated_after_password_matches(self, auth_service, make_user):
        user = make_user(is_active=False)
        with pytest.raises(AuthorizationError) as exc_info:
            auth_service.login(PASSWORD, email=user["email"])
        assert exc_info.value.code == "ACCOUNT_DEACTIVATED"

    def test_deactivated_with_wrong_password_reveals_nothing(self, auth_service, make_user):
        user = make_user(is_active=False)
        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.login("Wr0ngPassword!", email=user["email"])
        assert exc_info.value.code == "INVALID_CREDENTIALS"

    def test_unverified_email_carries_address(self, auth_service, make_user):
        user = make_user(email_verified=False)
        with pytest.raises(AuthorizationError) as exc_info:
            auth_service.login(PASSWORD, email=user["email"])
        assert exc_info.value.code == "EMAIL_UNVERIFIED"
        assert exc_info.value.to_dict()["email"] == user["email"]


# ============================================
# 2FA verification
# ============================================

class TestVerifyTwoFactor:

    def test_totp_completes_login(self, auth_service, two_factor_user, token_issuer):
        user, secret, _ = two_factor_user
        challenge = auth_service.login(PASSWORD, email=user["email"])

        result = auth_service.verify_two_factor(
            user["id"], mfa.get_current_totp(secret), temp_token=challenge.temp_token,
        )

        assert result.requires_2fa is False
        assert token_issuer.verify_access(result.session.access_token).role == "client"
        assert_sanitized(result.session.user)

    def test_wrong_code(self, auth_service, two_factor_user, challenge_for):
        user, secret, _ = two_factor_user
        bad = "000000" if mfa.get_current_totp(secret) != "000000" else "111111"
        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.verify_two_factor(user["id"], bad, temp_token=challenge_for(user))
        assert exc_info.value.code == "INVALID_2FA_TOKEN"

    def test_unknown_user(self, auth_service, challenge_for):
        ghost = {"id": 999, "email": "ghost@example.com", "role": "client"}
        with pytest.raises(NotFoundError):
            auth_service.verify_two_factor(999, "123456", temp_token=challenge_for(ghost))

    def test_2fa_not_enabled(self, auth_service, make_user, challenge_for):
        user = make_user()
        with pytest.raises(ValidationError) as exc_info:
            auth_service.verify_two_factor(user["id"], "123456", temp_token=challenge_for(user))
        assert exc_info.value.code == "2FA_NOT_ENABLED"

    def test_missing_fields(self, auth_service):
        with pytest.raises(ValidationError):
            auth_service.verify_two_factor(None, "123456")
        with pytest.raises(ValidationError):
            auth_service.verify_two_factor(1, "")

    def test_challenge_token_required(self, auth_service, two_factor_user):
        user, secret, _ = two_factor_user
        with pytest.raises(ValidationError) as exc_info:
            auth_service.verify_two_factor(user["id"], mfa.get_current_totp(secret))
        assert exc_info.value.code == "MISSING_TEMP_TOKEN"

    def test_deactivated_between_steps(self, auth_service, two_factor_user, challenge_for, user_store):
        user, secret, _ = two_factor_user
        temp_token = challenge_for(user)
        user_store.users[user["id"]]["is_active"] = False

        with pytest.raises(AuthorizationError) as exc_info:
            auth_service.verify_two_factor(user["id"], mfa.get_current_totp(secret), temp_token=temp_token)
        assert exc_info.value.code == "ACCOUNT_DEACTIVATED"

    def test_challenge_for_another_user_rejected(self, auth_service, two_factor_user, make_user, token_issuer):
        user, secret, _ = two_factor_user
        other = make_user()
        foreign = token_issuer.issue_challenge(other)

        with pytest.raises(AuthenticationError):
            auth_service.verify_two_factor(user["id"], mfa.get_current_totp(secret), temp_token=foreign)

    def test_access_token_is_not_a_valid_challenge(self, auth_service, two_factor_user, token_issuer):
        user, secret, _ = two_factor_user
        with pytest.raises(AuthenticationError):
            auth_service.verify_two_factor(
                user["id"], mfa.get_current_totp(secret), temp_token=token_issuer.issue_access(user),
            )

    def test_backup_code_is_single_use(self, auth_service, two_factor_user, user_store, challenge_for):
        user, _, plain = two_factor_user
        temp_token = challenge_for(user)

        result = auth_service.verify_two_factor(user["id"], plain[1], is_backup_code=True, temp_token=temp_token)
        assert result.session is not None
        remaining = user_store.users[user["id"]]["two_factor_backup_codes"]
        assert len(remaining) == 2
        assert not mfa.verify_backup_code(plain[1], remaining)

        with pytest.raises(AuthenticationError):
            auth_service.verify_two_factor(user["id"], plain[1], is_backup_code=True, temp_token=temp_token)

        # the other codes still work
        auth_service.verify_two_factor(user["id"], plain[0], is_backup_code=True, temp_token=temp_token)

    def test_backup_code_lost_race_is_invalid(
        self, auth_service, two_factor_user, user_store, monkeypatch, challenge_for,
    ):
        user, _, plain = two_factor_user
        temp_token = challenge_for(user)
        monkeypatch.setattr(user_store, "consume_backup_code", lambda *args: False)

        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.verify_two_factor(user["id"], plain[0], is_backup_code=True, temp_token=temp_token)
        assert exc_info.value.code == "INVALID_2FA_TOKEN"

    def test_no_backup_codes_left(self, auth_service, make_user, challenge_for):
        user = make_user(two_factor_enabled=True, two_factor_secret=mfa.generate_totp_secret())
        with pytest.raises(ValidationError) as exc_info:
            auth_service.verify_two_factor(user["id"], "ABCD-1234", is_backup_code=True, temp_token=challenge_for(user))
        assert exc_info.value.code == "NO_BACKUP_CODES"


# ============================================
# Refresh
# ============================================

class TestRefresh:

    def test_rotates_pair(self, auth_service, make_user, token_issuer):
        user = make_user()
        session = auth_service.login(PASSWORD, email=user["email"]).session

        rotated = auth_service.refresh(session.refresh_token)

        assert token_issuer.verify_access(rotated.access_token).user_id == user["id"]
        assert token_issuer.verify_refresh(rotated.refresh_token).user_id == user["id"]

    def test_role_change_reaches_session_at_refresh(self, auth_service, make_user, token_issuer):
        admin = make_user(role="admin")
        user = make_user()
        session = auth_service.login(PASSWORD, email=user["email"]).session

        auth_service.set_role(admin["id"], user["id"], "admin")

        # The outstanding access token keeps its role until it expires
        assert token_issuer.verify_access(session.access_token).role == "client"
        rotated = auth_service.refresh(session.refresh_token)
        assert token_issuer.verify_access(rotated.access_token).role == "admin"
        assert rotated.user["role"] == "admin"

        auth_service.set_role(admin["id"], user["id"], "client")
        demoted = auth_service.refresh(rotated.refresh_token)
        assert token_issuer.verify_access(demoted.access_token).role == "client"

    @pytest.mark.parametrize("token", [None, "", "garbage"])
    def test_invalid_token_asks_to_clear_cookie(self, auth_service, token):
        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.refresh(token)
        assert exc_info.value.code == "INVALID_REFRESH_TOKEN"
        assert exc_info.value.clear_refresh_cookie is True

    def test_access_token_rejected(self, auth_service, make_user, token_issuer):
        user = make_user()
        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.refresh(token_issuer.issue_access(user))
        assert exc_info.value.clear_refresh_cookie is True

    def test_user_gone(self, auth_service, make_user, token_issuer, user_store):
        user = make_user()
        token = token_issuer.issue_refresh(user)
        del user_store.users[user["id"]]

        with pytest.raises(NotFoundError) as exc_info:
            auth_service.refresh(token)
        assert exc_info.value.clear_refresh_cookie is True

    def test_deactivated_user(self, auth_service, make_user, token_issuer, user_store):
        user = make_user()
        token = token_issuer.issue_refresh(user)
        user_store.update_user(user["id"], is_active=False)

        with pytest.raises(AuthorizationError) as exc_info:
            auth_service.refresh(token)
        assert exc_info.value.code == "ACCOUNT_DEACTIVATED"
        assert exc_info.value.clear_refresh_cookie is True


# ============================================
# Password change
# ============================================

class TestChangePassword:

    def test_changes_hash_and_clears_reset_token(self, auth_service, make_user, user_store):
        user = make_user(password_reset_token="r" * 64)

        auth_service.change_password(user["id"], PASSWORD, NEW_PASSWORD, NEW_PASSWORD)

        stored = user_store.users[user["id"]]
        assert verify_password(NEW_PASSWORD, stored["password_hash"])
        assert stored["password_reset_token"] is None
        assert auth_service.login(NEW_PASSWORD, email=user["email"]).session is not None

    def test_wrong_current_password(self, auth_service, make_user, user_store):
        user = make_user()

        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.change_password(user["id"], "Wr0ngPassword!", NEW_PASSWORD, NEW_PASSWORD)

        assert exc_info.value.code == "INVALID_PASSWORD"
        assert verify_password(PASSWORD, user_store.users[user["id"]]["password_hash"])

    def test_passwordless_account_cannot_change(self, auth_service, make_user):
        user = make_user(password_hash=None)
        with pytest.raises(AuthenticationError):
            auth_service.change_password(user["id"], PASSWORD, NEW_PASSWORD, NEW_PASSWORD)

    def test_new_password_must_differ(self, auth_service, make_user):
        user = make_user()
        with pytest.raises(ValidationError) as exc_info:
            auth_service.change_password(user["id"], PASSWORD, PASSWORD, PASSWORD)
        assert exc_info.value.code == "SAME_PASSWORD"

    def test_deactivated_account(self, auth_service, make_user):
        user = make_user(is_active=False)
        with pytest.raises(AuthorizationError) as exc_info:
            auth_service.change_password(user["id"], PASSWORD, NEW_PASSWORD, NEW_PASSWORD)
        assert exc_info.value.code == "ACCOUNT_DEACTIVATED"

    @pytest.mark.parametrize("current,new,confirm,code", [
        ("", NEW_PASSWORD, NEW_PASSWORD, "MISSING_FIELDS"),
        (PASSWORD, NEW_PASSWORD, "N3wPassw0rd?", "PASSWORD_MISMATCH"),
        (PASSWORD, "weakpass", "weakpass", "WEAK_PASSWORD"),
        (PASSWORD, LONG_PASSWORD, LONG_PASSWORD, "WEAK_PASSWORD"),
    ])
    def test_invalid_input(self, auth_service, make_user, current, new, confirm, code):
        user = make_user()
        with pytest.raises(ValidationError) as exc_info:
            auth_service.change_password(user["id"], current, new, confirm)
        assert exc_info.value.code == code


# ============================================
# Password reset
# ============================================

class TestPasswordReset:

    def test_unknown_email_gets_generic_message_and_no_token(self, auth_service, user_store, email_outbox, make_user):
        make_user()

        message = auth_service.request_password_reset("ghost@example.com")

        assert message == PASSWORD_RESET_SENT_MESSAGE
        assert email_outbox.sent == []
        assert all(u["password_reset_token"] is None for u in user_store.users.values())

    def test_known_email_stores_token_and_sends_it(self, auth_service, make_user, user_store, email_outbox):
        user = make_user()

        message = auth_service.request_password_reset(user["email"])

        assert message == PASSWORD_RESET_SENT_MESSAGE
        stored = user_store.users[user["id"]]
        assert len(stored["password_reset_token"]) == 64
        assert stored["password_reset_expires"] > datetime.now(timezone.utc) + timedelta(minutes=59)
        assert email_outbox.tokens_for("password_reset", user["email"]) == [stored["password_reset_token"]]

    def test_email_failure_is_not_surfaced(self, auth_service, make_user, email_outbox):
        email_outbox.succeed = False
        user = make_user()
        assert auth_service.request_password_reset(user["email"]) == PASSWORD_RESET_SENT_MESSAGE

    def test_missing_email(self, auth_service):
        with pytest.raises(ValidationError):
            auth_service.request_password_reset("  ")

    def test_token_is_single_use(self, auth_service, make_user, user_store, email_outbox):
        user = make_user()
        auth_service.request_password_reset(user["email"])
        token = email_outbox.tokens_for("password_reset", user["email"])[0]

        auth_service.reset_password(token, NEW_PASSWORD, NEW_PASSWORD)

        stored = user_store.users[user["id"]]
        assert verify_password(NEW_PASSWORD, stored["password_hash"])
        assert stored["password_reset_token"] is None
        assert stored["password_reset_expires"] is None

        with pytest.raises(ValidationError) as exc_info:
            auth_service.reset_password(token, "An0therPass!", "An0therPass!")
        assert exc_info.value.message == "Invalid or expired reset token"

    def test_expired_token_rejected(self, auth_service, make_user, user_store, expired):
        user = make_user(password_reset_token="a" * 64, password_reset_expires=expired)

        with pytest.raises(ValidationError) as exc_info:
            auth_service.reset_password("a" * 64, NEW_PASSWORD, NEW_PASSWORD)
        assert exc_info.value.code == "RESET_TOKEN_EXPIRED"
        assert verify_password(PASSWORD, user_store.users[user["id"]]["password_hash"])

    def test_overlong_password_rejected_before_token_is_spent(self, auth_service, make_user, user_store):
        user = make_user(
            password_reset_token="L" * 64,
            password_reset_expires=datetime.now(timezone.utc) + timedelta(hours=1),
        )

        with pytest.raises(ValidationError) as exc_info:
            auth_service.reset_password("L" * 64, LONG_PASSWORD, LONG_PASSWORD)

        assert exc_info.value.code == "WEAK_PASSWORD"
        assert user_store.users[user["id"]]["password_reset_token"] == "L" * 64

    def test_mismatch_and_weak_password(self, auth_service):
        with pytest.raises(ValidationError) as mismatch:
            auth_service.reset_password("token", NEW_PASSWORD, NEW_PASSWORD + "x")
        assert mismatch.value.message == "Passwords do not match"

        with pytest.raises(ValidationError) as weak:
            auth_service.reset_password("token", "weak", "weak")
        assert weak.value.code == "WEAK_PASSWORD"
        assert weak.value.to_dict()["details"]

    def test_unknown_token(self, auth_service):
        with pytest.raises(ValidationError) as exc_info:
            auth_service.reset_password("f" * 64, NEW_PASSWORD, NEW_PASSWORD)
        assert exc_info.value.code == "INVALID_RESET_TOKEN"


# ============================================
# Email verification and registration
# ============================================

class TestEmailVerification:

    def _unverified(self, make_user, **fields):
        return make_user(
            email_verified=False,
            email_verification_token="v" * 64,
            email_verification_expires=datetime.now(timezone.utc) + timedelta(hours=24),
            **fields,
        )

    def test_verification_logs_user_in(self, auth_service, make_user, user_store, token_issuer):
        user = self._unverified(make_user)

        result = auth_service.verify_email("v" * 64)

        assert result.already_verified is False
        assert result.login.session.user["email_verified"] is True
        assert token_issuer.verify_access(result.login.session.access_token).user_id == user["id"]
        stored = user_store.users[user["id"]]
        assert stored["email_verified"] is True
        assert stored["email_verification_token"] is None

    def test_token_is_single_use(self, auth_service, make_user):
        self._unverified(make_user)
        auth_service.verify_email("v" * 64)

        with pytest.raises(ValidationError) as exc_info:
            auth_service.verify_email("v" * 64)
        assert exc_info.value.code == "INVALID_VERIFICATION_TOKEN"

    def test_expired_token_rejected(self, auth_service, make_user, user_store, expired):
        user = make_user(
            email_verified=False,
            email_verification_token="e" * 64,
            email_verification_expires=expired,
        )
        with pytest.raises(ValidationError) as exc_info:
            auth_service.verify_email("e" * 64)
        assert exc_info.value.code == "VERIFICATION_TOKEN_EXPIRED"
        assert user_store.users[user["id"]]["email_verified"] is False

    def test_already_verified(self, auth_service, make_user):
        make_user(
            email_verified=True,
            email_verification_token="v" * 64,
            email_verification_expires=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        assert auth_service.verify_email("v" * 64).already_verified is True

    def test_deactivated_account_refused(self, auth_service, make_user):
        self._unverified(make_user, is_active=False)
        with pytest.raises(AuthorizationError):
            auth_service.verify_email("v" * 64)

    def test_two_factor_account_gets_challenge(self, auth_service, make_user):
        self._unverified(
            make_user,
            two_factor_enabled=True,
            two_factor_secret=mfa.generate_totp_secret(),
        )
        result = auth_service.verify_email("v" * 64)
        assert result.login.requires_2fa is True
        assert result.login.session is None

    def test_resend_only_for_unverified_accounts(self, auth_service, make_user, email_outbox, user_store):
        verified = make_user()
        pending = make_user(email_verified=False)

        assert auth_service.resend_verification("ghost@example.com") == VERIFICATION_SENT_MESSAGE
        assert auth_service.resend_verification(verified["email"]) == VERIFICATION_SENT_MESSAGE
        assert email_outbox.sent == []

        assert auth_service.resend_verification(pending["email"]) == VERIFICATION_SENT_MESSAGE
        token = user_store.users[pending["id"]]["email_verification_token"]
        assert email_outbox.tokens_for("verification", pending["email"]) == [token]


class TestRegistration:

    def test_creates_unverified_client_and_sends_email(self, auth_service, user_store, email_outbox):
        user = auth_service.register("new_client", "New@Example.com", PASSWORD, first_name="Nina")

        assert_sanitized(user)
        assert user["email"] == "new@example.com"
        assert user["role"] == "client"
        assert user["email_verified"] is False
        stored = user_store.users[user["id"]]
        assert verify_password(PASSWORD, stored["password_hash"])
        assert email_outbox.tokens_for("verification", "new@example.com") == [stored["email_verification_token"]]

    def test_registered_user_cannot_log_in_before_verifying(self, auth_service):
        auth_service.register("new_client", "new@example.com", PASSWORD)
        with pytest.raises(AuthorizationError) as exc_info:
            auth_service.login(PASSWORD, email="new@example.com")
        assert exc_info.value.code == "EMAIL_UNVERIFIED"

    def test_duplicates_conflict(self, auth_service, make_user):
        user = make_user()
        with pytest.raises(ConflictError) as by_name:
            auth_service.register(user["username"], "fresh@example.com", PASSWORD)
        assert by_name.value.code == "USERNAME_EXISTS"

        with pytest.raises(ConflictError) as by_email:
            auth_service.register("fresh_name", user["email"], PASSWORD)
        assert by_email.value.code == "EMAIL_EXISTS"

    @pytest.mark.parametrize("username,email,password,code", [
        ("ab", "ok@example.com", PASSWORD, "INVALID_USERNAME"),
        ("valid_name", "not-an-email", PASSWORD, "INVALID_EMAIL"),
        ("valid_name", "ok@example.com", "password", "WEAK_PASSWORD"),
        ("", "ok@example.com", PASSWORD, "MISSING_FIELDS"),
    ])
    def test_invalid_input(self, auth_service, username, email, password, code):
        with pytest.raises(ValidationError) as exc_info:
            auth_service.register(username, email, password)
        assert exc_info.value.code == code

    def test_overlong_password_is_weak_not_duplicate(self, auth_service, user_store):
        with pytest.raises(ValidationError) as exc_info:
            auth_service.register("long_pass", "long@example.com", LONG_PASSWORD)

        assert exc_info.value.code == "WEAK_PASSWORD"
        assert "Password must be no more than 72 bytes long" in exc_info.value.to_dict()["details"]
        assert user_store.users == {}

    def test_store_duplicate_maps_to_conflict(self, auth_service, user_store, monkeypatch):
        def racing_create(**fields):
            raise ValueError("Email already registered")

        monkeypatch.setattr(user_store, "create_user", racing_create)

        with pytest.raises(ConflictError) as exc_info:
            auth_service.register("racer", "racer@example.com", PASSWORD)
        assert exc_info.value.code == "DUPLICATE_USER"


# ============================================
# Two-factor management
# ============================================

class TestTwoFactorManagement:

    def test_setup_enable_status(self, auth_service, make_user, user_store):
        user = make_user()

        setup = auth_service.begin_two_factor_setup(user["id"])
        assert user_store.users[user["id"]]["two_factor_enabled"] is False
        assert user_store.users[user["id"]]["two_factor_secret"] == setup.secret

        codes = auth_service.enable_two_factor(user["id"], mfa.get_current_totp(setup.secret))

        assert len(codes) == mfa.BACKUP_CODE_COUNT
        assert auth_service.two_factor_status(user["id"]) == {
            "enabled": True,
            "backup_codes_remaining": mfa.BACKUP_CODE_COUNT,
        }
        assert auth_service.login(PASSWORD, email=user["email"]).requires_2fa is True

    def test_enable_requires_valid_code(self, auth_service, make_user, user_store):
        user = make_user()
        setup = auth_service.begin_two_factor_setup(user["id"])
        bad = "000000" if mfa.get_current_totp(setup.secret) != "000000" else "111111"

        with pytest.raises(AuthenticationError):
            auth_service.enable_two_factor(user["id"], bad)
        assert user_store.users[user["id"]]["two_factor_enabled"] is False

    def test_enable_without_setup(self, auth_service, make_user):
        user = make_user()
        with pytest.raises(ValidationError) as exc_info:
            auth_service.enable_two_factor(user["id"], "123456")
        assert exc_info.value.code == "2FA_SETUP_REQUIRED"

    def test_setup_refused_when_enabled(self, auth_service, two_factor_user):
        user, _, _ = two_factor_user
        with pytest.raises(ValidationError):
            auth_service.begin_two_factor_setup(user["id"])

    def test_disable_needs_password_and_code(self, auth_service, two_factor_user, user_store):
        user, secret, _ = two_factor_user

        with pytest.raises(AuthenticationError):
            auth_service.disable_two_factor(user["id"], "Wr0ngPassword!", mfa.get_current_totp(secret))

        auth_service.disable_two_factor(user["id"], PASSWORD, mfa.get_current_totp(secret))

        stored = user_store.users[user["id"]]
        assert stored["two_factor_enabled"] is False
        assert stored["two_factor_secret"] is None
        assert stored["two_factor_backup_codes"] == []

    def test_regenerate_replaces_codes(self, auth_service, two_factor_user, user_store):
        user, secret, old_plain = two_factor_user

        new_plain = auth_service.regenerate_backup_codes(user["id"], mfa.get_current_totp(secret))

        stored = user_store.users[user["id"]]["two_factor_backup_codes"]
        assert mfa.verify_backup_code(new_plain[0], stored)
        assert not mfa.verify_backup_code(old_plain[0], stored)


# ============================================
# Admin
# ============================================

class TestAdmin:

    def test_create_client_is_passwordless_and_verified(self, auth_service, user_store):
        user = auth_service.create_client("Invoice@Example.com", "Ida", "Invoice")

        stored = user_store.users[user["id"]]
        assert stored["password_hash"] is None
        assert stored["email_verified"] is True
        assert stored["username"].startswith("invoice_")
        assert_sanitized(user)

        with pytest.raises(AuthenticationError):
            auth_service.login("anything", email="invoice@example.com")

    def test_create_client_duplicate_email(self, auth_service, make_user):
        user = make_user()
        with pytest.raises(ConflictError):
            auth_service.create_client(user["email"], "A", "B")

    def test_create_client_missing_fields(self, auth_service):
        with pytest.raises(ValidationError):
            auth_service.create_client("x@example.com", "", "B")

    def test_deactivate_rules(self, auth_service, make_user, user_store):
        admin = make_user(role="admin")
        other_admin = make_user(role="admin")
        client = make_user()

        with pytest.raises(AuthorizationError):
            auth_service.deactivate_user(admin["id"], admin["id"])
        with pytest.raises(AuthorizationError):
            auth_service.deactivate_user(admin["id"], other_admin["id"])
        with pytest.raises(NotFoundError):
            auth_service.deactivate_user(admin["id"], 999)

        auth_service.deactivate_user(admin["id"], client["id"])
        assert user_store.users[client["id"]]["is_active"] is False

        auth_service.activate_user(client["id"])
        assert user_store.users[client["id"]]["is_active"] is True

    def test_admin_set_password(self, auth_service, make_user, user_store):
        user = make_user(password_reset_token="r" * 64)

        auth_service.admin_set_password(user["id"], NEW_PASSWORD)

        stored = user_store.users[user["id"]]
        assert verify_password(NEW_PASSWORD, stored["password_hash"])
        assert stored["password_reset_token"] is None

        with pytest.raises(ValidationError):
            auth_service.admin_set_password(user["id"], "weak")
        with pytest.raises(ValidationError) as exc_info:
            auth_service.admin_set_password(user["id"], LONG_PASSWORD)
        assert exc_info.value.code == "WEAK_PASSWORD"

    def test_set_role_promotes_and_demotes(self, auth_service, make_user, user_store):
        admin = make_user(role="admin")
        client = make_user()

        user, changed = auth_service.set_role(admin["id"], client["id"], "admin")
        assert changed is True
        assert user["role"] == "admin"
        assert_sanitized(user)

        user, changed = auth_service.set_role(admin["id"], client["id"], "admin")
        assert changed is False

        auth_service.set_role(admin["id"], client["id"], "client")
        assert user_store.users[client["id"]]["role"] == "client"

    def test_admin_cannot_demote_self(self, auth_service, make_user, user_store):
        admin = make_user(role="admin")
        make_user(role="admin")

        with pytest.raises(AuthorizationError) as exc_info:
            auth_service.set_role(admin["id"], admin["id"], "client")

        assert exc_info.value.code == "CANNOT_CHANGE_OWN_ROLE"
        assert user_store.users[admin["id"]]["role"] == "admin"

    def test_last_admin_cannot_be_demoted(self, auth_service, make_user, user_store):
        only_admin = make_user(role="admin")
        # An actor whose admin token outlived their own demotion
        former_admin = make_user()

        with pytest.raises(ValidationError) as exc_info:
            auth_service.set_role(former_admin["id"], only_admin["id"], "client")

        assert exc_info.value.code == "LAST_ADMIN"
        assert user_store.users[only_admin["id"]]["role"] == "admin"

    @pytest.mark.parametrize("role", [None, "", "superuser", "2fa-pending"])
    def test_invalid_role(self, auth_service, make_user, role):
        admin = make_user(role="admin")
        client = make_user()
        with pytest.raises(ValidationError) as exc_info:
            auth_service.set_role(admin["id"], client["id"], role)
        assert exc_info.value.code == "INVALID_ROLE"

    def test_set_role_unknown_user(self, auth_service, make_user):
        admin = make_user(role="admin")
        with pytest.raises(NotFoundError):
            auth_service.set_role(admin["id"], 999, "admin")

    def test_list_users_is_sanitized(self, auth_service, make_user):
        make_user()
        make_user()
        users = auth_service.list_users()
        assert len(users) == 2
        for user in users:
            assert_sanitized(user)
