"""
Pytest configuration and shared fixtures for client portal tests.

This module provides common test fixtures for:
- In-memory credential store (same contract as UserDB)
- Mock Redis client for rate limiting
- Recording email service
- Token issuer, AuthService and a TestClient wired to all of the above
"""
import os
import copy
import itertools
from datetime import datetime, timedelta, timezone

import pytest

# Must be set before src modules read them at import time
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-0123456789abcdef0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-0123456789abcdef012345678")
os.environ.setdefault("APP_ENV", "test")

# Add project root to Python path for `src.*` imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from fastapi.testclient import TestClient

from src.api.main import app
from src.api import deps
from src.auth.service import AuthService
from src.auth.tokens import TokenIssuer
from src.database.user_db import USER_COLUMNS, WRITABLE_COLUMNS, hash_password


TEST_PASSWORD = "Passw0rd!123"


# ============================================
# Credential Store Fake
# ============================================

class FakeUserDB:
    """
    In-memory stand-in for UserDB.

    Mirrors the real contract: lookups return copies or None, updates are
    patches, consume_* methods are conditional and report whether they won.
    """

    def __init__(self):
        self.users = {}
        self._ids = itertools.count(1)

    def _copy(self, user):
        return copy.deepcopy(user) if user is not None else None

    def _find(self, **criteria):
        for user in self.users.values():
            if all(user.get(k) == v for k, v in criteria.items()):
                return self._copy(user)
        return None

    def get_user_by_id(self, user_id):
        return self._copy(self.users.get(user_id))

    def get_user_by_username(self, username):
        return self._find(username=username.strip())

    def get_user_by_email(self, email):
        return self._find(email=email.lower().strip())

    def get_user_by_password_reset_token(self, token):
        return self._find(password_reset_token=token)

    def get_user_by_verification_token(self, token):
        return self._find(email_verification_token=token)

    def list_users(self):
        users = sorted(self.users.values(), key=lambda u: u["created_at"], reverse=True)
        return [self._copy(u) for u in users]

    def create_user(self, **fields):
        unknown = set(fields) - WRITABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown user columns: {sorted(unknown)}")

        email = fields["email"].lower().strip()
        for user in self.users.values():
            if user["email"] == email:
                raise ValueError("Email already registered")
            if user["username"] == fields["username"]:
                raise ValueError("Username already exists")

        now = datetime.now(timezone.utc)
        user = {column: None for column in USER_COLUMNS}
        user.update({
            "role": "client",
            "is_active": True,
            "email_verified": False,
            "two_factor_enabled": False,
            **fields,
        })
        user["id"] = next(self._ids)
        user["email"] = email
        user["two_factor_backup_codes"] = list(user.get("two_factor_backup_codes") or [])
        user["created_at"] = now
        user["updated_at"] = now
        self.users[user["id"]] = user
        return self._copy(user)

    def update_user(self, user_id, **fields):
        unknown = set(fields) - WRITABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown user columns: {sorted(unknown)}")
        user = self.users.get(user_id)
        if user is None:
            return None
        if "two_factor_backup_codes" in fields:
            fields["two_factor_backup_codes"] = list(fields["two_factor_backup_codes"] or [])
        user.update(fields)
        user["updated_at"] = datetime.now(timezone.utc)
        return self._copy(user)

    def consume_backup_code(self, user_id, expected_codes, remaining_codes):
        user = self.users.get(user_id)
        if user is None or user["two_factor_backup_codes"] != list(expected_codes):
            return False
        user["two_factor_backup_codes"] = list(remaining_codes)
        return True

    def consume_password_reset_token(self, user_id, token, password_hash):
        user = self.users.get(user_id)
        now = datetime.now(timezone.utc)
        if (
            user is None
            or user["password_reset_token"] != token
            or user["password_reset_expires"] is None
            or user["password_reset_expires"] <= now
        ):
            return False
        user.update(password_hash=password_hash, password_reset_token=None, password_reset_expires=None)
        return True

    def consume_verification_token(self, user_id, token):
        user = self.users.get(user_id)
        now = datetime.now(timezone.utc)
        if (
            user is None
            or user["email_verification_token"] != token
            or user["email_verification_expires"] is None
            or user["email_verification_expires"] <= now
        ):
            return False
        user.update(email_verified=True, email_verification_token=None, email_verification_expires=None)
        return True

    def demote_admin(self, user_id, role):
        user = self.users.get(user_id)
        admins = sum(1 for u in self.users.values() if u["role"] == "admin")
        if user is None or user["role"] != "admin" or admins <= 1:
            return False
        user.update(role=role, updated_at=datetime.now(timezone.utc))
        return True


class RecordingEmailService:
    """Collects outgoing emails instead of sending them."""

    def __init__(self, succeed=True):
        self.succeed = succeed
        self.sent = []

    def send_verification_email(self, to, name, token):
        self.sent.append(("verification", to, name, token))
        return self.succeed

    def send_password_reset_email(self, to, name, token):
        self.sent.append(("password_reset", to, name, token))
        return self.succeed

    def tokens_for(self, kind, to):
        return [token for k, addr, _, token in self.sent if k == kind and addr == to]


# ============================================
# Store / Service Fixtures
# ============================================

@pytest.fixture
def user_store():
    return FakeUserDB()


@pytest.fixture
def email_outbox():
    return RecordingEmailService()


@pytest.fixture
def token_issuer():
    return TokenIssuer(
        access_secret=os.environ["JWT_ACCESS_SECRET"],
        refresh_secret=os.environ["JWT_REFRESH_SECRET"],
    )


@pytest.fixture
def auth_service(user_store, token_issuer, email_outbox):
    return AuthService(user_store, token_issuer, email_outbox)


@pytest.fixture
def make_user(user_store):
    """
    Factory for stored users. Defaults: active, verified client, 2FA off,
    password TEST_PASSWORD.
    """
    counter = itertools.count(1)

    def _make(**overrides):
        n = next(counter)
        fields = {
            "username": f"client{n}",
            "email": f"client{n}@example.com",
            "password_hash": hash_password(TEST_PASSWORD),
            "first_name": "Test",
            "last_name": f"Client{n}",
            "email_verified": True,
        }
        fields.update(overrides)
        return user_store.create_user(**fields)

    return _make


@pytest.fixture
def expired():
    return datetime.now(timezone.utc) - timedelta(minutes=1)


# ============================================
# Redis Fixtures
# ============================================

@pytest.fixture
def mock_redis_client():
    """
    Mock Redis client for rate limiting.
    Implements incr/ttl/expire and pipelines over an in-memory store.
    """
    class MockPipeline:
        def __init__(self, client):
            self.client = client
            self.ops = []

        def incr(self, key):
            self.ops.append(("incr", key))
            return self

        def ttl(self, key):
            self.ops.append(("ttl", key))
            return self

        def execute(self):
            results = [getattr(self.client, op)(key) for op, key in self.ops]
            self.ops = []
            return results

    class MockRedisClient:
        def __init__(self):
            self.store = {}
            self.expiry = {}

        def get(self, key):
            return self.store.get(key)

        def delete(self, key):
            self.store.pop(key, None)
            self.expiry.pop(key, None)
            return True

        def incr(self, key):
            if key not in self.store:
                self.store[key] = 0
            self.store[key] = int(self.store[key]) + 1
            return self.store[key]

        def expire(self, key, seconds):
            self.expiry[key] = seconds
            return True

        def ttl(self, key):
            if key not in self.store:
                return -2
            return self.expiry.get(key, -1)

        def pipeline(self):
            return MockPipeline(self)

        def ping(self):
            return True

    return MockRedisClient()


# ============================================
# API Fixtures
# ============================================

def no_rate_limit():
    """No-op rate limit check for tests."""
    return None


@pytest.fixture
def api_client(user_store, token_issuer, email_outbox):
    """TestClient with store, issuer and email overridden and rate limits off."""
    app.dependency_overrides[deps.get_db] = lambda: user_store
    app.dependency_overrides[deps.get_tokens] = lambda: token_issuer
    app.dependency_overrides[deps.get_email] = lambda: email_outbox
    for check in (
        deps.check_auth_rate_limit,
        deps.check_two_factor_rate_limit,
        deps.check_password_reset_rate_limit,
        deps.check_email_verification_rate_limit,
    ):
        app.dependency_overrides[check] = no_rate_limit

    client = TestClient(app)
    yield client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_header(token_issuer):
    """Build a bearer header for a stored user."""
    def _header(user):
        return {"Authorization": f"Bearer {token_issuer.issue_access(user)}"}
    return _header

