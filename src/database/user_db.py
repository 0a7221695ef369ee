"""
PostgreSQL Credential Store for portal users.

This module provides connection management and operations for:
- User records (identity, password hash, activation and verification flags)
- Two-factor secrets and hashed backup codes
- Email verification and password reset tokens

Lookups that find nothing return None. Callers rely on that to build uniform
"don't reveal existence" responses.
"""
import os
import json
import logging
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from contextlib import contextmanager

import bcrypt
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool

from ..utils.secrets import get_postgres_password

logger = logging.getLogger(__name__)

# bcrypt cost factor. Each +1 doubles the work per hash (and per login).
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

USER_COLUMNS = (
    "id",
    "username",
    "email",
    "role",
    "first_name",
    "last_name",
    "phone_number",
    "password_hash",
    "is_active",
    "email_verified",
    "two_factor_enabled",
    "two_factor_secret",
    "two_factor_backup_codes",
    "email_verification_token",
    "email_verification_expires",
    "password_reset_token",
    "password_reset_expires",
    "last_login_at",
    "created_at",
    "updated_at",
)

# Columns a caller may set through create_user/update_user
WRITABLE_COLUMNS = frozenset(USER_COLUMNS) - {"id", "created_at", "updated_at"}

_SELECT_USER = f"SELECT {', '.join(USER_COLUMNS)} FROM users"


def _encode_codes(codes: Optional[List[str]]) -> Optional[str]:
    return json.dumps(codes) if codes else None


def _row_to_user(row) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    user = dict(row)
    raw_codes = user.get("two_factor_backup_codes")
    user["two_factor_backup_codes"] = json.loads(raw_codes) if raw_codes else []
    return user


class UserDB:
    """
    PostgreSQL connection manager for user credentials.

    Example usage:
        user_db = UserDB()

        user = user_db.create_user(
            username="jdoe", email="jdoe@example.com", password_hash=hash_password("..."),
        )
        user_db.update_user(user["id"], last_login_at=datetime.now(timezone.utc))
    """

    def __init__(self, connection_string: Optional[str] = None):
        """
        Initialize database connection.

        Args:
            connection_string: PostgreSQL connection string.
                             Uses environment variables if not provided.
        """
        if connection_string is None:
            host = os.getenv("POSTGRES_HOST", "localhost")
            port = os.getenv("POSTGRES_PORT", "5432")
            db = os.getenv("POSTGRES_DB", "catalyst_portal")
            user = os.getenv("POSTGRES_USER", "portal_user")
            password = get_postgres_password()
            connection_string = f"postgresql://{user}:{password}@{host}:{port}/{db}"

        self.engine = create_engine(
            connection_string,
            poolclass=QueuePool,
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            pool_pre_ping=True,
            pool_recycle=300,
        )
        self.Session = sessionmaker(bind=self.engine)

    @contextmanager
    def get_session(self):
        """
        Get a database session with automatic cleanup.

        Usage:
            with user_db.get_session() as session:
                result = session.execute(query)
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ==========================================
    # Lookups
    # ==========================================

    def _get_user_where(self, clause: str, params: Dict[str, Any]) -> Optional[Dict]:
        with self.get_session() as session:
            row = session.execute(
                text(f"{_SELECT_USER} WHERE {clause}"),
                params,
            ).mappings().fetchone()
            return _row_to_user(row)

    def get_user_by_id(self, user_id: int) -> Optional[Dict]:
        return self._get_user_where("id = :user_id", {"user_id": user_id})

    def get_user_by_username(self, username: str) -> Optional[Dict]:
        return self._get_user_where("username = :username", {"username": username.strip()})

    def get_user_by_email(self, email: str) -> Optional[Dict]:
        return self._get_user_where("email = :email", {"email": email.lower().strip()})

    def get_user_by_password_reset_token(self, token: str) -> Optional[Dict]:
        return self._get_user_where("password_reset_token = :token", {"token": token})

    def get_user_by_verification_token(self, token: str) -> Optional[Dict]:
        return self._get_user_where("email_verification_token = :token", {"token": token})

    def list_users(self) -> List[Dict]:
        """All users, newest first."""
        with self.get_session() as session:
            rows = session.execute(
                text(f"{_SELECT_USER} ORDER BY created_at DESC")
            ).mappings().fetchall()
            return [_row_to_user(row) for row in rows]

    # ==========================================
    # Writes
    # ==========================================

    def create_user(self, **fields: Any) -> Dict:
        """
        Create a new user.

        Args:
            **fields: Column values. username and email are required.

        Returns:
            The created user dict.

        Raises:
            ValueError: If username or email already exists, or a column is unknown.
        """
        unknown = set(fields) - WRITABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown user columns: {sorted(unknown)}")

        now = datetime.now(timezone.utc)
        values = {
            "role": "client",
            "is_active": True,
            "email_verified": False,
            "two_factor_enabled": False,
            **fields,
        }
        values["email"] = values["email"].lower().strip()
        values["two_factor_backup_codes"] = _encode_codes(values.get("two_factor_backup_codes"))
        values["created_at"] = now
        values["updated_at"] = now

        columns = list(values)
        with self.get_session() as session:
            existing = session.execute(
                text("SELECT username, email FROM users WHERE username = :username OR email = :email"),
                {"username": values["username"], "email": values["email"]},
            ).fetchone()

            if existing:
                if existing[1] == values["email"]:
                    raise ValueError("Email already registered")
                raise ValueError("Username already exists")

            row = session.execute(
                text(f"""
                    INSERT INTO users ({', '.join(columns)})
                    VALUES ({', '.join(':' + c for c in columns)})
                    RETURNING {', '.join(USER_COLUMNS)}
                """),
                values,
            ).mappings().fetchone()
            user = _row_to_user(row)

        logger.info(f"Created user: {user['username']} (id={user['id']})")
        return user

    def update_user(self, user_id: int, **fields: Any) -> Optional[Dict]:
        """
        Patch a user: only the given columns change.

        Returns:
            The updated user dict, or None if the user does not exist.

        Raises:
            ValueError: If a column is unknown.
        """
        unknown = set(fields) - WRITABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown user columns: {sorted(unknown)}")

        values = dict(fields)
        if "two_factor_backup_codes" in values:
            values["two_factor_backup_codes"] = _encode_codes(values["two_factor_backup_codes"])
        if "email" in values:
            values["email"] = values["email"].lower().strip()
        values["updated_at"] = datetime.now(timezone.utc)

        assignments = ", ".join(f"{column} = :{column}" for column in values)
        with self.get_session() as session:
            row = session.execute(
                text(f"""
                    UPDATE users SET {assignments}
                    WHERE id = :user_id
                    RETURNING {', '.join(USER_COLUMNS)}
                """),
                {**values, "user_id": user_id},
            ).mappings().fetchone()
            return _row_to_user(row)

    def consume_backup_code(
        self,
        user_id: int,
        expected_codes: List[str],
        remaining_codes: List[str],
    ) -> bool:
        """
        Replace the backup-code list only if it still equals expected_codes.

        Two requests racing on the same code both read the same list; only the
        first UPDATE matches, the second sees rowcount 0.

        Returns:
            True if this caller's update won.
        """
        with self.get_session() as session:
            result = session.execute(
                text("""
                    UPDATE users
                    SET two_factor_backup_codes = :remaining, updated_at = :now
                    WHERE id = :user_id AND two_factor_backup_codes = :expected
                """),
                {
                    "user_id": user_id,
                    "expected": _encode_codes(expected_codes),
                    "remaining": _encode_codes(remaining_codes),
                    "now": datetime.now(timezone.utc),
                },
            )
            consumed = result.rowcount == 1

        if consumed:
            logger.info(f"Consumed backup code for user {user_id}, {len(remaining_codes)} remaining")
        return consumed

    def consume_password_reset_token(self, user_id: int, token: str, password_hash: str) -> bool:
        """
        Set a new password hash and clear the reset token in one statement.

        Matches only while the token is still stored and unexpired.
        """
        now = datetime.now(timezone.utc)
        with self.get_session() as session:
            result = session.execute(
                text("""
                    UPDATE users
                    SET password_hash = :password_hash,
                        password_reset_token = NULL,
                        password_reset_expires = NULL,
                        updated_at = :now
                    WHERE id = :user_id
                      AND password_reset_token = :token
                      AND password_reset_expires > :now
                """),
                {"user_id": user_id, "token": token, "password_hash": password_hash, "now": now},
            )
            return result.rowcount == 1

    def consume_verification_token(self, user_id: int, token: str) -> bool:
        """Mark the email verified and clear the verification token in one statement."""
        now = datetime.now(timezone.utc)
        with self.get_session() as session:
            result = session.execute(
                text("""
                    UPDATE users
                    SET email_verified = TRUE,
                        email_verification_token = NULL,
                        email_verification_expires = NULL,
                        updated_at = :now
                    WHERE id = :user_id
                      AND email_verification_token = :token
                      AND email_verification_expires > :now
                """),
                {"user_id": user_id, "token": token, "now": now},
            )
            return result.rowcount == 1

    def demote_admin(self, user_id: int, role: str) -> bool:
        """
        Move an admin to another role unless they are the only admin left.

        The admin count is checked inside the UPDATE, so the last admin can
        never be demoted by this call.

        Returns:
            True if the role changed.
        """
        with self.get_session() as session:
            result = session.execute(
                text("""
                    UPDATE users
                    SET role = :role, updated_at = :now
                    WHERE id = :user_id
                      AND role = 'admin'
                      AND (SELECT COUNT(*) FROM users WHERE role = 'admin') > 1
                """),
                {"user_id": user_id, "role": role, "now": datetime.now(timezone.utc)},
            )
            demoted = result.rowcount == 1

        if demoted:
            logger.info(f"User {user_id} demoted from admin to {role}")
        return demoted

    # ==========================================
    # Schema Initialization
    # ==========================================

    def init_schema(self) -> None:
        """
        Initialize database schema (create tables if not exist).

        Call this once during application setup.
        """
        with self.get_session() as session:
            session.execute(text("""
                CREATE TABLE IF NOT EXISTS users (
                    id SERIAL PRIMARY KEY,
                    username VARCHAR(64) UNIQUE NOT NULL,
                    email VARCHAR(255) UNIQUE NOT NULL,
                    role VARCHAR(20) NOT NULL DEFAULT 'client',
                    first_name VARCHAR(100),
                    last_name VARCHAR(100),
                    phone_number VARCHAR(32),
                    password_hash VARCHAR(255),
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
                    two_factor_secret VARCHAR(64),
                    two_factor_backup_codes TEXT,
                    email_verification_token VARCHAR(128),
                    email_verification_expires TIMESTAMP WITH TIME ZONE,
                    password_reset_token VARCHAR(128),
                    password_reset_expires TIMESTAMP WITH TIME ZONE,
                    last_login_at TIMESTAMP WITH TIME ZONE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    CONSTRAINT two_factor_requires_secret
                        CHECK (NOT two_factor_enabled OR two_factor_secret IS NOT NULL)
                )
            """))

            session.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_users_reset_token ON users(password_reset_token)
            """))
            session.execute(text("""
                CREATE INDEX IF NOT EXISTS idx_users_verification_token ON users(email_verification_token)
            """))

        logger.info("Database schema initialized")


# ==========================================
# Password Hashing Utilities
# ==========================================

def hash_password(password: str, rounds: Optional[int] = None) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plain text password.
        rounds: Cost factor override (defaults to BCRYPT_ROUNDS).

    Returns:
        Bcrypt hash string.
    """
    salt = bcrypt.gensalt(rounds=rounds or BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    """
    Verify a password against its hash.

    Returns:
        True if password matches, False otherwise (including a missing
        or malformed hash).
    """
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(
            password.encode('utf-8'),
            password_hash.encode('utf-8')
        )
    except ValueError:
        return False


# Singleton instance
_user_db_instance: Optional[UserDB] = None


def get_user_db() -> UserDB:
    """
    Get singleton UserDB instance.

    Returns:
        UserDB instance.
    """
    global _user_db_instance
    if _user_db_instance is None:
        _user_db_instance = UserDB()
    return _user_db_instance
