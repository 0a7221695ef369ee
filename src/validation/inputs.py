"""
Input validation for account data.

Password strength, username format, email format and light sanitising of
free-text fields. Validators return results instead of raising so callers can
decide which error to surface.
"""
import re
from typing import List, Optional, Tuple

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
SPECIAL_CHARACTERS = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")

MIN_PASSWORD_LENGTH = 8
# bcrypt only reads the first 72 bytes and newer releases refuse longer input
MAX_PASSWORD_BYTES = 72
MIN_USERNAME_LENGTH = 3
MAX_USERNAME_LENGTH = 20


def validate_password(password: str) -> Tuple[bool, List[str]]:
    """
    Check a password against the strength policy.

    Policy: at least 8 characters with an uppercase letter, a lowercase
    letter, a digit and a special character, and no more than 72 bytes
    once UTF-8 encoded.

    Returns:
        Tuple of (valid, errors). errors is empty when valid.
    """
    errors = []

    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        errors.append(f"Password must be no more than {MAX_PASSWORD_BYTES} bytes long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if not SPECIAL_CHARACTERS.search(password):
        errors.append("Password must contain at least one special character")

    return len(errors) == 0, errors


def validate_username(username: str) -> Tuple[bool, Optional[str]]:
    """
    Check username length and character set.

    Returns:
        Tuple of (valid, error message or None).
    """
    if len(username) < MIN_USERNAME_LENGTH:
        return False, f"Username must be at least {MIN_USERNAME_LENGTH} characters long"
    if len(username) > MAX_USERNAME_LENGTH:
        return False, f"Username must be no more than {MAX_USERNAME_LENGTH} characters long"
    if not USERNAME_PATTERN.match(username):
        return False, "Username can only contain letters, numbers, underscores, and hyphens"
    return True, None


def validate_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email))


def sanitize_input(value: str) -> str:
    """Trim whitespace and drop angle brackets."""
    return value.strip().replace("<", "").replace(">", "")


def normalize_email(email: str) -> str:
    return sanitize_input(email).lower()
