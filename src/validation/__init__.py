"""
Input validation utilities for the client portal.

This package provides:
- Password strength checks
- Username and email format checks
- Input sanitising
"""
from .inputs import (
    validate_password,
    validate_username,
    validate_email,
    sanitize_input,
    normalize_email,
)

__all__ = [
    "validate_password",
    "validate_username",
    "validate_email",
    "sanitize_input",
    "normalize_email",
]
