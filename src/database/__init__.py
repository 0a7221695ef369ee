"""
Database access for the client portal.

This package provides:
- user_db: PostgreSQL credential store and bcrypt password hashing
"""
from .user_db import UserDB, get_user_db, hash_password, verify_password

__all__ = ["UserDB", "get_user_db", "hash_password", "verify_password"]
