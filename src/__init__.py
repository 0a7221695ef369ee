"""
Generation Catalyst client portal - authentication core.

This package provides the credential store, TOTP two-factor authentication,
JWT access/refresh tokens, email verification and password reset flows, and
the FastAPI application exposing them.
"""

__version__ = "0.1.0"
__author__ = "Generation Catalyst"
