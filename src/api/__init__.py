"""
Client portal REST API.

FastAPI application for authentication, 2FA enrollment and admin user management.
"""
from .main import app, create_app

__all__ = ["app", "create_app"]
