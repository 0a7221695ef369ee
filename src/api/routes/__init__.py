"""
API Routes for the client portal.
"""
from .auth import router as auth_router
from .two_factor import router as two_factor_router
from .admin import router as admin_router
from .health import router as health_router

__all__ = [
    "auth_router",
    "two_factor_router",
    "admin_router",
    "health_router",
]
