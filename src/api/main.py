"""
Client Portal REST API - Main Application.

FastAPI application serving the authentication core of the Generation
Catalyst client portal.

Usage:
    # Development
    uvicorn src.api.main:app --reload --port 8000

    # Production
    uvicorn src.api.main:app --host 0.0.0.0 --port 8000 --workers 4
"""
import os
import time
import uuid
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from .cookies import clear_refresh_cookie
from .routes import auth_router, two_factor_router, admin_router, health_router
from ..errors import PortalError, RateLimitError

# Configure logging with request context support
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"
)

# Custom filter to add request_id to all log records
class RequestIdFilter(logging.Filter):
    """Add request_id to log records."""
    def filter(self, record):
        if not hasattr(record, 'request_id'):
            record.request_id = '-'
        return True

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format=LOG_FORMAT,
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(RequestIdFilter())
logger = logging.getLogger(__name__)

# API metadata
API_TITLE = "Generation Catalyst Client Portal API"
API_DESCRIPTION = """
**Client portal authentication**

## Authentication

1. Register: `POST /auth/register`, then verify the emailed link
2. Login: `POST /auth/login`
3. If `requires2FA` is true: `POST /auth/verify-2fa` with the `userId`, `tempToken` and a TOTP code
4. Use token: `Authorization: Bearer <accessToken>`
5. Renew: `POST /auth/refresh` (reads the `refreshToken` cookie)

## Rate Limits (per IP)

- Login / register: 5 per 15 minutes
- 2FA verification: 5 per 15 minutes
- Password reset: 3 per hour
- Verification email: 3 per 15 minutes
"""
API_VERSION = os.getenv("APP_VERSION", "0.1.0")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Runs on startup and shutdown.
    """
    logger.info(f"Starting client portal API v{API_VERSION}")

    try:
        from ..database.user_db import get_user_db
        get_user_db().init_schema()
    except Exception as e:
        logger.warning(f"Database initialization skipped: {e}")

    yield

    logger.info("Shutting down client portal API")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance.
    """
    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS middleware (credentials on, for the refresh cookie)
    allowed_origins = os.getenv("CORS_ORIGINS", "http://localhost:5000,http://localhost:5173").split(",")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request tracking and security headers middleware
    @app.middleware("http")
    async def add_request_tracking_and_security(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id

        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Request failed: {e}", exc_info=True, extra={"request_id": request_id})
            raise

        process_time = (time.time() - start_time) * 1000

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time-Ms"] = f"{process_time:.2f}"

        # Skip health checks to reduce noise
        if not request.url.path.startswith("/health"):
            logger.info(
                f"{request.method} {request.url.path} "
                f"-> {response.status_code} ({process_time:.1f}ms)",
                extra={"request_id": request_id},
            )

        # Security headers
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        if os.getenv("APP_ENV", "development").lower() == "production":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    # Exception handlers
    @app.exception_handler(PortalError)
    async def portal_exception_handler(request: Request, exc: PortalError):
        response = JSONResponse(status_code=exc.status_code, content=exc.to_dict())

        if isinstance(exc, RateLimitError):
            response.headers["Retry-After"] = str(exc.retry_after)
            response.headers["X-RateLimit-Limit"] = str(exc.limit)
            response.headers["X-RateLimit-Remaining"] = "0"

        if exc.clear_refresh_cookie:
            clear_refresh_cookie(response)
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = " -> ".join(str(l) for l in error["loc"])
            errors.append(f"{loc}: {error['msg']}")

        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "Bad Request",
                "detail": "; ".join(errors),
                "code": "VALIDATION_ERROR",
            },
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, 'request_id', 'unknown')
        logger.error(f"Unhandled exception: {exc}", exc_info=True, extra={"request_id": request_id})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal Server Error",
                "request_id": request_id,
                "detail": str(exc) if os.getenv("APP_ENV") == "development" else None,
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(two_factor_router)
    app.include_router(admin_router)

    # Root endpoint
    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": API_TITLE,
            "version": API_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "src.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
