"""
Health Check Endpoints.

Provides health status for the API and its dependencies.
"""
import os
import time
import logging
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from ..models import HealthStatus
from ..deps import get_db, get_redis_client

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["Health"])

# Version from environment or default
VERSION = os.getenv("APP_VERSION", "0.1.0")


def _check_postgres() -> str:
    start = time.time()
    db = get_db()
    with db.get_session() as session:
        session.execute(text("SELECT 1"))
    latency = (time.time() - start) * 1000
    return f"healthy ({latency:.1f}ms)"


@router.get("", response_model=HealthStatus)
def health_check():
    """
    Basic health check endpoint.

    Returns overall system status.
    """
    services = {}
    overall_healthy = True

    try:
        services["postgresql"] = _check_postgres()
    except Exception as e:
        services["postgresql"] = f"unhealthy: {str(e)}"
        overall_healthy = False

    try:
        redis_client = get_redis_client()
        if redis_client:
            start = time.time()
            redis_client.ping()
            latency = (time.time() - start) * 1000
            services["redis"] = f"healthy ({latency:.1f}ms)"
        else:
            services["redis"] = "fallback_mode (in-memory)"
    except Exception as e:
        services["redis"] = f"unhealthy: {str(e)}"
        # Rate limiting falls back to memory, so Redis is not critical

    return HealthStatus(
        status="healthy" if overall_healthy else "unhealthy",
        version=VERSION,
        services=services,
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/live")
def liveness():
    """
    Kubernetes liveness probe.

    Returns 200 if the service is running.
    """
    return {"status": "alive"}


@router.get("/ready")
def readiness():
    """Readiness probe: 503 until PostgreSQL answers."""
    try:
        _check_postgres()
        return {"status": "ready"}
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "not ready"})
