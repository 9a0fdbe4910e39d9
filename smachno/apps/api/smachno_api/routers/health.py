"""Health check endpoints."""

import logging

from fastapi import APIRouter, Response, status
from pydantic import BaseModel
from sqlalchemy import text

from smachno_api.config.env import get_billing_settings
from smachno_api.db import redis_client
from smachno_api.db.session import engine

router = APIRouter()
API_VERSION = "0.1.0"
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    services: dict[str, str]


def check_database() -> str:
    """Check database connectivity.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "up"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return f"down: {str(e)[:50]}"


def check_redis() -> str:
    """Check Redis connectivity (only when the guard runs on Redis)."""
    if get_billing_settings().generation_guard_backend != "redis":
        return "disabled"
    try:
        redis_client.get_redis().ping()
        return "up"
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return f"down: {str(e)[:50]}"


def _services() -> dict[str, str]:
    return {
        "api": "up",
        "database": check_database(),
        "redis": check_redis(),
    }


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Health check endpoint.

    Returns service status and dependency health.
    Always returns 200 OK (use /readyz for a gating check).
    """
    return HealthResponse(status="healthy", version=API_VERSION, services=_services())


@router.get("/healthz")
async def liveness() -> dict:
    """Liveness check. No dependency checks."""
    return {"status": "ok"}


@router.get("/")
async def root() -> dict:
    return {"status": "ok", "service": "smachno-api"}


@router.get("/readyz", response_model=HealthResponse)
async def readiness_check(response: Response) -> HealthResponse:
    """
    Readiness check endpoint.

    Returns 503 if any dependency is down.
    """
    services = _services()
    any_down = any(svc_status.startswith("down") for svc_status in services.values())

    if any_down:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", version=API_VERSION, services=services)

    return HealthResponse(status="ready", version=API_VERSION, services=services)
