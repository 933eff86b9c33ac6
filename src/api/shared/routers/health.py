"""
Health Check Endpoints

Provides health, readiness, and liveness endpoints for container orchestration.
"""

from datetime import datetime, timezone
from typing import Dict, Any
import os

from fastapi import APIRouter, Response

from ....core.database.adapter import get_database
from ....core.outbox.config import is_outbox_enabled, is_outbox_processor_enabled
from ....core.outbox.dispatcher import get_outbox_dispatcher

router = APIRouter(tags=["health"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """
    Basic health check.

    Returns 200 if the service is running.
    """
    return {
        "status": "healthy",
        "timestamp": _now(),
        "version": os.getenv("APP_VERSION", "1.0.0")
    }


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """Liveness probe. Returns 200 if the process is alive."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(response: Response) -> Dict[str, Any]:
    """
    Readiness probe.

    Returns 503 when the database is unreachable. The dispatcher state is
    reported but does not affect readiness, since API-only instances run
    with OUTBOX_PROCESSOR_ENABLED=false.
    """
    checks = {}
    all_healthy = True

    try:
        db = await get_database()
        await db.fetchval("SELECT 1")
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {str(e)[:100]}"
        all_healthy = False

    if is_outbox_enabled() and is_outbox_processor_enabled():
        dispatcher = get_outbox_dispatcher()
        checks["outbox_dispatcher"] = "running" if dispatcher and dispatcher.running else "not running"
    else:
        checks["outbox_dispatcher"] = "disabled"

    if not all_healthy:
        response.status_code = 503

    return {
        "status": "ready" if all_healthy else "not_ready",
        "checks": checks,
        "timestamp": _now()
    }
