"""
Health Check Endpoints

Health, readiness and liveness endpoints for container orchestration.
"""

import os
from typing import Any, Dict

from fastapi import APIRouter, Request, Response

from ...outbox.processor import get_outbox_processor
from ...timeutil import utcnow

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request) -> Dict[str, Any]:
    """
    Basic health check.

    Returns 200 if the service is running.
    """
    return {
        "status": "healthy",
        "service": request.app.state.runtime.name,
        "timestamp": utcnow().isoformat(),
        "version": os.getenv("APP_VERSION", "1.0.0")
    }


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """Liveness probe: the process is alive."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(request: Request, response: Response) -> Dict[str, Any]:
    """
    Readiness probe.

    Checks database connectivity and, for services with an outbox, whether
    the outbox processor runs in this instance.
    """
    runtime = request.app.state.runtime
    checks = {}
    all_healthy = True

    try:
        await runtime.db.fetchval("SELECT 1")
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {str(e)[:100]}"
        all_healthy = False

    if runtime.dispatcher is not None and runtime.config.outbox_enabled:
        processor = get_outbox_processor()
        if processor and processor.is_running:
            checks["outbox_processor"] = "running"
        else:
            checks["outbox_processor"] = "not running"

    if not all_healthy:
        response.status_code = 503

    return {
        "status": "ready" if all_healthy else "not_ready",
        "checks": checks,
        "timestamp": utcnow().isoformat()
    }
