"""
Health check and monitoring endpoints.
"""

import time

from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from audit_ledger.config import Settings
from audit_ledger.events import utc_now
from audit_ledger.models import HealthStatus
from audit_ledger.service import AuditService, get_app_settings, get_audit_service

router = APIRouter(tags=["monitoring"])

# Track application start time
START_TIME = time.time()


@router.get("/health", response_model=HealthStatus)
async def health_check(
    audit: AuditService = Depends(get_audit_service),
    settings: Settings = Depends(get_app_settings)
):
    """
    Health check endpoint.

    Returns the overall health status of the service including:
    - Database connectivity
    - Pending queue depth
    - Whether the integrity hold is set
    - Service uptime

    The service reports "degraded" while persistence is failing or the
    integrity hold is set.
    """
    db_healthy = await audit.store.health_check()
    integrity_hold = await audit.store.get_integrity_hold() if db_healthy else False
    queue = audit.queue.stats()

    if not db_healthy:
        status = "unhealthy"
    elif integrity_hold or queue.consecutive_failures:
        status = "degraded"
    else:
        status = "healthy"

    return HealthStatus(
        status=status,
        version=settings.app_version,
        database="connected" if db_healthy else "disconnected",
        queue_depth=queue.depth,
        integrity_hold=integrity_hold,
        uptime_seconds=time.time() - START_TIME,
        timestamp=utc_now()
    )


@router.get("/health/live")
async def liveness_check():
    """
    Kubernetes liveness probe.

    Simple check that the application is running.
    Does not check dependencies.
    """
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(audit: AuditService = Depends(get_audit_service)):
    """
    Kubernetes readiness probe.

    Checks that the application is ready to receive traffic.
    Verifies database connectivity.
    """
    db_healthy = await audit.store.health_check()

    if not db_healthy:
        return Response(
            content='{"status": "not ready", "reason": "database disconnected"}',
            status_code=503,
            media_type="application/json"
        )

    return {"status": "ready"}


@router.get("/metrics")
async def metrics(settings: Settings = Depends(get_app_settings)):
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format including:
    - Enqueued, persisted and dropped events
    - Queue depth and drain latency
    - Persistence failures and detector alerts
    - Compliance job runs
    """
    if not settings.enable_metrics:
        return Response(status_code=404)

    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


@router.get("/info")
async def info(settings: Settings = Depends(get_app_settings)):
    """
    Service information endpoint.

    Returns basic information about the running service.
    """
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "uptime_seconds": time.time() - START_TIME
    }
