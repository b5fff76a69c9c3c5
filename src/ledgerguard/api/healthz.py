"""
Health check endpoints.

- /healthz: Liveness probe (always 200 if service alive)
- /readyz: Readiness probe (200 only if secrets are configured and the audit writer runs)
"""

from typing import Any, Dict

import structlog
from fastapi import APIRouter, Request, Response, status

from ledgerguard.core.health import HealthChecker
from ledgerguard.models.user import utcnow

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/healthz",
    status_code=200,
    summary="Liveness probe",
    description="""
    Liveness probe endpoint.

    Always returns 200 OK if the service is running.
    """,
)
async def liveness_check() -> Dict[str, Any]:
    """
    Liveness probe - always returns 200 if service is alive.
    """
    return {
        "status": "alive",
        "timestamp": utcnow().isoformat(),
        "service": "ledgerguard",
        "version": "0.1.0",
    }


@router.get(
    "/readyz",
    summary="Readiness probe",
    description="""
    Readiness probe endpoint.

    Returns 200 only if:
    - ENCRYPTION_KEY, JWT_SECRET, JWT_REFRESH_SECRET and SESSION_SECRET are set
    - the audit writer is running

    Returns 503 Service Unavailable otherwise.
    """,
)
async def readiness_check(request: Request, response: Response) -> Dict[str, Any]:
    checker = HealthChecker(getattr(request.app.state, "audit_logger", None))
    health_status = checker.check_all()

    if health_status.is_healthy:
        response.status_code = status.HTTP_200_OK
        return {
            "status": "ready",
            "timestamp": utcnow().isoformat(),
            "checks": health_status.checks,
        }

    logger.warning("Readiness check failed", failed_checks=health_status.failed_checks)
    response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {
        "status": "not_ready",
        "timestamp": utcnow().isoformat(),
        "checks": health_status.checks,
        "failed_checks": health_status.failed_checks,
    }
