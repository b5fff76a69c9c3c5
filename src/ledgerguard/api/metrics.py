"""
Prometheus metrics endpoint.

Security counters (auth outcomes, rate limit hits, CSRF rejections, audit
failures) in Prometheus text format.
"""

import structlog
from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="""
    Prometheus metrics endpoint in standard text format.

    **Key Metrics:**
    - auth_events_total{action,outcome} - Login, register and failure counts
    - rate_limit_hits_total{route_class} - Rejected requests per route class
    - csrf_failures_total{reason} - csrf_missing / csrf_invalid rejections
    - audit_write_failures_total{reason} - Audit events that were lost
    - audit_queue_depth - Audit events waiting to be written
    - http_request_duration_seconds - Request latency histogram
    """,
)
async def get_metrics(request: Request) -> Response:
    """Refresh the audit queue gauge, then render the collector registry."""
    metrics_collector = getattr(request.app.state, 'metrics', None)

    if not metrics_collector:
        logger.warning("Metrics collector not initialized")
        return Response(
            content="# Metrics collector not initialized\n",
            media_type=CONTENT_TYPE_LATEST,
        )

    audit_logger = getattr(request.app.state, "audit_logger", None)
    metrics_collector.update_system_metrics(audit_queue_depth=audit_logger.pending if audit_logger else 0)

    metrics_data = generate_latest(metrics_collector.registry)
    logger.debug("Metrics scraped successfully", size_bytes=len(metrics_data))

    return Response(
        content=metrics_data,
        media_type=CONTENT_TYPE_LATEST,
    )
