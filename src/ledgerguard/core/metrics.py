"""
Prometheus metrics collection.

Each collector owns its CollectorRegistry, so building the app more than
once in a process never registers the same metric name twice.
"""

import time
from typing import Optional

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info

logger = structlog.get_logger(__name__)


class MetricsCollector:
    """
    Centralized metrics collection for LedgerGuard.

    Counters only ever carry bounded labels (route class, action, reason);
    user ids, IPs and tokens never become label values.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()

        # Service info
        self.service_info = Info(
            "ledgerguard_service",
            "LedgerGuard service information",
            registry=self.registry,
        )
        self.service_info.info({
            "version": "0.1.0",
            "service": "ledgerguard",
        })

        # Request metrics
        self.requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry,
        )

        self.request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry,
        )

        # Security metrics
        self.auth_events_total = Counter(
            "auth_events_total",
            "Authentication outcomes",
            ["action", "outcome"],
            registry=self.registry,
        )

        self.rate_limit_hits_total = Counter(
            "rate_limit_hits_total",
            "Requests rejected by the rate limiter",
            ["route_class"],
            registry=self.registry,
        )

        self.csrf_failures_total = Counter(
            "csrf_failures_total",
            "Requests rejected by the CSRF guard",
            ["reason"],
            registry=self.registry,
        )

        self.suspicious_requests_total = Counter(
            "suspicious_requests_total",
            "Requests flagged by intrusion heuristics",
            registry=self.registry,
        )

        # Audit metrics
        self.audit_events_total = Counter(
            "audit_events_total",
            "Audit events persisted",
            ["severity"],
            registry=self.registry,
        )

        self.audit_write_failures_total = Counter(
            "audit_write_failures_total",
            "Audit events that could not be persisted",
            ["reason"],
            registry=self.registry,
        )

        self.audit_queue_depth = Gauge(
            "audit_queue_depth",
            "Audit events waiting to be written",
            registry=self.registry,
        )

        # System metrics
        self.uptime_seconds = Gauge(
            "uptime_seconds",
            "Service uptime in seconds",
            registry=self.registry,
        )

        # Track start time for uptime calculation
        self._start_time = time.time()

    def record_request(
        self,
        method: str,
        endpoint: str,
        status_code: int,
        duration_seconds: float
    ) -> None:
        """Record HTTP request metrics."""
        self.requests_total.labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self.request_duration.labels(
            method=method,
            endpoint=endpoint
        ).observe(duration_seconds)

    def record_auth_event(self, action: str, success: bool) -> None:
        self.auth_events_total.labels(action=action, outcome="success" if success else "failure").inc()

    def record_rate_limit_hit(self, route_class: str) -> None:
        self.rate_limit_hits_total.labels(route_class=route_class).inc()

    def record_csrf_failure(self, reason: str) -> None:
        self.csrf_failures_total.labels(reason=reason).inc()

    def record_suspicious_request(self) -> None:
        self.suspicious_requests_total.inc()

    def record_audit_event(self, severity: str) -> None:
        self.audit_events_total.labels(severity=severity).inc()

    def record_audit_failure(self, reason: str) -> None:
        """Audit error channel counter."""
        self.audit_write_failures_total.labels(reason=reason).inc()

    def update_system_metrics(self, audit_queue_depth: int = 0) -> None:
        """Update system-level metrics."""
        self.audit_queue_depth.set(audit_queue_depth)
        self.uptime_seconds.set(time.time() - self._start_time)


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get or create the global metrics collector."""
    global _metrics_collector

    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()

    return _metrics_collector
