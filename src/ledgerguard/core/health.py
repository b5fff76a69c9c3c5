"""
Readiness checks.

The service is ready when all secret material is configured and usable and
the audit writer is running.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from ..config import get_settings
from .audit import AuditLogger
from .crypto import get_field_cipher
from .exceptions import ConfigurationError

logger = structlog.get_logger(__name__)


@dataclass
class HealthCheck:
    """Individual health check result."""
    name: str
    status: str  # "healthy", "unhealthy"
    message: str
    details: Dict[str, Any]
    last_check: float


@dataclass
class HealthStatus:
    """Overall health status."""
    is_healthy: bool
    checks: Dict[str, HealthCheck]
    failed_checks: List[str]
    timestamp: float


class HealthChecker:
    """Runs the readiness checks."""

    def __init__(self, audit_logger: Optional[AuditLogger] = None) -> None:
        self.audit_logger = audit_logger

    def check_all(self) -> HealthStatus:
        checks = {check.name: check for check in (self._check_secrets(), self._check_audit_writer())}
        failed_checks = [name for name, check in checks.items() if check.status != "healthy"]

        return HealthStatus(
            is_healthy=not failed_checks,
            checks=checks,
            failed_checks=failed_checks,
            timestamp=time.time(),
        )

    def _check_secrets(self) -> HealthCheck:
        try:
            get_settings().secrets.require_all()
            get_field_cipher()
        except ConfigurationError as e:
            return HealthCheck(
                name="secrets",
                status="unhealthy",
                message=str(e),
                details=e.details,
                last_check=time.time(),
            )

        return HealthCheck(
            name="secrets",
            status="healthy",
            message="All secrets configured",
            details={},
            last_check=time.time(),
        )

    def _check_audit_writer(self) -> HealthCheck:
        if self.audit_logger is None or not self.audit_logger.is_healthy():
            return HealthCheck(
                name="audit",
                status="unhealthy",
                message="Audit writer is not running",
                details={},
                last_check=time.time(),
            )

        return HealthCheck(
            name="audit",
            status="healthy",
            message="Audit writer is running",
            details={"pending_events": self.audit_logger.pending},
            last_check=time.time(),
        )
