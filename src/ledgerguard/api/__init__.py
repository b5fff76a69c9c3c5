"""
API endpoints package.

Contains FastAPI routers for all service endpoints:
- /v1/csrf-token - CSRF token bootstrap
- /v1/auth/* - Registration, login, token rotation and password flows
- /v1/audit/* - Own audit events and security summary
- /v1/transactions - Encrypted financial records
- /metrics - Prometheus metrics
- /healthz, /readyz - Health checks
"""
from .audit import router as audit_router
from .auth import router as auth_router
from .csrf import router as csrf_router
from .healthz import router as healthz_router
from .metrics import router as metrics_router
from .transactions import router as transactions_router

__all__ = [
    "audit_router",
    "auth_router",
    "csrf_router",
    "healthz_router",
    "metrics_router",
    "transactions_router",
]
