"""
LedgerGuard FastAPI application.

Wires the security components into one app: secret checks at startup, the
audit writer for the lifetime of the process, error mapping and the /v1
routers.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict

import structlog
from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ledgerguard.api import audit_router, auth_router, csrf_router, healthz_router, metrics_router, transactions_router
from ledgerguard.api.deps import flag_suspicious_activity
from ledgerguard.config import Settings, get_settings
from ledgerguard.core.audit import build_audit_logger
from ledgerguard.core.exceptions import ConfigurationError, LedgerGuardException
from ledgerguard.core.metrics import MetricsCollector
from ledgerguard.core.storage import get_store


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging for the application."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
    )

    # Silence the verbose watchfiles logger
    logging.getLogger("watchfiles").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def create_lifespan_handler(settings: Settings) -> Any:
    """Create a lifespan handler with access to settings."""
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        FastAPI lifespan context manager.

        Refuses to start without secret material, then runs the audit writer
        for the lifetime of the app.
        """
        logger = structlog.get_logger(__name__)
        logger.info("Starting LedgerGuard service", version=app.version)

        try:
            settings.secrets.require_all()
        except ConfigurationError as e:
            logger.critical("Refusing to start: secret material missing", error=str(e), **e.details)
            raise

        metrics_collector = MetricsCollector()
        app.state.metrics = metrics_collector

        audit_logger = build_audit_logger(
            get_store(),
            metrics=metrics_collector,
            max_queue_size=settings.audit.queue_max_size,
        )
        app.state.audit_logger = audit_logger
        await audit_logger.start()

        try:
            logger.info("LedgerGuard service started successfully")
            yield
        finally:
            logger.info("Shutting down LedgerGuard service")
            await audit_logger.stop()
            logger.info("LedgerGuard service shutdown complete")

    return lifespan


async def ledgerguard_exception_handler(request: Request, exc: LedgerGuardException) -> JSONResponse:
    """Handle custom LedgerGuard exceptions."""
    logger = structlog.get_logger(__name__)
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "LedgerGuard exception occurred",
        error=str(exc),
        error_code=exc.error_code,
        status_code=exc.status_code,
        path=request.url.path,
        method=request.method,
    )

    headers = {}

    # Add Retry-After header for rate limit errors
    if exc.status_code == 429 and "retry_after" in exc.details:
        headers["Retry-After"] = str(exc.details["retry_after"])

    # Internal details of server-side failures stay in the logs
    message = str(exc) if exc.status_code < 500 else "Internal server error"
    details = exc.details if exc.status_code < 500 else {}

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code,
            "message": message,
            "details": details,
        },
        headers=headers,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger = structlog.get_logger(__name__)
    logger.error(
        "Unexpected exception occurred",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
        },
    )


async def record_request_metrics(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """Request count and latency per route template."""
    start = time.perf_counter()
    response = await call_next(request)

    metrics = getattr(request.app.state, "metrics", None)
    if metrics is not None:
        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        metrics.record_request(request.method, endpoint, response.status_code, time.perf_counter() - start)

    return response


def create_app() -> FastAPI:
    """
    Build the application from the current settings.

    Tests call this after adjusting the environment; uvicorn uses the
    module-level ``app``.
    """
    settings = get_settings()

    configure_logging(settings.log_level)

    lifespan = create_lifespan_handler(settings)

    app = FastAPI(
        title="LedgerGuard",
        description="Security core of a personal finance API",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", settings.csrf.header_name],
        expose_headers=[settings.csrf.header_name],
    )
    app.middleware("http")(record_request_metrics)

    app.add_exception_handler(LedgerGuardException, ledgerguard_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, general_exception_handler)

    # Every /v1 request goes through the intrusion heuristics
    v1_dependencies = [Depends(flag_suspicious_activity)]
    app.include_router(csrf_router, prefix="/v1", tags=["csrf"], dependencies=v1_dependencies)
    app.include_router(auth_router, prefix="/v1", tags=["auth"], dependencies=v1_dependencies)
    app.include_router(audit_router, prefix="/v1", tags=["audit"], dependencies=v1_dependencies)
    app.include_router(transactions_router, prefix="/v1", tags=["transactions"], dependencies=v1_dependencies)
    app.include_router(metrics_router, tags=["metrics"])
    app.include_router(healthz_router, tags=["health"])

    @app.get("/", include_in_schema=False)
    async def root() -> Dict[str, str]:
        """Root endpoint with service information."""
        return {
            "service": "LedgerGuard",
            "version": app.version,
            "description": "Security core of a personal finance API",
            "docs": "/docs",
        }

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "ledgerguard.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=settings.debug,
    )
