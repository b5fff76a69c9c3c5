"""
Request dependencies shared by the routers.

Order on a mutating route is: rate limit, CSRF, authentication, then body
validation. Audit events are recorded by the endpoint once the outcome is
known.
"""

import json
from typing import Any, Callable, Coroutine, Optional

import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ledgerguard.config import get_settings
from ledgerguard.core.audit import AuditLogger
from ledgerguard.core.credentials import CredentialStore, get_credential_store
from ledgerguard.core.csrf import get_csrf_guard
from ledgerguard.core.exceptions import AuthError, CsrfError, RateLimitExceeded
from ledgerguard.core.intrusion import detect_suspicious_activity
from ledgerguard.core.metrics import MetricsCollector
from ledgerguard.core.rate_limit import client_key, get_rate_limiter
from ledgerguard.core.sessions import SecurityContext, build_security_context, get_session_manager
from ledgerguard.core.storage import UserRepository, get_store
from ledgerguard.models.audit import AuditAction
from ledgerguard.models.user import User

logger = structlog.get_logger(__name__)
security = HTTPBearer(auto_error=False)


def get_audit_logger(request: Request) -> AuditLogger:
    return request.app.state.audit_logger


def get_metrics(request: Request) -> Optional[MetricsCollector]:
    return getattr(request.app.state, "metrics", None)


def get_users() -> UserRepository:
    return UserRepository(get_store())


def get_credentials() -> CredentialStore:
    return get_credential_store()


async def get_security_context(request: Request) -> SecurityContext:
    """Client facts and the session for this request. Built once per request."""
    return await build_security_context(request, get_session_manager())


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    ctx: SecurityContext = Depends(get_security_context),
    credential_store: CredentialStore = Depends(get_credentials),
) -> User:
    """
    Authenticate the bearer access token.

    Rejected tokens are recorded as UNAUTHORIZED_ACCESS.
    """
    audit = get_audit_logger(request)

    if credentials is None or not credentials.credentials:
        raise AuthError("Access token required")

    try:
        claims = credential_store.issuer.decode_access_token(credentials.credentials.strip())
        user = await credential_store.users.get_or_none(str(claims["sub"]))
        if user is None:
            raise AuthError("User not found")
    except AuthError as e:
        audit.log_event(
            None,
            AuditAction.UNAUTHORIZED_ACCESS,
            "auth",
            details={"reason": str(e), "path": request.url.path},
            ctx=ctx,
            success=False,
        )
        raise

    ctx.user_id = user.id
    return user


def rate_limit(route_class: str) -> Callable[..., Coroutine[Any, Any, None]]:
    """Dependency consuming one request from the client's budget for route_class."""

    async def check(request: Request, ctx: SecurityContext = Depends(get_security_context)) -> None:
        try:
            await get_rate_limiter().check_rate_limit(route_class, client_key(ctx, route_class))
        except RateLimitExceeded as e:
            get_audit_logger(request).log_event(
                ctx.user_id,
                AuditAction.RATE_LIMIT_EXCEEDED,
                "security",
                details={
                    "route_class": route_class,
                    "path": request.url.path,
                    "method": request.method,
                    "retry_after": e.details.get("retry_after"),
                },
                ctx=ctx,
                success=False,
            )
            metrics = get_metrics(request)
            if metrics is not None:
                metrics.record_rate_limit_hit(route_class)
            raise

    return check


async def _body_token(request: Request, field: str) -> Optional[str]:
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if isinstance(body, dict) and isinstance(body.get(field), str):
        return body[field]
    return None


async def require_csrf(request: Request, ctx: SecurityContext = Depends(get_security_context)) -> None:
    """Reject unsafe requests without a token derived from the session's CSRF secret."""
    settings = get_settings().csrf
    header_token = request.headers.get(settings.header_name)
    body_token = None if header_token else await _body_token(request, settings.body_field)

    try:
        get_csrf_guard().protect(request.method, ctx.session, header_token, body_token)
    except CsrfError as e:
        metrics = get_metrics(request)
        if metrics is not None:
            metrics.record_csrf_failure(e.error_code)
        raise


async def flag_suspicious_activity(request: Request, ctx: SecurityContext = Depends(get_security_context)) -> None:
    """Record SUSPICIOUS_ACTIVITY for requests matching the heuristics. Never blocks."""
    reasons = detect_suspicious_activity(ctx)
    if not reasons:
        return

    get_audit_logger(request).log_event(
        ctx.user_id,
        AuditAction.SUSPICIOUS_ACTIVITY,
        "security",
        details={
            "reasons": reasons,
            "user_agent": ctx.user_agent,
            "ip_address": ctx.client_ip,
            "url": request.url.path,
        },
        ctx=ctx,
        success=False,
        metadata={"automated": "true"},
    )
    metrics = get_metrics(request)
    if metrics is not None:
        metrics.record_suspicious_request()
