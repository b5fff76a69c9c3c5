"""
Audit log endpoints for the signed-in user.
"""

from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request

from ledgerguard.api.deps import get_audit_logger, get_current_user, get_security_context, rate_limit
from ledgerguard.config import get_settings
from ledgerguard.core.sessions import SecurityContext
from ledgerguard.models.audit import AuditAction, AuditLogPage, SecuritySummary
from ledgerguard.models.auth import ErrorResponse
from ledgerguard.models.user import User

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/audit")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@router.get(
    "/my-logs",
    response_model=AuditLogPage,
    responses={401: {"model": ErrorResponse, "description": "Unauthorized"}},
    summary="Own audit events, newest first",
    dependencies=[Depends(rate_limit("api"))],
)
async def my_logs(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    action: Optional[AuditAction] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    user: User = Depends(get_current_user),
    ctx: SecurityContext = Depends(get_security_context),
) -> AuditLogPage:
    audit = get_audit_logger(request)

    # Pending events of this user are part of the answer
    await audit.flush()
    result = await audit.repository.events_for_user(
        user.id,
        action=action,
        start=_as_utc(start_date),
        end=_as_utc(end_date),
        page=page,
        limit=limit,
    )

    audit.log_event(user.id, AuditAction.AUDIT_VIEW, "audit", ctx=ctx, details={"page": page, "limit": limit})
    return result


@router.get(
    "/security-summary",
    response_model=SecuritySummary,
    responses={401: {"model": ErrorResponse, "description": "Unauthorized"}},
    summary="Counts of recent security activity",
    dependencies=[Depends(rate_limit("api"))],
)
async def security_summary(
    request: Request,
    user: User = Depends(get_current_user),
    ctx: SecurityContext = Depends(get_security_context),
) -> SecuritySummary:
    audit = get_audit_logger(request)

    await audit.flush()
    summary = await audit.repository.security_summary(user.id, get_settings().audit.summary_window_days)

    audit.log_event(user.id, AuditAction.SECURITY_SUMMARY_VIEW, "audit", ctx=ctx)
    return summary
