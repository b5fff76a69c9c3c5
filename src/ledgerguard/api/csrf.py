"""
CSRF token bootstrap endpoint.

GET /v1/csrf-token creates the session on first call and returns a token
derived from its CSRF secret. It never needs a token itself.
"""

import structlog
from fastapi import APIRouter, Depends, Response

from ledgerguard.api.deps import get_security_context, rate_limit
from ledgerguard.config import get_settings
from ledgerguard.core.csrf import get_csrf_guard
from ledgerguard.core.sessions import SecurityContext, get_session_manager
from ledgerguard.models.auth import CsrfTokenResponse

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/csrf-token",
    response_model=CsrfTokenResponse,
    summary="Issue a CSRF token",
    description="""
    Returns a CSRF token for the caller's session.

    Send it back in the `X-CSRF-Token` header (or the `_csrf` JSON body field)
    on every POST, PUT, PATCH and DELETE. Tokens are not single-use; any token
    stays valid for as long as the session does.
    """,
    dependencies=[Depends(rate_limit("api"))],
)
async def get_csrf_token(
    response: Response,
    ctx: SecurityContext = Depends(get_security_context),
) -> CsrfTokenResponse:
    guard = get_csrf_guard()
    manager = get_session_manager()

    secret = guard.issue_secret(ctx.session)
    if ctx.session.is_new or ctx.session.modified:
        await manager.save(ctx.session)
        manager.set_cookie(response, ctx.session)
        logger.info("Session started", session=ctx.session_id[:8] + "...")

    token = guard.create_token(secret)
    response.headers[get_settings().csrf.header_name] = token
    return CsrfTokenResponse(csrf_token=token)
