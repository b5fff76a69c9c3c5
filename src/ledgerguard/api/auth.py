"""
Authentication API endpoints.

Every route records its audit event after the outcome is known, so the
event's success flag matches the response.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request, Response

from ledgerguard.api.deps import (
    get_audit_logger,
    get_credentials,
    get_current_user,
    get_metrics,
    get_security_context,
    rate_limit,
    require_csrf,
)
from ledgerguard.config import get_settings
from ledgerguard.core.credentials import CredentialStore, TokenPair
from ledgerguard.core.exceptions import AuthError, ConflictError, TokenReuseError
from ledgerguard.core.sessions import SecurityContext
from ledgerguard.models.audit import AuditAction
from ledgerguard.models.auth import (
    ChangePasswordRequest,
    ErrorResponse,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserProfile,
)
from ledgerguard.models.user import User

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth")

ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Authentication failed"},
    403: {"model": ErrorResponse, "description": "CSRF token missing or invalid"},
    429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
}


def to_profile(user: User) -> UserProfile:
    return UserProfile(
        id=user.id,
        name=user.name,
        email=user.email,
        avatar=user.avatar,
        created_at=user.created_at,
    )


def set_refresh_cookie(response: Response, refresh_token: str) -> None:
    settings = get_settings().auth
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=refresh_token,
        max_age=settings.refresh_token_ttl_seconds,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
    )


def clear_refresh_cookie(response: Response) -> None:
    settings = get_settings().auth
    response.delete_cookie(
        key=settings.refresh_cookie_name,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
    )


def token_response(response: Response, user: User, tokens: TokenPair) -> TokenResponse:
    set_refresh_cookie(response, tokens.refresh_token)
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        user=to_profile(user),
    )


def _record_auth_metric(request: Request, action: AuditAction, success: bool) -> None:
    metrics = get_metrics(request)
    if metrics is not None:
        metrics.record_auth_event(action.value, success)


@router.post(
    "/register",
    response_model=TokenResponse,
    status_code=201,
    responses={409: {"model": ErrorResponse, "description": "Email already registered"}, **ERROR_RESPONSES},
    summary="Register a local account",
    dependencies=[Depends(rate_limit("auth")), Depends(require_csrf)],
)
async def register(
    body: RegisterRequest,
    request: Request,
    response: Response,
    ctx: SecurityContext = Depends(get_security_context),
    store: CredentialStore = Depends(get_credentials),
) -> TokenResponse:
    audit = get_audit_logger(request)

    try:
        user = await store.register(body.name, body.email, body.password)
    except ConflictError as e:
        audit.log_event(
            None, AuditAction.USER_REGISTER, "user",
            details={"email": body.email}, error_message=str(e), ctx=ctx, success=False,
        )
        _record_auth_metric(request, AuditAction.USER_REGISTER, False)
        raise

    tokens = store.issue_tokens(user.id)
    user = await store.add_refresh_token(user.id, tokens.refresh_token)

    ctx.user_id = user.id
    audit.log_event(user.id, AuditAction.USER_REGISTER, "user", resource_id=user.id, ctx=ctx)
    _record_auth_metric(request, AuditAction.USER_REGISTER, True)
    return token_response(response, user, tokens)


@router.post(
    "/login",
    response_model=TokenResponse,
    responses=ERROR_RESPONSES,
    summary="Log in with email and password",
    dependencies=[Depends(rate_limit("auth")), Depends(require_csrf)],
)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    ctx: SecurityContext = Depends(get_security_context),
    store: CredentialStore = Depends(get_credentials),
) -> TokenResponse:
    audit = get_audit_logger(request)

    try:
        user, tokens = await store.login(body.email, body.password)
    except AuthError as e:
        known = await store.users.find_by_email_or_none(body.email)
        audit.log_event(
            known.id if known else None,
            AuditAction.LOGIN_FAILED,
            "auth",
            details={"email": body.email},
            error_message=str(e),
            ctx=ctx,
            success=False,
        )
        _record_auth_metric(request, AuditAction.LOGIN_FAILED, False)
        raise

    ctx.user_id = user.id
    audit.log_event(user.id, AuditAction.LOGIN_SUCCESS, "auth", resource_id=user.id, ctx=ctx)
    _record_auth_metric(request, AuditAction.LOGIN_SUCCESS, True)
    return token_response(response, user, tokens)


@router.post(
    "/refresh",
    response_model=TokenResponse,
    responses=ERROR_RESPONSES,
    summary="Rotate the refresh token",
    description="""
    Consumes the refresh token (cookie first, then body) and returns a new
    access/refresh pair. The consumed token stops working immediately.
    """,
    dependencies=[Depends(rate_limit("api"))],
)
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    ctx: SecurityContext = Depends(get_security_context),
    store: CredentialStore = Depends(get_credentials),
) -> TokenResponse:
    audit = get_audit_logger(request)
    cookie_name = get_settings().auth.refresh_cookie_name
    presented = request.cookies.get(cookie_name) or (body.refresh_token if body else None)

    if not presented:
        raise AuthError("Refresh token required")

    try:
        user, tokens = await store.rotate_on_refresh(presented)
    except TokenReuseError as e:
        audit.log_event(
            e.user_id, AuditAction.REFRESH_TOKEN_REUSE, "auth",
            error_message=str(e), ctx=ctx, success=False,
        )
        raise
    except AuthError as e:
        audit.log_event(None, AuditAction.TOKEN_REFRESH, "auth", error_message=str(e), ctx=ctx, success=False)
        raise

    ctx.user_id = user.id
    audit.log_event(user.id, AuditAction.TOKEN_REFRESH, "auth", resource_id=user.id, ctx=ctx)
    return token_response(response, user, tokens)


@router.post(
    "/logout",
    response_model=MessageResponse,
    responses=ERROR_RESPONSES,
    summary="Revoke refresh tokens",
    dependencies=[Depends(rate_limit("api")), Depends(require_csrf)],
)
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    user: User = Depends(get_current_user),
    ctx: SecurityContext = Depends(get_security_context),
    store: CredentialStore = Depends(get_credentials),
) -> MessageResponse:
    body = body or LogoutRequest()
    presented = body.refresh_token or request.cookies.get(get_settings().auth.refresh_cookie_name)

    if body.all_devices:
        await store.revoke_all_refresh_tokens(user.id)
    elif presented:
        await store.revoke_refresh_token(user.id, presented)

    clear_refresh_cookie(response)
    get_audit_logger(request).log_event(
        user.id, AuditAction.LOGOUT, "auth",
        resource_id=user.id, details={"all_devices": body.all_devices}, ctx=ctx,
    )
    return MessageResponse(message="Logged out successfully")


@router.post(
    "/change-password",
    response_model=MessageResponse,
    responses={400: {"model": ErrorResponse, "description": "Password rejected"}, **ERROR_RESPONSES},
    summary="Change password",
    description="""
    Replaces the password and revokes every refresh token. The refresh token
    of this device (body field or cookie) stays active.
    """,
    dependencies=[Depends(rate_limit("modification")), Depends(require_csrf)],
)
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    user: User = Depends(get_current_user),
    ctx: SecurityContext = Depends(get_security_context),
    store: CredentialStore = Depends(get_credentials),
) -> MessageResponse:
    audit = get_audit_logger(request)
    keep = body.refresh_token or request.cookies.get(get_settings().auth.refresh_cookie_name)

    try:
        await store.change_password(user.id, body.current_password, body.new_password, keep_refresh_token=keep)
    except AuthError as e:
        audit.log_event(
            user.id, AuditAction.PASSWORD_CHANGE, "user",
            resource_id=user.id, error_message=str(e), ctx=ctx, success=False,
        )
        raise

    audit.log_event(user.id, AuditAction.PASSWORD_CHANGE, "user", resource_id=user.id, ctx=ctx)
    return MessageResponse(message="Password changed successfully")


@router.post(
    "/forgot-password",
    response_model=MessageResponse,
    responses=ERROR_RESPONSES,
    summary="Request a password reset",
    dependencies=[Depends(rate_limit("password_reset")), Depends(require_csrf)],
)
async def forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    ctx: SecurityContext = Depends(get_security_context),
    store: CredentialStore = Depends(get_credentials),
) -> MessageResponse:
    reset_token = await store.request_password_reset(body.email)

    # Delivery of the reset link happens outside this service
    get_audit_logger(request).log_event(
        None, AuditAction.PASSWORD_RESET_REQUEST, "user",
        details={"email": body.email, "issued": reset_token is not None}, ctx=ctx,
    )
    return MessageResponse(message="If a user with that email exists, a reset link has been sent.")


@router.post(
    "/reset-password",
    response_model=MessageResponse,
    responses={400: {"model": ErrorResponse, "description": "Invalid or expired token"}, **ERROR_RESPONSES},
    summary="Reset password with a reset token",
    dependencies=[Depends(rate_limit("password_reset")), Depends(require_csrf)],
)
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    ctx: SecurityContext = Depends(get_security_context),
    store: CredentialStore = Depends(get_credentials),
) -> MessageResponse:
    audit = get_audit_logger(request)

    try:
        user = await store.reset_password(body.token, body.new_password)
    except AuthError as e:
        audit.log_event(
            None, AuditAction.PASSWORD_RESET_FAILED, "user",
            error_message=str(e), ctx=ctx, success=False,
        )
        raise

    audit.log_event(user.id, AuditAction.PASSWORD_RESET_SUCCESS, "user", resource_id=user.id, ctx=ctx)
    return MessageResponse(message="Password has been reset")


@router.get(
    "/profile",
    response_model=UserProfile,
    responses={401: ERROR_RESPONSES[401]},
    summary="Current user profile",
    dependencies=[Depends(rate_limit("api"))],
)
async def profile(
    request: Request,
    user: User = Depends(get_current_user),
    ctx: SecurityContext = Depends(get_security_context),
) -> UserProfile:
    get_audit_logger(request).log_event(user.id, AuditAction.PROFILE_VIEW, "user", resource_id=user.id, ctx=ctx)
    return to_profile(user)
