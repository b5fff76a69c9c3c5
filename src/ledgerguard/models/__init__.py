"""
Pydantic data models package.

Contains all data validation models for:
- API requests and responses
- User identity and refresh token records
- Encrypted financial records
- Audit events
"""

from .audit import AuditAction, AuditEvent, AuditLogPage, SecuritySummary, Severity
from .auth import (
    ChangePasswordRequest,
    CsrfTokenResponse,
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
from .finance import Budget, Goal, Transaction, TransactionCreate, TransactionResponse
from .user import AuthProvider, OAuthProfile, RefreshTokenRecord, User

__all__ = [
    # Audit models
    "AuditAction",
    "AuditEvent",
    "AuditLogPage",
    "SecuritySummary",
    "Severity",

    # Auth API models
    "ChangePasswordRequest",
    "CsrfTokenResponse",
    "ErrorResponse",
    "ForgotPasswordRequest",
    "LoginRequest",
    "LogoutRequest",
    "MessageResponse",
    "RefreshRequest",
    "RegisterRequest",
    "ResetPasswordRequest",
    "TokenResponse",
    "UserProfile",

    # Finance models
    "Budget",
    "Goal",
    "Transaction",
    "TransactionCreate",
    "TransactionResponse",

    # User models
    "AuthProvider",
    "OAuthProfile",
    "RefreshTokenRecord",
    "User",
]
