"""
Audit event data models.

Events are append-only: created on every security-relevant operation and
never mutated or deleted by the application.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .user import utcnow


class AuditAction(str, Enum):
    """Closed set of auditable actions."""

    # Authentication events
    USER_REGISTER = "USER_REGISTER"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    PASSWORD_RESET_SUCCESS = "PASSWORD_RESET_SUCCESS"
    PASSWORD_RESET_FAILED = "PASSWORD_RESET_FAILED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    TOKEN_REVOKE = "TOKEN_REVOKE"
    REFRESH_TOKEN_REUSE = "REFRESH_TOKEN_REUSE"

    # Transaction events
    TRANSACTION_CREATE = "TRANSACTION_CREATE"
    TRANSACTION_UPDATE = "TRANSACTION_UPDATE"
    TRANSACTION_DELETE = "TRANSACTION_DELETE"
    TRANSACTION_VIEW = "TRANSACTION_VIEW"

    # Budget events
    BUDGET_CREATE = "BUDGET_CREATE"
    BUDGET_UPDATE = "BUDGET_UPDATE"
    BUDGET_DELETE = "BUDGET_DELETE"
    BUDGET_VIEW = "BUDGET_VIEW"

    # Goal events
    GOAL_CREATE = "GOAL_CREATE"
    GOAL_UPDATE = "GOAL_UPDATE"
    GOAL_DELETE = "GOAL_DELETE"
    GOAL_COMPLETE = "GOAL_COMPLETE"
    GOAL_VIEW = "GOAL_VIEW"

    # Profile events
    PROFILE_UPDATE = "PROFILE_UPDATE"
    PROFILE_VIEW = "PROFILE_VIEW"

    # Security events
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    DATA_EXPORT = "DATA_EXPORT"
    SETTINGS_CHANGE = "SETTINGS_CHANGE"
    AUDIT_VIEW = "AUDIT_VIEW"
    SECURITY_SUMMARY_VIEW = "SECURITY_SUMMARY_VIEW"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


ANONYMOUS_ACTOR = "anonymous"


class AuditEvent(BaseModel):
    """
    Single audit record.

    details and error_message are encrypted at rest; prev_hash and digest
    link every event to its predecessor so edits to stored history show up.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    actor: str = ANONYMOUS_ACTOR
    action: AuditAction
    resource: str
    resource_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    session_id: Optional[str] = None
    success: bool = True
    severity: Severity = Severity.LOW
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    prev_hash: Optional[str] = None
    digest: Optional[str] = None
    version: int = 0

    model_config = ConfigDict(use_enum_values=True)


class SecuritySummary(BaseModel):
    """Counts of a user's recent security activity."""

    recent_activity: int
    failed_logins: int
    suspicious_activity: int
    period_days: int


class AuditLogPage(BaseModel):
    """Paginated audit events for one user, newest first."""

    logs: List[AuditEvent]
    page: int
    limit: int
    total: int
    pages: int
