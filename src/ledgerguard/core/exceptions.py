"""
Custom exceptions for LedgerGuard.

Provides structured error handling with appropriate HTTP status codes
and error details for API responses.
"""

from typing import Any, Dict, Optional


class LedgerGuardException(Exception):
    """Base exception for LedgerGuard."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class ConfigurationError(LedgerGuardException):
    """Raised when secret material is missing or malformed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="configuration_error",
            details=details,
        )


class DecryptionError(LedgerGuardException):
    """Raised when a stored ciphertext cannot be authenticated or decoded."""

    def __init__(self, message: str = "Failed to decrypt data") -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="decryption_error",
        )


class AuthError(LedgerGuardException):
    """Raised for bad credentials and expired, invalid or reused tokens."""

    def __init__(self, message: str = "Invalid email or password", status_code: int = 401) -> None:
        super().__init__(
            message=message,
            status_code=status_code,
            error_code="authentication_error",
        )


class TokenReuseError(AuthError):
    """Raised when an already revoked refresh token is presented again."""

    def __init__(self, user_id: Optional[str] = None) -> None:
        super().__init__(message="Invalid refresh token")
        self.user_id = user_id


class ValidationError(LedgerGuardException):
    """Raised when input fails validation before reaching the encryption boundary."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=400,
            error_code="validation_error",
            details=details,
        )


class RateLimitExceeded(LedgerGuardException):
    """Raised when a route-class budget is exhausted."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[int] = None,
        route_class: Optional[str] = None,
    ) -> None:
        details: Dict[str, Any] = {}
        if retry_after:
            details["retry_after"] = retry_after
        if route_class:
            details["route_class"] = route_class

        super().__init__(
            message=message,
            status_code=429,
            error_code="rate_limit_exceeded",
            details=details,
        )


class CsrfError(LedgerGuardException):
    """Raised when a state-changing request lacks a valid CSRF token."""

    def __init__(self, missing: bool = False) -> None:
        super().__init__(
            message="CSRF token missing" if missing else "Invalid CSRF token",
            status_code=403,
            error_code="csrf_missing" if missing else "csrf_invalid",
        )


class NotFound(LedgerGuardException):
    """Raised when a record lookup misses."""

    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(
            message=message,
            status_code=404,
            error_code="not_found",
        )


class ConflictError(LedgerGuardException):
    """Raised on duplicate records or when optimistic updates keep conflicting."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=409,
            error_code="conflict",
            details=details,
        )


class AppendOnlyError(LedgerGuardException):
    """Raised when code tries to write an audit event outside the hash chain."""

    def __init__(self, message: str = "Audit events are append-only") -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="append_only",
        )
