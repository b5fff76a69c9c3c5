"""
Authentication API data models.

Contains Pydantic models for the register, login, token and password flows.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class RegisterRequest(BaseModel):
    """Request model for account registration."""

    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(..., min_length=6, max_length=128)


class LoginRequest(BaseModel):
    """Request model for password login."""

    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    """Refresh token may come from the body when the cookie is unavailable."""

    refresh_token: Optional[str] = Field(default=None, description="Refresh token (cookie preferred)")


class LogoutRequest(BaseModel):
    """Revoke the presented refresh token, or every token with all_devices."""

    refresh_token: Optional[str] = None
    all_devices: bool = False


class ChangePasswordRequest(BaseModel):
    """Request model for password change."""

    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=6, max_length=128)
    refresh_token: Optional[str] = Field(
        default=None,
        description="Refresh token of this device, kept active after the change",
    )


class ForgotPasswordRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=6, max_length=128)


class UserProfile(BaseModel):
    """Decrypted public view of a user."""

    id: str
    name: str
    email: str
    avatar: Optional[str] = None
    created_at: datetime


class TokenResponse(BaseModel):
    """Response model for login, register and refresh."""

    access_token: str = Field(..., description="Short-lived bearer token")
    refresh_token: str = Field(..., description="Long-lived refresh token")
    token_type: str = Field(default="Bearer")
    user: UserProfile


class MessageResponse(BaseModel):
    message: str


class CsrfTokenResponse(BaseModel):
    csrf_token: str


class ErrorResponse(BaseModel):
    """
    Standard error response model.
    """

    error: str = Field(description="Error code")
    message: str = Field(description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Additional error details"
    )
