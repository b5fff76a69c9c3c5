"""
User identity and refresh token records.

Name and email are stored encrypted; the password hash and reset token hash
are hidden from default reads (see UserRepository).
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthProvider(str, Enum):
    """How the account authenticates."""

    LOCAL = "local"
    GOOGLE = "google"
    MICROSOFT = "microsoft"


class RefreshTokenRecord(BaseModel):
    """
    One issued refresh token.

    Usable iff not revoked and not past expiry. Revocation only flips the
    flag; records are dropped later when the owning list is pruned.
    """

    token: str
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    revoked: bool = False

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return not self.revoked and now < self.expires_at


class User(BaseModel):
    """User account as seen by application code (plaintext name and email)."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+$")
    password_hash: Optional[str] = None
    provider: AuthProvider = AuthProvider.LOCAL
    provider_id: Optional[str] = None
    avatar: Optional[str] = None
    refresh_tokens: List[RefreshTokenRecord] = Field(default_factory=list)
    reset_password_token_hash: Optional[str] = None
    reset_password_expires: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    @field_validator("name")
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name cannot be blank")
        return v

    @field_validator("email")
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()

    def active_refresh_tokens(self, now: Optional[datetime] = None) -> List[RefreshTokenRecord]:
        now = now or utcnow()
        return [record for record in self.refresh_tokens if record.is_usable(now)]


class OAuthProfile(BaseModel):
    """Identity data handed over by an OAuth provider callback."""

    id: str
    display_name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    emails: List[str] = Field(default_factory=list)
    email: Optional[str] = None
    user_principal_name: Optional[str] = None
    photo_url: Optional[str] = None

    def resolve_email(self) -> Optional[str]:
        """First email the provider supplied, in provider preference order."""
        if self.emails:
            return self.emails[0]
        return self.email or self.user_principal_name

    def resolve_name(self) -> str:
        if self.display_name:
            return self.display_name
        full_name = " ".join(part for part in (self.given_name, self.family_name) if part)
        return full_name or "User"
