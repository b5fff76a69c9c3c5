"""
Credential store: password hashing, token issuance and the refresh token lifecycle.

Refresh token states: issued -> active -> {rotated-out | revoked | expired}.
Terminal states are absorbing. Every change to a user's token list goes
through UserRepository.update, so a rotation (revoke old + append new) is a
single conditional write and at most one concurrent rotation can consume a
given token.
"""

import asyncio
import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import bcrypt
import jwt
import structlog

from ..config import AuthSettings, SecretsSettings, get_settings
from ..models.user import AuthProvider, OAuthProfile, RefreshTokenRecord, User, utcnow
from .exceptions import AuthError, ConfigurationError, ConflictError, NotFound, TokenReuseError, ValidationError
from .masking import mask_email, mask_token
from .storage import UserRepository, get_store

logger = structlog.get_logger(__name__)

BCRYPT_MAX_BYTES = 72


def _password_bytes(plain: str) -> bytes:
    """bcrypt only reads 72 bytes; longer passwords are pre-hashed so every byte counts."""
    password_bytes = plain.encode("utf-8")
    if len(password_bytes) > BCRYPT_MAX_BYTES:
        password_bytes = hashlib.sha256(password_bytes).hexdigest().encode("utf-8")
    return password_bytes


def hash_password(plain: str, rounds: int = 12) -> str:
    """Hash a password with bcrypt."""
    if rounds < 10:
        raise ConfigurationError("bcrypt cost factor must be at least 10")
    hashed = bcrypt.hashpw(_password_bytes(plain), bcrypt.gensalt(rounds))
    return hashed.decode("utf-8")


def verify_password(plain: str, hashed: Optional[str]) -> bool:
    """Constant-time check through bcrypt itself. Malformed hashes never match."""
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(_password_bytes(plain), hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _same_token(stored: str, presented: str) -> bool:
    return hmac.compare_digest(stored.encode("utf-8"), presented.encode("utf-8"))


@dataclass
class TokenPair:
    """Access and refresh token issued together."""
    access_token: str
    refresh_token: str


class TokenIssuer:
    """Signs and verifies access and refresh JWTs."""

    def __init__(self, secrets_settings: SecretsSettings, auth_settings: AuthSettings) -> None:
        self.secrets = secrets_settings
        self.auth = auth_settings

    def _secret(self, value: str, name: str) -> str:
        if not value:
            raise ConfigurationError(f"{name} environment variable is required")
        return value

    def _encode(self, user_id: str, token_type: str, ttl_seconds: int, secret: str) -> str:
        now = utcnow()
        payload = {
            "sub": user_id,
            "jti": uuid.uuid4().hex,
            "type": token_type,
            "iat": now,
            "exp": now + timedelta(seconds=ttl_seconds),
        }
        return jwt.encode(payload, secret, algorithm=self.auth.jwt_algorithm)

    def create_access_token(self, user_id: str) -> str:
        secret = self._secret(self.secrets.jwt_secret, "JWT_SECRET")
        return self._encode(user_id, "access", self.auth.access_token_ttl_seconds, secret)

    def create_refresh_token(self, user_id: str) -> str:
        secret = self._secret(self.secrets.jwt_refresh_secret, "JWT_REFRESH_SECRET")
        return self._encode(user_id, "refresh", self.auth.refresh_token_ttl_seconds, secret)

    def issue(self, user_id: str) -> TokenPair:
        # Both secrets are checked before either token is produced
        self._secret(self.secrets.jwt_secret, "JWT_SECRET")
        self._secret(self.secrets.jwt_refresh_secret, "JWT_REFRESH_SECRET")
        return TokenPair(
            access_token=self.create_access_token(user_id),
            refresh_token=self.create_refresh_token(user_id),
        )

    def _decode(self, token: str, secret: str, expected_type: str) -> Dict[str, Any]:
        try:
            claims: Dict[str, Any] = jwt.decode(
                token,
                secret,
                algorithms=[self.auth.jwt_algorithm],
                options={"require": ["exp", "iat", "sub", "type"]},
            )
        except jwt.ExpiredSignatureError:
            raise AuthError("Token has expired")
        except jwt.InvalidTokenError:
            logger.warning("Invalid token presented", token=mask_token(token), expected_type=expected_type)
            raise AuthError("Invalid token")

        if claims.get("type") != expected_type:
            raise AuthError("Invalid token")
        return claims

    def decode_access_token(self, token: str) -> Dict[str, Any]:
        return self._decode(token, self._secret(self.secrets.jwt_secret, "JWT_SECRET"), "access")

    def decode_refresh_token(self, token: str) -> Dict[str, Any]:
        secret = self._secret(self.secrets.jwt_refresh_secret, "JWT_REFRESH_SECRET")
        return self._decode(token, secret, "refresh")


def _prune(user: User, now: datetime) -> int:
    """Drop expired and revoked records. Returns how many were dropped."""
    before = len(user.refresh_tokens)
    user.refresh_tokens = [record for record in user.refresh_tokens if record.is_usable(now)]
    return before - len(user.refresh_tokens)


def _append_capped(user: User, token: str, ttl_seconds: int, max_active: int, now: datetime) -> None:
    """Evict the oldest active records until there is room, then append."""
    while len(user.active_refresh_tokens(now)) >= max_active:
        oldest = min(user.active_refresh_tokens(now), key=lambda record: record.created_at)
        user.refresh_tokens.remove(oldest)

    user.refresh_tokens.append(RefreshTokenRecord(
        token=token,
        created_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
    ))


def _find_record(user: User, token: str) -> Optional[RefreshTokenRecord]:
    for record in user.refresh_tokens:
        if _same_token(record.token, token):
            return record
    return None


class CredentialStore:
    """
    Authentication flows on top of UserRepository.

    Controllers call these methods and map the typed failures to responses;
    audit events are recorded by the callers once the outcome is known.
    """

    def __init__(
        self,
        users: UserRepository,
        issuer: Optional[TokenIssuer] = None,
        settings: Optional[AuthSettings] = None,
    ) -> None:
        app_settings = get_settings()
        self.users = users
        self.settings = settings or app_settings.auth
        self.issuer = issuer or TokenIssuer(app_settings.secrets, self.settings)
        self._dummy_hash: Optional[str] = None

    # Passwords

    async def hash_password(self, plain: str) -> str:
        return await asyncio.to_thread(hash_password, plain, self.settings.bcrypt_rounds)

    async def verify_password(self, plain: str, hashed: Optional[str]) -> bool:
        return await asyncio.to_thread(verify_password, plain, hashed)

    async def _burn_verification(self, plain: str) -> None:
        """Spend the same bcrypt time as a real check when there is no account."""
        if self._dummy_hash is None:
            self._dummy_hash = await self.hash_password(secrets.token_urlsafe(16))
        await self.verify_password(plain, self._dummy_hash)

    # Registration and login

    async def register(self, name: str, email: str, password: str) -> User:
        if await self.users.find_by_email_or_none(email) is not None:
            logger.info("Registration rejected: email in use", email=mask_email(email))
            raise ConflictError("User already exists")

        user = User(
            name=name,
            email=email,
            password_hash=await self.hash_password(password),
            provider=AuthProvider.LOCAL,
        )
        # Another registration may have taken the email while bcrypt ran
        try:
            user = await self.users.insert(user)
        except ConflictError:
            logger.info("Registration rejected: email in use", email=mask_email(email))
            raise
        logger.info("User registered", user_id=user.id)
        return user

    async def authenticate(self, email: str, password: str) -> User:
        """Return the user for valid credentials; the failure message never says which part was wrong."""
        user = await self.users.find_by_email_or_none(email, include_hidden=True)

        if user is None:
            await self._burn_verification(password)
            logger.info("Login failed", email=mask_email(email), reason="unknown_email")
            raise AuthError("Invalid email or password")

        if not await self.verify_password(password, user.password_hash):
            logger.info("Login failed", user_id=user.id, reason="bad_password")
            raise AuthError("Invalid email or password")

        return user

    async def login(self, email: str, password: str) -> Tuple[User, TokenPair]:
        user = await self.authenticate(email, password)
        tokens = self.issue_tokens(user.id)
        user = await self.add_refresh_token(user.id, tokens.refresh_token)
        logger.info("Login succeeded", user_id=user.id)
        return user, tokens

    # Refresh tokens

    def issue_tokens(self, user_id: str) -> TokenPair:
        return self.issuer.issue(user_id)

    async def add_refresh_token(self, user_id: str, token: str, ttl_seconds: Optional[int] = None) -> User:
        ttl = ttl_seconds if ttl_seconds is not None else self.settings.refresh_token_ttl_seconds
        max_active = self.settings.max_refresh_tokens

        def apply(user: User) -> None:
            now = utcnow()
            _prune(user, now)
            _append_capped(user, token, ttl, max_active, now)

        return await self.users.update(user_id, apply)

    async def validate_refresh_token(self, user_id: str, token: str) -> bool:
        user = await self.users.get_or_none(user_id)
        if user is None:
            return False
        now = utcnow()
        return any(
            record.is_usable(now) and _same_token(record.token, token)
            for record in user.refresh_tokens
        )

    async def revoke_refresh_token(self, user_id: str, token: str) -> User:
        def apply(user: User) -> None:
            for record in user.refresh_tokens:
                if _same_token(record.token, token):
                    record.revoked = True

        user = await self.users.update(user_id, apply)
        logger.info("Refresh token revoked", user_id=user_id, token=mask_token(token))
        return user

    async def revoke_all_refresh_tokens(self, user_id: str) -> User:
        def apply(user: User) -> None:
            for record in user.refresh_tokens:
                record.revoked = True

        user = await self.users.update(user_id, apply)
        logger.info("All refresh tokens revoked", user_id=user_id)
        return user

    async def rotate_on_refresh(self, old_token: str) -> Tuple[User, TokenPair]:
        """
        Consume a refresh token and issue a fresh pair.

        The old record is revoked and kept until the next prune, so a replay
        of it is reported as TokenReuseError rather than a plain miss.
        """
        claims = self.issuer.decode_refresh_token(old_token)
        user_id = str(claims["sub"])
        tokens = self.issue_tokens(user_id)
        ttl = self.settings.refresh_token_ttl_seconds
        max_active = self.settings.max_refresh_tokens

        def apply(user: User) -> None:
            now = utcnow()
            record = _find_record(user, old_token)
            if record is None:
                raise AuthError("Invalid refresh token")
            if record.revoked:
                raise TokenReuseError(user.id)
            if not record.is_usable(now):
                raise AuthError("Refresh token has expired")

            user.refresh_tokens = [
                r for r in user.refresh_tokens if r is record or r.is_usable(now)
            ]
            record.revoked = True
            _append_capped(user, tokens.refresh_token, ttl, max_active, now)

        try:
            user = await self.users.update(user_id, apply)
        except NotFound:
            raise AuthError("Invalid refresh token")

        logger.info("Refresh token rotated", user_id=user_id, old_token=mask_token(old_token))
        return user, tokens

    async def sweep_expired_tokens(self) -> int:
        """Remove expired and revoked records from every user. Returns records removed."""
        removed = 0
        for user_id in await self.users.all_ids():
            user = await self.users.get(user_id)
            now = utcnow()
            if len(user.active_refresh_tokens(now)) == len(user.refresh_tokens):
                continue

            pruned: List[int] = []
            await self.users.update(user_id, lambda u: pruned.append(_prune(u, utcnow())))
            removed += pruned[-1]

        if removed:
            logger.info("Swept stale refresh tokens", removed=removed)
        return removed

    # Passwords: change and reset

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        keep_refresh_token: Optional[str] = None,
    ) -> User:
        """
        Replace the password and revoke every refresh token. keep_refresh_token,
        when it was active, is re-added so the requesting device stays signed in.
        """
        user = await self.users.get(user_id, include_hidden=True)

        if not await self.verify_password(current_password, user.password_hash):
            raise AuthError("incorrect current password", status_code=400)
        if current_password == new_password or await self.verify_password(new_password, user.password_hash):
            raise AuthError("new password must differ", status_code=400)

        new_hash = await self.hash_password(new_password)
        expected_hash = user.password_hash
        ttl = self.settings.refresh_token_ttl_seconds
        max_active = self.settings.max_refresh_tokens

        def apply(u: User) -> None:
            if u.password_hash != expected_hash:
                raise ConflictError("Password was changed concurrently")
            now = utcnow()
            kept = keep_refresh_token is not None and any(
                record.is_usable(now) and _same_token(record.token, keep_refresh_token)
                for record in u.refresh_tokens
            )
            u.password_hash = new_hash
            for record in u.refresh_tokens:
                record.revoked = True
            if kept:
                _prune(u, now)
                _append_capped(u, keep_refresh_token, ttl, max_active, now)  # type: ignore[arg-type]

        user = await self.users.update(user_id, apply)
        logger.info("Password changed", user_id=user_id, kept_session=keep_refresh_token is not None)
        return user

    async def generate_reset_token(self, user_id: str) -> str:
        """Store only the SHA-256 of a random token with a short expiry; return the raw token."""
        raw_token = secrets.token_hex(32)
        token_hash = hash_reset_token(raw_token)
        expires = utcnow() + timedelta(seconds=self.settings.reset_token_ttl_seconds)

        def apply(user: User) -> None:
            user.reset_password_token_hash = token_hash
            user.reset_password_expires = expires

        await self.users.update(user_id, apply)
        logger.info("Password reset token generated", user_id=user_id)
        return raw_token

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Raw reset token for a known email, None otherwise. Never reveals which."""
        user = await self.users.find_by_email_or_none(email)
        if user is None:
            logger.info("Password reset requested for unknown email", email=mask_email(email))
            return None
        return await self.generate_reset_token(user.id)

    async def reset_password(self, token: str, new_password: str) -> User:
        token_hash = hash_reset_token(token)
        user = await self.users.find_by_reset_token_hash(token_hash)

        if (
            user is None
            or user.reset_password_token_hash is None
            or not _same_token(user.reset_password_token_hash, token_hash)
            or user.reset_password_expires is None
            or utcnow() >= user.reset_password_expires
        ):
            raise AuthError("invalid or expired token", status_code=400)

        new_hash = await self.hash_password(new_password)

        def apply(u: User) -> None:
            if u.reset_password_token_hash != token_hash:
                raise AuthError("invalid or expired token", status_code=400)
            u.password_hash = new_hash
            u.reset_password_token_hash = None
            u.reset_password_expires = None
            for record in u.refresh_tokens:
                record.revoked = True

        user = await self.users.update(user.id, apply)
        logger.info("Password reset completed", user_id=user.id)
        return user

    # OAuth

    async def find_or_create_oauth_user(self, profile: OAuthProfile, provider: AuthProvider) -> User:
        """Match by provider id, then by email; otherwise create a passwordless account."""
        user = await self.users.find_by_provider(provider, profile.id)
        if user is not None:
            return user

        email = profile.resolve_email()
        if not email:
            raise ValidationError("No email found in OAuth profile")

        existing = await self.users.find_by_email_or_none(email)
        if existing is not None:
            def link(u: User) -> None:
                u.provider = provider
                u.provider_id = profile.id
                u.avatar = profile.photo_url

            logger.info("Linked OAuth identity to existing user", user_id=existing.id, provider=provider.value)
            return await self.users.update(existing.id, link)

        user = User(
            name=profile.resolve_name(),
            email=email,
            provider=provider,
            provider_id=profile.id,
            avatar=profile.photo_url,
        )
        user = await self.users.insert(user)
        logger.info("Created OAuth user", user_id=user.id, provider=provider.value)
        return user


# Global credential store instance
_credential_store: Optional[CredentialStore] = None


def get_credential_store() -> CredentialStore:
    """Get or create the global credential store over the process document store."""
    global _credential_store

    if _credential_store is None:
        _credential_store = CredentialStore(UserRepository(get_store()))

    return _credential_store
