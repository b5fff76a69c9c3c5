"""
CSRF protection for state-changing routes.

Each session holds a random secret. Tokens are ``<salt>-<hmac(secret, salt)>``,
so any number of tokens can be minted per session and each stays valid for
as long as the session secret does.
"""

import hashlib
import hmac
import secrets
from typing import Optional

import structlog

from ..config import CsrfSettings, get_settings
from .exceptions import CsrfError
from .sessions import Session

logger = structlog.get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
SESSION_SECRET_KEY = "csrf_secret"


class CsrfGuard:
    """Issues and checks CSRF tokens against the per-session secret."""

    def __init__(self, settings: Optional[CsrfSettings] = None) -> None:
        self.settings = settings or get_settings().csrf

    def issue_secret(self, session: Session) -> str:
        """Session's CSRF secret, created on first use."""
        secret = session.get(SESSION_SECRET_KEY)
        if not secret:
            secret = secrets.token_urlsafe(18)
            session.set(SESSION_SECRET_KEY, secret)
            logger.debug("CSRF secret created", session=session.id[:8] + "...")
        return str(secret)

    @staticmethod
    def _sign(secret: str, salt: str) -> str:
        return hmac.new(secret.encode("utf-8"), salt.encode("utf-8"), hashlib.sha256).hexdigest()

    def create_token(self, secret: str) -> str:
        salt = secrets.token_hex(8)
        return f"{salt}-{self._sign(secret, salt)}"

    def verify_token(self, secret: Optional[str], token: Optional[str]) -> bool:
        if not secret or not token or "-" not in token:
            return False
        salt, signature = token.split("-", 1)
        return hmac.compare_digest(signature.encode("utf-8"), self._sign(secret, salt).encode("utf-8"))

    def protect(
        self,
        method: str,
        session: Session,
        header_token: Optional[str] = None,
        body_token: Optional[str] = None,
    ) -> None:
        """
        Raise CsrfError unless the request is safe or carries a valid token.

        The header wins over the body field when both are present.
        """
        if method.upper() in SAFE_METHODS:
            return

        token = header_token or body_token
        if not token:
            logger.warning("CSRF token missing", method=method, session=session.id[:8] + "...")
            raise CsrfError(missing=True)

        if not self.verify_token(session.get(SESSION_SECRET_KEY), token):
            logger.warning("CSRF token invalid", method=method, session=session.id[:8] + "...")
            raise CsrfError(missing=False)


# Global guard instance
_csrf_guard: Optional[CsrfGuard] = None


def get_csrf_guard() -> CsrfGuard:
    """Get or create the global CSRF guard."""
    global _csrf_guard

    if _csrf_guard is None:
        _csrf_guard = CsrfGuard()

    return _csrf_guard
