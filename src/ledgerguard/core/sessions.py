"""
Server-side sessions and the per-request security context.

The session cookie carries only an opaque id signed with SESSION_SECRET
(``<id>.<hmac>``); everything else, including the CSRF secret, stays in the
session store.
"""

import hashlib
import hmac
import secrets
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import structlog
from fastapi import Request, Response

from ..config import get_settings
from .exceptions import ConfigurationError

logger = structlog.get_logger(__name__)

# Expired sessions are swept every SWEEP_EVERY saves, and before growing past MAX_SESSIONS
SWEEP_EVERY = 100
MAX_SESSIONS = 10000


@dataclass
class Session:
    """A loaded session. ``modified`` marks data that still has to be saved."""
    id: str
    data: Dict[str, Any] = field(default_factory=dict)
    is_new: bool = True
    modified: bool = False

    def get(self, key: str) -> Any:
        return self.data.get(key)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value
        self.modified = True


class SessionStore(ABC):
    """Storage backend for session data."""

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def save(self, session_id: str, data: Dict[str, Any], ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        ...


class InMemorySessionStore(SessionStore):
    """Process-local store with per-record expiry."""

    def __init__(self, max_sessions: int = MAX_SESSIONS, sweep_every: int = SWEEP_EVERY) -> None:
        self._records: Dict[str, Tuple[Dict[str, Any], float]] = {}
        self._lock = threading.Lock()
        self.max_sessions = max_sessions
        self.sweep_every = sweep_every
        self._saves_since_sweep = 0

    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            data, expires_at = record
            if time.time() >= expires_at:
                del self._records[session_id]
                return None
            return dict(data)

    async def save(self, session_id: str, data: Dict[str, Any], ttl_seconds: int) -> None:
        with self._lock:
            self._saves_since_sweep += 1
            if self._saves_since_sweep >= self.sweep_every or len(self._records) >= self.max_sessions:
                self._drop_expired(time.time())
            self._records[session_id] = (dict(data), time.time() + ttl_seconds)

    async def delete(self, session_id: str) -> None:
        with self._lock:
            self._records.pop(session_id, None)

    def cleanup_expired_sessions(self) -> int:
        with self._lock:
            return self._drop_expired(time.time())

    def _drop_expired(self, now: float) -> int:
        self._saves_since_sweep = 0
        expired = [sid for sid, (_, expires_at) in self._records.items() if now >= expires_at]
        for sid in expired:
            del self._records[sid]
        if expired:
            logger.debug("Dropped expired sessions", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)


class SessionManager:
    """Loads, saves and signs sessions."""

    def __init__(
        self,
        store: SessionStore,
        secret: str,
        cookie_name: str = "sessionId",
        ttl_seconds: int = 86400,
        cookie_secure: bool = False,
    ) -> None:
        if not secret:
            raise ConfigurationError("SESSION_SECRET environment variable is required")
        self.store = store
        self._secret = secret.encode("utf-8")
        self.cookie_name = cookie_name
        self.ttl_seconds = ttl_seconds
        self.cookie_secure = cookie_secure

    def _signature(self, session_id: str) -> str:
        return hmac.new(self._secret, session_id.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign(self, session_id: str) -> str:
        return f"{session_id}.{self._signature(session_id)}"

    def unsign(self, cookie_value: Optional[str]) -> Optional[str]:
        """Session id from a signed cookie value, or None when the signature does not match."""
        if not cookie_value or "." not in cookie_value:
            return None
        session_id, signature = cookie_value.rsplit(".", 1)
        if not hmac.compare_digest(signature.encode("utf-8"), self._signature(session_id).encode("utf-8")):
            logger.warning("Session cookie signature mismatch")
            return None
        return session_id

    async def load(self, cookie_value: Optional[str]) -> Session:
        """The stored session for a valid cookie, otherwise a fresh unsaved one."""
        session_id = self.unsign(cookie_value)
        if session_id is not None:
            data = await self.store.get(session_id)
            if data is not None:
                return Session(id=session_id, data=data, is_new=False)

        return Session(id=secrets.token_urlsafe(32))

    async def save(self, session: Session) -> None:
        await self.store.save(session.id, session.data, self.ttl_seconds)
        session.is_new = False
        session.modified = False

    async def destroy(self, session: Session) -> None:
        await self.store.delete(session.id)

    def set_cookie(self, response: Response, session: Session) -> None:
        response.set_cookie(
            key=self.cookie_name,
            value=self.sign(session.id),
            max_age=self.ttl_seconds,
            httponly=True,
            secure=self.cookie_secure,
            samesite="lax",
        )


@dataclass
class SecurityContext:
    """Request facts the security components need, passed explicitly."""
    client_ip: str
    user_agent: str
    session: Session
    forwarded_for: List[str] = field(default_factory=list)
    user_id: Optional[str] = None

    @property
    def session_id(self) -> str:
        return self.session.id


def forwarded_chain(request: Request) -> List[str]:
    header = request.headers.get("x-forwarded-for", "")
    return [hop.strip() for hop in header.split(",") if hop.strip()]


def client_ip(request: Request, trusted_proxy_hops: int = 0) -> str:
    """
    Address the request came from.

    The socket peer, unless ``trusted_proxy_hops`` proxies sit in front of the
    service. Each trusted proxy appends the address it saw to X-Forwarded-For,
    so the client is the entry that many hops left of the peer; anything
    further left was written by the client and is ignored.
    """
    peer = request.client.host if request.client and request.client.host else "unknown"
    if trusted_proxy_hops <= 0:
        return peer

    hops = forwarded_chain(request) + [peer]
    return hops[max(0, len(hops) - 1 - trusted_proxy_hops)]


async def build_security_context(request: Request, manager: "SessionManager") -> SecurityContext:
    session = await manager.load(request.cookies.get(manager.cookie_name))
    return SecurityContext(
        client_ip=client_ip(request, get_settings().trusted_proxy_hops),
        user_agent=request.headers.get("user-agent", ""),
        session=session,
        forwarded_for=forwarded_chain(request),
    )


# Global session manager instance
_session_manager: Optional[SessionManager] = None


def get_session_manager() -> SessionManager:
    """Get or create the global session manager."""
    global _session_manager

    if _session_manager is None:
        settings = get_settings()
        _session_manager = SessionManager(
            store=InMemorySessionStore(),
            secret=settings.secrets.session_secret,
            cookie_name=settings.csrf.session_cookie_name,
            ttl_seconds=settings.csrf.session_ttl_seconds,
            cookie_secure=settings.auth.cookie_secure,
        )

    return _session_manager
