"""
Per route-class rate limiting with token buckets.
"""

import asyncio
import math
import time
from typing import Dict, Mapping, Optional, Tuple

import structlog

from ..config import get_settings
from .exceptions import ConfigurationError, RateLimitExceeded
from .sessions import SecurityContext

logger = structlog.get_logger(__name__)

AUTH_ROUTE_CLASS = "auth"

RATE_LIMIT_MESSAGES: Dict[str, str] = {
    "auth": "Too many authentication attempts, please try again later.",
    "password_reset": "Too many password reset attempts, please try again later.",
    "api": "Too many requests, please try again later.",
    "modification": "Too many modification requests, please try again later.",
    "report": "Too many report generation requests, please try again later.",
}

# Bucket count above which idle full buckets are dropped
MAX_BUCKETS = 10000


class TokenBucket:
    """
    Token bucket rate limiter implementation.

    Holds at most ``capacity`` tokens and refills continuously at
    ``refill_rate`` tokens per second, so a full window restores the whole
    budget and partial waits restore a proportional share.
    """

    def __init__(self, capacity: int, refill_rate: float) -> None:
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = float(capacity)
        self.last_refill = time.monotonic()
        self.lock = asyncio.Lock()

    def _refill(self, now: float) -> None:
        time_passed = now - self.last_refill
        self.tokens = min(float(self.capacity), self.tokens + time_passed * self.refill_rate)
        self.last_refill = now

    async def consume(self, tokens: int = 1) -> bool:
        """
        Try to consume tokens from bucket.

        Returns True if tokens available, False otherwise.
        """
        async with self.lock:
            self._refill(time.monotonic())

            if self.tokens >= tokens:
                self.tokens -= tokens
                return True

            return False

    def get_retry_after(self) -> int:
        """Seconds until one token is available again."""
        missing = max(0.0, 1 - self.tokens)
        return max(1, math.ceil(missing / self.refill_rate))

    def is_idle(self, now: Optional[float] = None) -> bool:
        """Full again, so dropping the bucket loses nothing."""
        now = time.monotonic() if now is None else now
        return self.tokens + (now - self.last_refill) * self.refill_rate >= self.capacity


class RateLimiter:
    """
    Independent buckets per (route class, client key).
    """

    def __init__(self, limits: Mapping[str, Mapping[str, int]]) -> None:
        self.limits = {name: dict(rule) for name, rule in limits.items()}
        self.buckets: Dict[Tuple[str, str], TokenBucket] = {}

    def _rule(self, route_class: str) -> Mapping[str, int]:
        rule = self.limits.get(route_class)
        if rule is None:
            raise ConfigurationError(
                f"Unknown rate limit route class: {route_class}",
                details={"route_class": route_class, "known": sorted(self.limits)},
            )
        return rule

    def _bucket(self, route_class: str, client_key: str) -> TokenBucket:
        key = (route_class, client_key)
        bucket = self.buckets.get(key)
        if bucket is None:
            if len(self.buckets) >= MAX_BUCKETS:
                self.cleanup_idle_buckets()
            rule = self._rule(route_class)
            capacity = rule["max_requests"]
            logger.debug(
                "Creating new rate limit bucket",
                route_class=route_class,
                capacity=capacity,
                window_seconds=rule["window_seconds"],
            )
            bucket = TokenBucket(capacity=capacity, refill_rate=capacity / rule["window_seconds"])
            self.buckets[key] = bucket
        return bucket

    async def check_rate_limit(self, route_class: str, client_key: str) -> None:
        """
        Consume one request from the client's budget for the route class.

        Raises RateLimitExceeded if the budget is exhausted.
        """
        self._rule(route_class)
        bucket = self._bucket(route_class, client_key)

        if not await bucket.consume():
            retry_after = bucket.get_retry_after()
            logger.warning(
                "Rate limit exceeded",
                route_class=route_class,
                retry_after=retry_after,
                bucket_capacity=bucket.capacity,
            )
            raise RateLimitExceeded(
                message=RATE_LIMIT_MESSAGES.get(route_class, "Too many requests, please try again later."),
                retry_after=retry_after,
                route_class=route_class,
            )

        logger.debug(
            "Rate limit check passed",
            route_class=route_class,
            remaining_tokens=round(bucket.tokens, 2),
            bucket_capacity=bucket.capacity,
        )

    def cleanup_idle_buckets(self) -> int:
        now = time.monotonic()
        idle = [key for key, bucket in self.buckets.items() if bucket.is_idle(now)]
        for key in idle:
            del self.buckets[key]
        return len(idle)


def client_key(ctx: SecurityContext, route_class: str) -> str:
    """Client IP; auth routes also key on the user agent."""
    if route_class == AUTH_ROUTE_CLASS:
        return f"{ctx.client_ip}:{ctx.user_agent or 'unknown'}"
    return ctx.client_ip


# Global rate limiter instance
_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get or create global rate limiter."""
    global _rate_limiter

    if _rate_limiter is None:
        settings = get_settings()
        _rate_limiter = RateLimiter(settings.rate_limit.limits)

    return _rate_limiter
