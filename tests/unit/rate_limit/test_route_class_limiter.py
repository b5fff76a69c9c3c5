"""
Tests for RateLimiter, which keeps one bucket per route class and client.
"""

import asyncio

import pytest

from ledgerguard.config import DEFAULT_RATE_LIMITS
from ledgerguard.core.exceptions import ConfigurationError, RateLimitExceeded
from ledgerguard.core.rate_limit import RATE_LIMIT_MESSAGES, RateLimiter, client_key, get_rate_limiter
from ledgerguard.core.sessions import SecurityContext, Session


@pytest.fixture
def rate_limiter() -> RateLimiter:
    return RateLimiter(DEFAULT_RATE_LIMITS)


class TestRateLimiter:
    """Per route-class, per-client buckets."""

    @pytest.mark.asyncio
    async def test_bucket_built_from_rule(self, rate_limiter: RateLimiter) -> None:
        await rate_limiter.check_rate_limit("auth", "1.2.3.4:agent")

        bucket = rate_limiter.buckets[("auth", "1.2.3.4:agent")]
        assert bucket.capacity == 5
        assert bucket.refill_rate == pytest.approx(5 / 900)

    @pytest.mark.asyncio
    async def test_sixth_auth_attempt_rejected(self, rate_limiter: RateLimiter) -> None:
        for _ in range(5):
            await rate_limiter.check_rate_limit("auth", "client")

        with pytest.raises(RateLimitExceeded) as exc_info:
            await rate_limiter.check_rate_limit("auth", "client")

        error = exc_info.value
        assert error.status_code == 429
        assert str(error) == RATE_LIMIT_MESSAGES["auth"]
        assert error.details["route_class"] == "auth"
        assert error.details["retry_after"] == 180

    @pytest.mark.asyncio
    async def test_clients_are_isolated(self, rate_limiter: RateLimiter) -> None:
        for _ in range(5):
            await rate_limiter.check_rate_limit("auth", "client-a")

        await rate_limiter.check_rate_limit("auth", "client-b")
        with pytest.raises(RateLimitExceeded):
            await rate_limiter.check_rate_limit("auth", "client-a")

    @pytest.mark.asyncio
    async def test_route_classes_are_isolated(self, rate_limiter: RateLimiter) -> None:
        for _ in range(5):
            await rate_limiter.check_rate_limit("auth", "client")

        await rate_limiter.check_rate_limit("api", "client")
        await rate_limiter.check_rate_limit("modification", "client")

    @pytest.mark.asyncio
    async def test_unknown_route_class(self, rate_limiter: RateLimiter) -> None:
        with pytest.raises(ConfigurationError):
            await rate_limiter.check_rate_limit("nonexistent", "client")
        assert rate_limiter.buckets == {}

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_budget(self, rate_limiter: RateLimiter) -> None:
        results = await asyncio.gather(
            *[rate_limiter.check_rate_limit("auth", "client") for _ in range(8)],
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, RateLimitExceeded)) == 3

    @pytest.mark.asyncio
    async def test_cleanup_drops_only_idle_buckets(self, rate_limiter: RateLimiter) -> None:
        await rate_limiter.check_rate_limit("api", "busy")
        rate_limiter._bucket("api", "idle")

        assert rate_limiter.cleanup_idle_buckets() == 1
        assert list(rate_limiter.buckets) == [("api", "busy")]

    def test_global_limiter_uses_configured_limits(self) -> None:
        assert get_rate_limiter().limits["password_reset"]["max_requests"] == DEFAULT_RATE_LIMITS["password_reset"]["max_requests"]
        assert get_rate_limiter() is get_rate_limiter()


class TestClientKey:
    """Which request facts identify a client."""

    def make_ctx(self, user_agent: str = "Mozilla/5.0 (X11)") -> SecurityContext:
        return SecurityContext(client_ip="198.51.100.4", user_agent=user_agent, session=Session(id="s"))

    def test_auth_routes_key_on_ip_and_agent(self) -> None:
        assert client_key(self.make_ctx(), "auth") == "198.51.100.4:Mozilla/5.0 (X11)"
        assert client_key(self.make_ctx(""), "auth") == "198.51.100.4:unknown"

    def test_other_routes_key_on_ip(self) -> None:
        assert client_key(self.make_ctx(), "api") == "198.51.100.4"
