"""
Tests for the suspicious request heuristics.
"""

from typing import Sequence

import pytest

from ledgerguard.config import AuditSettings
from ledgerguard.core.intrusion import detect_suspicious_activity
from ledgerguard.core.sessions import SecurityContext, Session

BROWSER = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0)"


def make_ctx(user_agent: str = BROWSER, forwarded_for: Sequence[str] = ()) -> SecurityContext:
    return SecurityContext(
        client_ip="192.0.2.10",
        user_agent=user_agent,
        session=Session(id="s"),
        forwarded_for=list(forwarded_for),
    )


class TestSuspiciousActivity:
    """Each heuristic is independent."""

    def test_browser_request_is_clean(self) -> None:
        assert detect_suspicious_activity(make_ctx()) == []

    @pytest.mark.parametrize("user_agent", ["", "curl/8", "short"])
    def test_missing_or_short_user_agent(self, user_agent: str) -> None:
        assert "missing_or_short_user_agent" in detect_suspicious_activity(make_ctx(user_agent))

    def test_ten_character_agent_is_long_enough(self) -> None:
        assert detect_suspicious_activity(make_ctx("testclient")) == []

    @pytest.mark.parametrize("user_agent", ["Googlebot/2.1 (+http://www.google.com/bot.html)", "SomeCrawler 1.0", "Spider-Man"])
    def test_automated_user_agent(self, user_agent: str) -> None:
        assert detect_suspicious_activity(make_ctx(user_agent)) == ["automated_user_agent"]

    def test_proxy_chain_longer_than_three(self) -> None:
        hops = ["10.0.0.1", "10.0.0.2", "10.0.0.3", "10.0.0.4"]
        assert detect_suspicious_activity(make_ctx(forwarded_for=hops)) == ["multiple_proxies"]
        assert detect_suspicious_activity(make_ctx(forwarded_for=hops[:3])) == []

    def test_reasons_accumulate(self) -> None:
        reasons = detect_suspicious_activity(make_ctx("bot", ["a", "b", "c", "d"]))
        assert reasons == ["missing_or_short_user_agent", "automated_user_agent", "multiple_proxies"]

    def test_thresholds_from_settings(self) -> None:
        settings = AuditSettings(max_proxy_hops=1, min_user_agent_length=100)
        reasons = detect_suspicious_activity(make_ctx(forwarded_for=["a", "b"]), settings)
        assert reasons == ["missing_or_short_user_agent", "multiple_proxies"]
