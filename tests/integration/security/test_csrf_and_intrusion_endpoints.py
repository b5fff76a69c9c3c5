"""
Integration tests for the CSRF bootstrap endpoint and request flagging.
"""

from typing import Callable, Dict

from fastapi.testclient import TestClient

from ledgerguard.core.audit import AuditRepository
from ledgerguard.core.storage import get_store


class TestCsrfTokenEndpoint:
    """GET /v1/csrf-token."""

    def test_issues_token_and_session_cookie(self, test_client: TestClient) -> None:
        response = test_client.get("/v1/csrf-token")

        assert response.status_code == 200
        token = response.json()["csrf_token"]
        assert response.headers["X-CSRF-Token"] == token
        assert "sessionId" in response.cookies
        assert "httponly" in response.headers["set-cookie"].lower()

    def test_session_reused_on_later_calls(self, test_client: TestClient) -> None:
        test_client.get("/v1/csrf-token")
        session_cookie = test_client.cookies.get("sessionId")

        second = test_client.get("/v1/csrf-token")

        assert "sessionId" not in second.cookies
        assert test_client.cookies.get("sessionId") == session_cookie

    def test_every_issued_token_stays_valid(self, test_client: TestClient) -> None:
        first = test_client.get("/v1/csrf-token").json()["csrf_token"]
        test_client.get("/v1/csrf-token")

        response = test_client.post(
            "/v1/auth/forgot-password", json={"email": "nobody@example.com"}, headers={"X-CSRF-Token": first}
        )
        assert response.status_code == 200

    def test_forged_session_cookie_rejected(self, test_client: TestClient) -> None:
        token = test_client.get("/v1/csrf-token").json()["csrf_token"]
        session_id = test_client.cookies.get("sessionId").split(".")[0]  # type: ignore[union-attr]
        test_client.cookies.delete("sessionId")
        test_client.cookies.set("sessionId", f"{session_id}.forged")

        response = test_client.post(
            "/v1/auth/forgot-password", json={"email": "nobody@example.com"}, headers={"X-CSRF-Token": token}
        )
        assert response.status_code == 403
        assert response.json()["error"] == "csrf_invalid"


class TestSuspiciousActivityFlagging:
    """Heuristics record events but never block."""

    def test_bot_user_agent_recorded_not_blocked(
        self, test_client: TestClient, flush_audit: Callable[[], None]
    ) -> None:
        response = test_client.get("/v1/csrf-token", headers={"User-Agent": "Mozilla/5.0 (compatible; Googlebot/2.1)"})
        assert response.status_code == 200
        flush_audit()

        events = test_client.portal.call(AuditRepository(get_store()).find_suspicious)  # type: ignore[union-attr]
        flagged = [e for e in events if e.action == "SUSPICIOUS_ACTIVITY"]

        assert len(flagged) == 1
        assert flagged[0].details["reasons"] == ["automated_user_agent"]
        assert flagged[0].metadata == {"automated": "true"}

    def test_long_proxy_chain_recorded(self, test_client: TestClient, flush_audit: Callable[[], None]) -> None:
        headers: Dict[str, str] = {"X-Forwarded-For": "203.0.113.1, 10.0.0.1, 10.0.0.2, 10.0.0.3"}
        assert test_client.get("/v1/csrf-token", headers=headers).status_code == 200
        flush_audit()

        events = test_client.portal.call(AuditRepository(get_store()).find_suspicious)  # type: ignore[union-attr]
        assert events[0].ip_address == "testclient"
        assert events[0].details["reasons"] == ["multiple_proxies"]

    def test_ordinary_client_not_flagged(self, test_client: TestClient, flush_audit: Callable[[], None]) -> None:
        test_client.get("/v1/csrf-token")
        flush_audit()

        assert test_client.portal.call(AuditRepository(get_store()).find_suspicious) == []  # type: ignore[union-attr]
