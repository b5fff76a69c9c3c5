"""
Integration tests for health, readiness and metrics endpoints.
"""

from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient

from ledgerguard.config import reload_settings
from ledgerguard.main import create_app


class TestHealthEndpoints:
    """Liveness and readiness probes."""

    def test_healthz(self, test_client: TestClient) -> None:
        response = test_client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_readyz_when_configured(self, test_client: TestClient) -> None:
        response = test_client.get("/readyz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert set(body["checks"]) == {"secrets", "audit"}

    def test_readyz_when_audit_writer_stopped(self, test_client: TestClient) -> None:
        test_client.portal.call(test_client.app.state.audit_logger.stop)  # type: ignore[attr-defined,union-attr]

        response = test_client.get("/readyz")

        assert response.status_code == 503
        assert response.json()["failed_checks"] == ["audit"]

    def test_startup_refused_without_secrets(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SESSION_SECRET")
        reload_settings()
        app = create_app()

        with pytest.raises(Exception):
            with TestClient(app):
                pass


class TestMetricsEndpoint:
    """Prometheus exposition."""

    def test_metrics_exposed(self, registered_user: Dict[str, Any], test_client: TestClient) -> None:
        response = test_client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        text = response.text
        assert 'auth_events_total{action="USER_REGISTER",outcome="success"} 1.0' in text
        assert "audit_queue_depth" in text
        assert "http_requests_total" in text

    def test_security_rejections_counted(self, test_client: TestClient) -> None:
        test_client.get("/v1/csrf-token")
        test_client.post("/v1/auth/login", json={"email": "a@b.c", "password": "x"})

        text = test_client.get("/metrics").text
        assert 'csrf_failures_total{reason="csrf_missing"} 1.0' in text
