"""
Pytest configuration and shared fixtures.

Every test runs with the four secrets set, a low bcrypt cost and freshly
reset process singletons, so state never leaks between tests.
"""

from typing import Any, Callable, Dict, Generator
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

import ledgerguard.core.credentials as credentials_module
import ledgerguard.core.crypto as crypto_module
import ledgerguard.core.csrf as csrf_module
import ledgerguard.core.masking as masking_module
import ledgerguard.core.metrics as metrics_module
import ledgerguard.core.rate_limit as rate_limit_module
import ledgerguard.core.sessions as sessions_module
import ledgerguard.core.storage as storage_module
from ledgerguard.config import Settings, get_settings, reload_settings
from ledgerguard.core.credentials import CredentialStore, get_credential_store
from ledgerguard.core.storage import DocumentStore, UserRepository, get_store
from ledgerguard.main import create_app

TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4

TEST_SECRETS = {
    "ENCRYPTION_KEY": TEST_ENCRYPTION_KEY,
    "JWT_SECRET": "test_jwt_secret_0123456789abcdef",
    "JWT_REFRESH_SECRET": "test_jwt_refresh_secret_0123456789",
    "SESSION_SECRET": "test_session_secret_0123456789ab",
}

ALICE = {"name": "Alice", "email": "alice@example.com", "password": "Secret123!"}


def reset_singletons() -> None:
    """Drop every process-global component so the next getter rebuilds it."""
    crypto_module._field_cipher = None
    storage_module._store = None
    rate_limit_module._rate_limiter = None
    masking_module._masking_engine = None
    sessions_module._session_manager = None
    csrf_module._csrf_guard = None
    credentials_module._credential_store = None
    metrics_module._metrics_collector = None


@pytest.fixture(autouse=True)
def security_env(monkeypatch: pytest.MonkeyPatch) -> Generator[Settings, None, None]:
    """Test secrets and cheap bcrypt for every test."""
    for name, value in TEST_SECRETS.items():
        monkeypatch.setenv(name, value)
    monkeypatch.setenv("LEDGERGUARD_AUTH_BCRYPT_ROUNDS", "10")

    with patch("ledgerguard.config.load_config_file", return_value={}):
        reset_singletons()
        settings = reload_settings()
        yield settings

    reset_singletons()
    get_settings.cache_clear()


@pytest.fixture
def store() -> DocumentStore:
    return get_store()


@pytest.fixture
def users(store: DocumentStore) -> UserRepository:
    return UserRepository(store)


@pytest.fixture
def credential_store() -> CredentialStore:
    return get_credential_store()


@pytest.fixture
def test_client() -> Generator[TestClient, None, None]:
    """FastAPI test client over a freshly built app."""
    app = create_app()
    with TestClient(app) as client:
        yield client


@pytest.fixture
def csrf_headers(test_client: TestClient) -> Dict[str, str]:
    """Header carrying a valid CSRF token for the client's session."""
    response = test_client.get("/v1/csrf-token")
    assert response.status_code == 200
    return {"X-CSRF-Token": response.json()["csrf_token"]}


@pytest.fixture
def registered_user(test_client: TestClient, csrf_headers: Dict[str, str]) -> Dict[str, Any]:
    """Alice, registered through the API. Returns the token response."""
    response = test_client.post("/v1/auth/register", json=ALICE, headers=csrf_headers)
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def alice() -> Dict[str, str]:
    return dict(ALICE)


@pytest.fixture
def flush_audit(test_client: TestClient) -> Callable[[], None]:
    """Waits for the app's audit writer to persist everything queued so far."""

    def flush() -> None:
        test_client.portal.call(test_client.app.state.audit_logger.flush)  # type: ignore[attr-defined,union-attr]

    return flush
