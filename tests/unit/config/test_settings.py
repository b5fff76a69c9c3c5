"""
Tests for settings loading and validation.
"""

import os
from pathlib import Path

import pydantic
import pytest

from ledgerguard.config import (
    AuthSettings,
    RateLimitSettings,
    SecretsSettings,
    _set_env_from_config,
    load_config_file,
)
from ledgerguard.core.exceptions import ConfigurationError


class TestSecretsSettings:
    """Startup secret checks."""

    def test_all_present(self, security_env) -> None:  # type: ignore[no-untyped-def]
        security_env.secrets.require_all()
        assert security_env.secrets.missing() == []

    def test_missing_secrets_listed(self) -> None:
        secrets = SecretsSettings(encryption_key="", jwt_secret="x", jwt_refresh_secret="", session_secret="y")

        with pytest.raises(ConfigurationError) as exc_info:
            secrets.require_all()

        assert exc_info.value.details["missing"] == ["ENCRYPTION_KEY", "JWT_REFRESH_SECRET"]

    def test_malformed_encryption_key(self) -> None:
        secrets = SecretsSettings(encryption_key="abc", jwt_secret="x", jwt_refresh_secret="y", session_secret="z")
        with pytest.raises(ConfigurationError, match="64 hex"):
            secrets.require_all()


class TestComponentSettings:
    """Validation of component settings."""

    def test_bcrypt_cost_floor(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            AuthSettings(bcrypt_rounds=8)

    def test_access_token_lifetime_capped(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            AuthSettings(access_token_ttl_seconds=86400)

    def test_rate_limits_merge_with_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LEDGERGUARD_RATE_LIMIT_LIMITS", '{"auth": {"max_requests": 10}}')
        limits = RateLimitSettings().limits

        assert limits["auth"] == {"max_requests": 10, "window_seconds": 900}
        assert limits["password_reset"] == {"max_requests": 3, "window_seconds": 3600}

    def test_unparseable_rate_limits_fall_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LEDGERGUARD_RATE_LIMIT_LIMITS", "not json")
        assert RateLimitSettings().limits["auth"]["max_requests"] == 5


class TestConfigFile:
    """YAML file as a source of defaults."""

    def test_load_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("server:\n  port: 8080\nrate_limit:\n  limits:\n    api:\n      max_requests: 20\n")

        assert load_config_file(str(path)) == {
            "server": {"port": 8080},
            "rate_limit": {"limits": {"api": {"max_requests": 20}}},
        }

    def test_missing_file(self, tmp_path: Path) -> None:
        assert load_config_file(str(tmp_path / "absent.yaml")) == {}

    def test_environment_wins_over_file(self, monkeypatch: pytest.MonkeyPatch) -> None:
        # Register both variables with monkeypatch so they are restored afterwards
        monkeypatch.setenv("LEDGERGUARD_PORT", "1")
        monkeypatch.delenv("LEDGERGUARD_PORT")
        monkeypatch.setenv("JWT_SECRET", "from-environment")

        _set_env_from_config({"server": {"port": 8080}, "secrets": {"jwt_secret": "from-file"}})

        assert os.environ["LEDGERGUARD_PORT"] == "8080"
        assert os.environ["JWT_SECRET"] == "from-environment"
