"""
Configuration management with hot-reload capability.

Uses Pydantic Settings for environment variable handling and validation.
Secret material (encryption key, JWT secrets, session secret) is read from
the plain environment names used by the deployment contract.
"""

import json
import os
import re
from functools import lru_cache
from typing import Any, Dict, List, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


def load_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file."""
    if config_path is None:
        # Look for config.yaml in common locations
        possible_paths = [
            "config.yaml",  # Current directory
            "../../config.yaml",  # Project root from src/ledgerguard
        ]

        for path in possible_paths:
            if os.path.exists(path):
                config_path = path
                break
        else:
            return {}

    if os.path.exists(config_path):
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}
            return config_data
    return {}


class SecretsSettings(BaseSettings):
    """Process-wide secret material. All four values must be present at startup."""

    encryption_key: str = Field(default="", description="AES-256 key, 64 hex characters")
    jwt_secret: str = Field(default="", description="Access token signing secret")
    jwt_refresh_secret: str = Field(default="", description="Refresh token signing secret")
    session_secret: str = Field(default="", description="Session cookie signing secret")

    def missing(self) -> List[str]:
        """Names of the secret environment variables that are unset."""
        names = {
            "ENCRYPTION_KEY": self.encryption_key,
            "JWT_SECRET": self.jwt_secret,
            "JWT_REFRESH_SECRET": self.jwt_refresh_secret,
            "SESSION_SECRET": self.session_secret,
        }
        return [name for name, value in names.items() if not value]

    def require_all(self) -> None:
        """Raise ConfigurationError unless every secret is present and well formed."""
        from .core.exceptions import ConfigurationError

        missing = self.missing()
        if missing:
            raise ConfigurationError(
                f"Missing required secrets: {', '.join(missing)}",
                details={"missing": missing},
            )
        if not re.fullmatch(r"[0-9a-fA-F]{64}", self.encryption_key):
            raise ConfigurationError("ENCRYPTION_KEY must be 64 hex characters (32 bytes)")

    class Config:
        env_prefix = ""


class AuthSettings(BaseSettings):
    """Password hashing and token lifetime configuration."""

    bcrypt_rounds: int = Field(default=12, description="bcrypt cost factor")
    access_token_ttl_seconds: int = Field(default=7200, description="Access token lifetime (2h)")
    refresh_token_ttl_seconds: int = Field(default=604800, description="Refresh token lifetime (7d)")
    max_refresh_tokens: int = Field(default=5, description="Active refresh tokens kept per user")
    reset_token_ttl_seconds: int = Field(default=600, description="Password reset token lifetime (10min)")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    refresh_cookie_name: str = Field(default="refreshToken", description="Refresh token cookie")
    cookie_secure: bool = Field(default=False, description="Mark auth cookies Secure")

    @field_validator("bcrypt_rounds")
    def validate_bcrypt_rounds(cls, v: int) -> int:
        """bcrypt below cost 10 is too cheap to brute force."""
        if v < 10:
            raise ValueError("bcrypt_rounds must be at least 10")
        return v

    @field_validator("access_token_ttl_seconds")
    def validate_access_ttl(cls, v: int) -> int:
        if v <= 0 or v > 7200:
            raise ValueError("access_token_ttl_seconds must be between 1 and 7200")
        return v

    class Config:
        env_prefix = "LEDGERGUARD_AUTH_"


class CsrfSettings(BaseSettings):
    """CSRF double-submit and session cookie configuration."""

    header_name: str = Field(default="X-CSRF-Token", description="Header carrying the CSRF token")
    body_field: str = Field(default="_csrf", description="JSON body field fallback")
    session_cookie_name: str = Field(default="sessionId", description="Session cookie name")
    session_ttl_seconds: int = Field(default=86400, description="Server-side session lifetime")

    class Config:
        env_prefix = "LEDGERGUARD_CSRF_"


DEFAULT_RATE_LIMITS: Dict[str, Dict[str, int]] = {
    "auth": {"max_requests": 5, "window_seconds": 900},
    "password_reset": {"max_requests": 3, "window_seconds": 3600},
    "api": {"max_requests": 100, "window_seconds": 900},
    "modification": {"max_requests": 50, "window_seconds": 900},
    "report": {"max_requests": 10, "window_seconds": 900},
}


class RateLimitSettings(BaseSettings):
    """Per route-class request budgets."""

    limits: Dict[str, Dict[str, int]] = Field(
        default_factory=lambda: {k: dict(v) for k, v in DEFAULT_RATE_LIMITS.items()},
        description="Route class -> {max_requests, window_seconds}",
    )

    @field_validator("limits", mode="before")
    def parse_limits(cls, v: Any) -> Dict[str, Dict[str, int]]:
        """Parse limits from JSON string if needed, filling unspecified classes with defaults."""
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except json.JSONDecodeError:
                v = {}
        if not isinstance(v, dict):
            v = {}
        merged = {k: dict(rule) for k, rule in DEFAULT_RATE_LIMITS.items()}
        for route_class, rule in v.items():
            merged[route_class] = {**merged.get(route_class, {}), **rule}
        return merged

    class Config:
        env_prefix = "LEDGERGUARD_RATE_LIMIT_"


class AuditSettings(BaseSettings):
    """Audit log and intrusion heuristics configuration."""

    queue_max_size: int = Field(default=10000, description="Pending audit events before dropping")
    summary_window_days: int = Field(default=30, description="Security summary trailing window")
    suspicious_window_hours: int = Field(default=24, description="Suspicious activity lookback")
    max_proxy_hops: int = Field(default=3, description="X-Forwarded-For entries before flagging")
    min_user_agent_length: int = Field(default=10, description="Shorter user agents are flagged")

    class Config:
        env_prefix = "LEDGERGUARD_AUDIT_"


class MaskingSettings(BaseSettings):
    """Keys redacted from audit details before they are encrypted and stored."""

    baseline_keys: List[str] = Field(
        default=["password", "token", "authorization", "secret", "card_number", "_csrf"],
        description="Keys to always mask",
    )
    partial_rules: Dict[str, Dict[str, Any]] = Field(
        default={"authorization": {"keep_prefix": 5}, "email": {"mask_email": True}},
        description="Partial masking rules for specific keys",
    )

    class Config:
        env_prefix = "LEDGERGUARD_MASKING_"


class Settings(BaseSettings):
    """Main application settings."""

    # Server configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=5000, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Log level")
    cors_origins: List[str] = Field(
        default=["http://localhost:5173"],
        description="Origins allowed to call the API with credentials",
    )
    trusted_proxy_hops: int = Field(
        default=0,
        ge=0,
        description="Reverse proxies in front of the service whose X-Forwarded-For entries are trusted",
    )

    # Component settings
    secrets: SecretsSettings = Field(default_factory=SecretsSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    csrf: CsrfSettings = Field(default_factory=CsrfSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    masking: MaskingSettings = Field(default_factory=MaskingSettings)

    class Config:
        env_prefix = "LEDGERGUARD_"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance with config file and env support."""

    # Load config file data
    config_data = load_config_file()

    # Config file provides defaults, env vars override
    if config_data:
        _set_env_from_config(config_data)

    settings = Settings()
    return settings


def _set_env_from_config(config_data: Dict[str, Any]) -> None:
    """Set environment variables from config file if not already set."""
    mappings = {
        ("server", "host"): "LEDGERGUARD_HOST",
        ("server", "port"): "LEDGERGUARD_PORT",
        ("server", "debug"): "LEDGERGUARD_DEBUG",
        ("server", "log_level"): "LEDGERGUARD_LOG_LEVEL",
        ("server", "trusted_proxy_hops"): "LEDGERGUARD_TRUSTED_PROXY_HOPS",
        ("secrets", "encryption_key"): "ENCRYPTION_KEY",
        ("secrets", "jwt_secret"): "JWT_SECRET",
        ("secrets", "jwt_refresh_secret"): "JWT_REFRESH_SECRET",
        ("secrets", "session_secret"): "SESSION_SECRET",
        ("auth", "bcrypt_rounds"): "LEDGERGUARD_AUTH_BCRYPT_ROUNDS",
        ("auth", "access_token_ttl_seconds"): "LEDGERGUARD_AUTH_ACCESS_TOKEN_TTL_SECONDS",
        ("auth", "refresh_token_ttl_seconds"): "LEDGERGUARD_AUTH_REFRESH_TOKEN_TTL_SECONDS",
        ("auth", "cookie_secure"): "LEDGERGUARD_AUTH_COOKIE_SECURE",
        ("audit", "queue_max_size"): "LEDGERGUARD_AUDIT_QUEUE_MAX_SIZE",
    }

    for (section, key), env_var in mappings.items():
        if env_var not in os.environ:
            value = (config_data.get(section) or {}).get(key)
            if value is not None:
                os.environ[env_var] = str(value)

    # Structured values travel as JSON strings
    json_mappings = {
        ("server", "cors_origins"): "LEDGERGUARD_CORS_ORIGINS",
        ("rate_limit", "limits"): "LEDGERGUARD_RATE_LIMIT_LIMITS",
        ("masking", "baseline_keys"): "LEDGERGUARD_MASKING_BASELINE_KEYS",
        ("masking", "partial_rules"): "LEDGERGUARD_MASKING_PARTIAL_RULES",
    }

    for (section, key), env_var in json_mappings.items():
        if env_var not in os.environ:
            value = (config_data.get(section) or {}).get(key)
            if value:
                os.environ[env_var] = json.dumps(value)


def reload_settings() -> Settings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
