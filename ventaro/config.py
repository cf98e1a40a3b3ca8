from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ventaro.logging import get_logger

logger = get_logger(__name__)

# Development defaults carry this prefix and are refused in production
DEV_SECRET_PREFIX = "dev-only-"
_MIN_SECRET_LENGTH = 32


class ConfigurationError(RuntimeError):
    """Raised when settings are unsafe for the configured environment."""


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment and an optional .env file."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"],
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed origins",
    )
    trusted_proxies: list[str] = env_field(
        [],
        "TRUSTED_PROXIES",
        description="Comma separated peer addresses whose X-Forwarded-For header is honoured",
    )

    # Signing secrets
    jwt_secret: str = env_field(
        "dev-only-access-token-secret-change-me-before-deploying", "JWT_SECRET"
    )
    jwt_refresh_secret: str = env_field(
        "dev-only-refresh-token-secret-change-me-before-deploying", "JWT_REFRESH_SECRET"
    )
    jwt_issuer: str = env_field("ventaro-ai", "JWT_ISSUER")
    jwt_access_audience: str = env_field("ventaro-ai-users", "JWT_ACCESS_AUDIENCE")
    jwt_refresh_audience: str = env_field("ventaro-ai-refresh", "JWT_REFRESH_AUDIENCE")
    csrf_secret: str = env_field(
        "dev-only-csrf-secret-change-me-before-deploying-now", "CSRF_SECRET"
    )

    # Admin credentials
    admin_username: str = env_field("admin", "ADMIN_USERNAME")
    admin_password_hash: str | None = env_field(
        None,
        "ADMIN_PASSWORD_HASH",
        description="argon2id hash produced by scripts/hash_admin_password.py",
    )

    # Token lifetimes
    access_token_ttl_seconds: int = env_field(24 * 60 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS"
    )
    csrf_token_ttl_seconds: int = env_field(60 * 60, "CSRF_TOKEN_TTL_SECONDS")

    # Login throttling
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS")
    login_lockout_seconds: int = env_field(30 * 60, "LOGIN_LOCKOUT_SECONDS")
    login_attempt_window_seconds: int = env_field(15 * 60, "LOGIN_ATTEMPT_WINDOW_SECONDS")

    # Rate limit tiers (requests per window)
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_default: int = env_field(60, "RATE_LIMIT_DEFAULT")
    rate_limit_admin: int = env_field(30, "RATE_LIMIT_ADMIN")
    rate_limit_auth: int = env_field(10, "RATE_LIMIT_AUTH")
    rate_limit_sensitive: int = env_field(5, "RATE_LIMIT_SENSITIVE")
    rate_limit_max_buckets: int = env_field(1000, "RATE_LIMIT_MAX_BUCKETS")

    # Payment provider
    stripe_secret_key: str | None = env_field(None, "STRIPE_SECRET_KEY")
    stripe_webhook_secret: str | None = env_field(None, "STRIPE_WEBHOOK_SECRET")
    stripe_api_base: str = env_field("https://api.stripe.com", "STRIPE_API_BASE")
    payment_timeout_seconds: float = env_field(10.0, "PAYMENT_TIMEOUT_SECONDS")
    payment_max_retries: int = env_field(3, "PAYMENT_MAX_RETRIES")

    # Shared state backend
    use_redis: bool = env_field(False, "USE_REDIS")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")

    maintenance_interval_seconds: int = env_field(300, "MAINTENANCE_INTERVAL_SECONDS")
    monitoring_severity_threshold: str = env_field(
        "critical",
        "MONITORING_SEVERITY_THRESHOLD",
        description="Minimum error severity forwarded to the monitoring sink",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            return Environment(value.strip().lower())
        return Environment(value)

    @field_validator("cors_allow_origins", "trusted_proxies", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    def default_secret_names(self) -> list[str]:
        """Return the names of secrets still carrying development defaults."""
        names = []
        for name in ("jwt_secret", "jwt_refresh_secret", "csrf_secret"):
            value = getattr(self, name)
            if not value or value.startswith(DEV_SECRET_PREFIX):
                names.append(name)
        return names

    def validate_for_production(self) -> None:
        """Refuse to run in production with development defaults or weak secrets."""
        if not self.is_production:
            defaults = self.default_secret_names()
            if defaults:
                logger.warning("development_secrets_in_use", settings=defaults)
            return
        problems: list[str] = []
        for name in self.default_secret_names():
            problems.append(f"{name.upper()} is unset or a development default")
        for name in ("jwt_secret", "jwt_refresh_secret", "csrf_secret"):
            value = getattr(self, name) or ""
            if value and len(value) < _MIN_SECRET_LENGTH:
                problems.append(f"{name.upper()} must be at least {_MIN_SECRET_LENGTH} characters")
        if self.jwt_secret == self.jwt_refresh_secret:
            problems.append("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        if not self.admin_password_hash:
            problems.append("ADMIN_PASSWORD_HASH is not configured")
        if problems:
            for problem in problems:
                logger.error("unsafe_production_setting", problem=problem)
            raise ConfigurationError("; ".join(problems))


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
