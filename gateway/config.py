"""Application settings and logging configuration."""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any, Literal

import structlog
from pydantic import AnyHttpUrl, BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_CONTEXT: dict[str, str] = {"environment": "development", "service": "agent-gateway"}

MAX_REFRESH_TOKEN_TTL_SECONDS = 30 * 24 * 60 * 60
_DURATION_PATTERN = re.compile(r"^(\d+)([smhd])$")
_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration_seconds(value: Any) -> Any:
    """Convert `30d`/`12h`/`15m`/`45s` strings into whole seconds."""
    if not isinstance(value, str):
        return value
    candidate = value.strip().lower()
    if candidate.isdigit():
        return int(candidate)
    match = _DURATION_PATTERN.match(candidate)
    if match is None:
        raise ValueError(f"Invalid duration format: {value!r}. Expected e.g. '30d', '12h'.")
    amount, unit = match.groups()
    return int(amount) * _DURATION_UNITS[unit]


class AppSettings(BaseModel):
    """Application identity and runtime settings."""

    environment: Literal["development", "staging", "production"]
    service: str = "agent-gateway"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class DatabaseSettings(BaseModel):
    """Database connection settings."""

    url: str = Field(description="Async SQLAlchemy URL using asyncpg driver.")
    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    pool_recycle_seconds: int = Field(default=1800, ge=-1)

    @field_validator("url")
    @classmethod
    def validate_asyncpg_url(cls, value: str) -> str:
        """Ensure SQLAlchemy uses the asyncpg driver."""
        if not value.startswith("postgresql+asyncpg://"):
            raise ValueError("database.url must start with 'postgresql+asyncpg://'.")
        return value


class RedisSettings(BaseModel):
    """Redis connection settings."""

    url: str = Field(description="Redis URL.")

    @field_validator("url")
    @classmethod
    def validate_redis_url(cls, value: str) -> str:
        """Ensure the Redis URL uses a supported scheme."""
        if not value.startswith(("redis://", "rediss://")):
            raise ValueError("redis.url must start with 'redis://' or 'rediss://'.")
        return value


class JWTSettings(BaseModel):
    """CLI session token signing and lifetime settings."""

    algorithm: Literal["RS256"] = "RS256"
    private_key_pem: SecretStr
    public_key_pem: SecretStr
    session_token_ttl_seconds: int = Field(default=3600, ge=1)
    refresh_token_ttl_seconds: int = Field(
        default=MAX_REFRESH_TOKEN_TTL_SECONDS, ge=1, le=MAX_REFRESH_TOKEN_TTL_SECONDS
    )

    @field_validator("session_token_ttl_seconds", "refresh_token_ttl_seconds", mode="before")
    @classmethod
    def parse_durations(cls, value: Any) -> Any:
        """Accept human-readable durations for token lifetimes."""
        return parse_duration_seconds(value)


class OAuthStateSettings(BaseModel):
    """OAuth state lifetime and sweep cadence."""

    ttl_seconds: int = Field(default=600, ge=1)
    sweep_interval_seconds: int = Field(default=300, ge=1)


class AtlassianSettings(BaseModel):
    """Atlassian OAuth 2.0 (3LO) client settings shared by Jira and Confluence."""

    client_id: str
    client_secret: SecretStr
    redirect_uri: AnyHttpUrl
    auth_base_url: str = "https://auth.atlassian.com"
    api_base_url: str = "https://api.atlassian.com"


class BitbucketSettings(BaseModel):
    """Bitbucket Cloud API settings."""

    api_base_url: str = "https://api.bitbucket.org/2.0"


class KygSettings(BaseModel):
    """KYG core service settings."""

    base_url: AnyHttpUrl


class ProviderSettings(BaseModel):
    """Outbound provider call settings."""

    timeout_seconds: float = Field(default=10.0, gt=0)


class TokenCacheSettings(BaseModel):
    """Process-local credential and provider client cache settings."""

    ttl_seconds: int = Field(default=300, ge=1)
    maxsize: int = Field(default=1024, ge=1)
    client_ttl_seconds: int = Field(default=1800, ge=1)


class RateLimitSettings(BaseModel):
    """Rate limiting thresholds."""

    default_requests_per_minute: int = Field(default=120, ge=1)
    session_requests_per_minute: int = Field(default=30, ge=1)
    connect_requests_per_minute: int = Field(default=20, ge=1)


class Settings(BaseSettings):
    """Root application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app: AppSettings
    database: DatabaseSettings
    redis: RedisSettings
    jwt: JWTSettings
    oauth_state: OAuthStateSettings = OAuthStateSettings()
    atlassian: AtlassianSettings
    bitbucket: BitbucketSettings = BitbucketSettings()
    kyg: KygSettings
    providers: ProviderSettings = ProviderSettings()
    token_cache: TokenCacheSettings = TokenCacheSettings()
    rate_limit: RateLimitSettings = RateLimitSettings()


def _standard_log_fields(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Inject required structured logging fields."""
    context_vars = structlog.contextvars.get_contextvars()
    event_dict.setdefault("correlation_id", str(context_vars.get("correlation_id", "unknown")))
    event_dict.setdefault("environment", _LOG_CONTEXT["environment"])
    event_dict.setdefault("service", _LOG_CONTEXT["service"])
    event_dict.setdefault("timestamp", datetime.now(UTC).isoformat())
    return event_dict


def configure_structlog(settings: Settings) -> None:
    """Configure structlog for JSON output with required fields."""
    _LOG_CONTEXT["environment"] = settings.app.environment
    _LOG_CONTEXT["service"] = settings.app.service

    log_level = getattr(logging, settings.app.log_level, logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _standard_log_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@lru_cache
def get_settings() -> Settings:
    """Load and cache application settings from environment variables."""
    return Settings()
