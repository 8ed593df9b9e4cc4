"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_llm_settings() -> "LLMSettings":
    """Build LLM settings from environment.

    Pydantic Settings (v2) can populate values from environment variables.
    However, static type checkers often treat required fields as required
    constructor arguments, which is not how BaseSettings is intended to be used.
    """

    return LLMSettings()  # type: ignore[call-arg]


class LLMSettings(BaseSettings):
    """Generative provider configuration.

    The key is optional here so the API can boot without it; the factory
    refuses to build a client when the provider needs one.
    """

    provider: str = Field(
        "openai",
        description="LLM provider name (e.g., openai)",
    )
    model: str = Field(
        "gpt-4o-mini",
        description="Model name used for prompt generation",
    )
    api_key: str | None = Field(
        None,
        description="API key for cloud providers (required for OpenAI)",
    )
    base_url: str | None = Field(
        None,
        description="Custom API endpoint (OpenAI-compatible gateways)",
    )
    timeout_seconds: float = Field(
        30.0,
        description="Request timeout in seconds",
    )

    model_config = SettingsConfigDict(
        env_prefix="LLM_",
        case_sensitive=False,
    )


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    admin_api_keys: str | None = Field(
        None,
        description="Comma-separated list of keys accepted on admin endpoints",
    )
    max_prompt_chars: int = Field(
        1000,
        description="Maximum prompt/idea length accepted by generation endpoints",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class CacheSettings(BaseSettings):
    """Networked cache (Redis) configuration.

    Leaving ``url`` unset disables the cache; the no-op backend is used and
    the usage limiter runs fail-open.
    """

    url: str | None = Field(
        None,
        description="Redis connection URL (redis:// or rediss://)",
    )
    token: str | None = Field(
        None,
        description="Redis password/token when the URL does not embed one",
    )
    default_ttl: int = Field(
        3600,
        description="TTL in seconds applied to writes that do not pass one",
        ge=1,
    )
    max_retries: int = Field(
        3,
        description="Retries on connection/timeout errors",
        ge=0,
    )
    retry_delay_ms: int = Field(
        1000,
        description="Base delay for exponential backoff between retries",
        ge=0,
    )
    max_backoff_ms: int = Field(
        10000,
        description="Upper bound for a single backoff delay",
        ge=0,
    )
    socket_timeout_seconds: float = Field(
        2.0,
        description="Per-call socket timeout; a timeout counts as a cache failure",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        case_sensitive=False,
    )


class UsageLimitSettings(BaseSettings):
    """Per-IP usage quota configuration."""

    max_usage: int = Field(
        3,
        description="Maximum privileged operations per IP per window",
        ge=1,
    )
    reset_period_hours: int = Field(
        24,
        description="Length of the per-IP rolling window in hours",
        ge=1,
    )
    lock_ttl_seconds: int = Field(
        30,
        description="TTL of the best-effort per-IP increment lock",
        ge=1,
    )
    enable_concurrency_control: bool = Field(
        True,
        description="Take the best-effort per-IP lock around increments",
    )
    fail_open: bool = Field(
        True,
        description="Allow the gated operation when the limiter cannot decide",
    )
    store_url: str | None = Field(
        None,
        description="SQLAlchemy async URL of the durable usage store (unset = none)",
    )
    stats_ttl_seconds: int = Field(
        300,
        description="How long aggregated statistics stay cached",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="USAGE_",
        case_sensitive=False,
    )

    @property
    def window_seconds(self) -> int:
        return self.reset_period_hours * 3600


class IPSettings(BaseSettings):
    """Client IP extraction options."""

    trust_proxy: bool = Field(
        True,
        description="Read forwarding headers set by reverse proxies/CDNs",
    )
    map_ipv6_to_ipv4: bool = Field(
        True,
        description="Collapse IPv4-mapped/compatible IPv6 addresses to IPv4",
    )
    allow_localhost: bool = Field(
        True,
        description="Treat loopback/private addresses as valid limiter keys",
    )
    dev_fallback_ip: str = Field(
        "127.0.0.1",
        description="Address used outside production when nothing else resolves",
    )

    model_config = SettingsConfigDict(
        env_prefix="IP_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="json or plain")
    output: str = Field("stdout", description="stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(0, description="Rotate file after this many bytes (0 = never)")
    backup_count: int = Field(5, description="Rotated files to keep")
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header carrying the correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are malformed.

    Environments:
    - development: Local development (DEBUG=true)
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    llm: LLMSettings = Field(default_factory=_build_llm_settings)
    app: AppSettings = Field(default_factory=AppSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    usage: UsageLimitSettings = Field(default_factory=UsageLimitSettings)
    ip: IPSettings = Field(default_factory=IPSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
