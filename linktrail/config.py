"""Configuration management for the linktrail service.

This module provides centralized configuration management using Pydantic BaseSettings
with environment variable support and caching for performance.

How to Use
===========
**Step 1: Import**::
    from linktrail.config import get_settings

**Step 2: Get settings**::
    settings = get_settings()
    db_url = settings.DATABASE_URL

Key Behaviours
===============
- Settings are cached after first access.
- Environment variables (and a local ``.env`` file) override defaults.
- Timeouts apply to the synchronous redirect path only; background work
  uses the retry settings instead.

Classes:
    Settings:  Pydantic model for all configuration values.
"""

__all__ = ["Settings", "get_settings"]

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "linktrail"
    APP_ENV: str = "development"
    BASE_URL: str = "http://localhost:8080"

    # PostgreSQL
    DATABASE_URL: str = "postgresql+asyncpg://linktrail:linktrail@db:5432/linktrail"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 10

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"
    REDIS_REPLICA_URL: str = ""

    # Short code generation
    SHORT_CODE_LENGTH: int = 7
    SHORT_CODE_MAX_ATTEMPTS: int = 5
    ALIAS_MIN_LENGTH: int = 4
    ALIAS_MAX_LENGTH: int = 15

    # Cache TTLs
    LINK_CACHE_TTL_SECONDS: int = 3600
    LISTING_CACHE_TTL_SECONDS: int = 300

    # Redirect path timeouts
    CACHE_TIMEOUT_SECONDS: float = 0.25
    STORE_TIMEOUT_SECONDS: float = 2.0

    # Analytics recording
    ANALYTICS_EVENT_RETENTION: int = 1000
    ANALYTICS_MAX_RETRIES: int = 3
    ANALYTICS_RETRY_BASE_DELAY_SECONDS: float = 0.05

    # Background work
    SHUTDOWN_DRAIN_TIMEOUT_SECONDS: float = 10.0
    REAPER_ENABLED: bool = True
    REAPER_INTERVAL_SECONDS: int = 300

    # Rate limiting (POST /api/shorten, per client IP, fixed window)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 900

    # Only honour X-Forwarded-For behind a proxy that sets it
    TRUST_FORWARDED_FOR: bool = False

    # Optional MaxMind database for geolocation; unset means every lookup is "Unknown"
    GEOIP_DATABASE_PATH: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
