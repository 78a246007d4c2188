"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development (in-memory
alert store, preferences kept in memory).

Usage:
    from backend.app.core.config import settings
    print(settings.ALERT_LOOKBACK_SECONDS)
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "FindMe Community Alerts"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:8000",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Alert store ──
    ALERT_STORE_BACKEND: str = "memory"  # memory | redis
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_KEY_PREFIX: str = "findme"
    REDIS_BLOCK_MS: int = 1000  # XREAD block per poll of a tail subscription

    # ── Alert freshness ──
    ALERT_LOOKBACK_SECONDS: int = 300  # watermark seed = now - lookback
    ALERT_TIMESTAMP_FORMAT: str = "%Y-%m-%d %H:%M:%S"  # wire format, local time
    DEFAULT_COMMUNITY: str = "PUBLIC"
    CHANNEL_OUTBOX_SIZE: int = 50

    # ── Observers ──
    FOREGROUND_OBSERVER_ID: str = "ui"
    BACKGROUND_OBSERVER_ID: str = "background"
    SHARE_FOREGROUND_WATERMARK: bool = False  # legacy: UI accepts advance the durable mark

    # ── Local state ──
    PREFERENCES_PATH: Optional[str] = "data/preferences.json"  # empty → memory only

    # ── Identity ──
    HANDLE_PREFIX: str = "USER-"
    HANDLE_SUFFIX_LENGTH: int = 3
    HANDLE_MAX_ATTEMPTS: int = 20

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def lookback_ms(self) -> int:
        return self.ALERT_LOOKBACK_SECONDS * 1000


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
