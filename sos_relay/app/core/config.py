"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development: the in-memory
store, no push server key and no advisory API key, so the relay runs
end-to-end on a laptop without any external account.

Usage:
    from sos_relay.app.core.config import settings
    print(settings.FIREBASE_DATABASE_URL)
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
    APP_NAME: str = "SOS Relay"
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
        "http://localhost:5173",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Realtime store ──
    STORE_BACKEND: str = "memory"  # memory | firebase
    FIREBASE_DATABASE_URL: Optional[str] = None
    FIREBASE_AUTH_TOKEN: Optional[str] = None  # database secret or ID token
    STORE_TIMEOUT_SECONDS: float = 15.0
    STORE_RECONNECT_SECONDS: float = 5.0

    # ── Push broadcast ──
    FCM_SERVER_KEY: Optional[str] = None
    FCM_ENDPOINT: str = "https://fcm.googleapis.com/fcm/send"
    FCM_CLICK_ACTION: str = "/"
    PUSH_TIMEOUT_SECONDS: float = 10.0

    # ── Advisory text ──
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-2.0-flash"
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta/models"
    ADVISORY_TIMEOUT_SECONDS: float = 20.0

    # ── Dispatcher gate (static shared secret, placeholder only) ──
    DISPATCHER_BADGE_ID: str = "DISPATCH_01"
    DISPATCHER_PASSWORD: str = "change-me"

    # ── Citizen flow ──
    EMERGENCY_SMS_NUMBER: str = "112"
    COUNTRY_DIAL_CODE: str = "+258"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def push_configured(self) -> bool:
        return bool(self.FCM_SERVER_KEY)


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
