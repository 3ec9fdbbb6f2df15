"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Usage:
    from sosrelay.app.core.config import settings
    print(settings.BACKEND_URL)
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
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Backend of record (server side) ──
    HOST: str = "0.0.0.0"
    PORT: int = 3001
    RELOAD: bool = False
    REGISTRY_SNAPSHOT_PATH: Optional[str] = None  # JSON snapshot, None = memory only

    # ── CORS (municipality / hospital / volunteer dashboards) ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:8080",
        "http://localhost:5173",
    ]
    CORS_ALLOW_ALL: bool = True

    # ── Backend of record (client side) ──
    BACKEND_URL: str = "http://localhost:3001"
    BACKEND_API_PREFIX: str = "/api/v1"
    BACKEND_TIMEOUT_SECONDS: float = 10.0

    # ── Device ──
    DEVICE_ID: str = "device-local"
    STORE_URL: str = "sqlite:///sos_relay_device.db"
    CACHE_MAX_RECORDS: int = 50
    CACHE_SEEN_IDS_MAX: int = 1000
    NOTIFICATION_HISTORY_MAX: int = 100
    DEVICE_WARNINGS_MAX: int = 50

    # ── Authoritative sync ──
    SYNC_POLL_INTERVAL_SECONDS: float = 5.0
    SYNC_GRACE_WINDOW_SECONDS: float = 180.0
    SYNC_FETCH_LIMIT: Optional[int] = 50

    # ── Peer relay ──
    RELAY_SERVICE_UUID: str = "0000180D-0000-1000-8000-00805F9B34FB"
    RELAY_CHARACTERISTIC_UUID: str = "00002A37-0000-1000-8000-00805F9B34FB"
    RELAY_FALLBACK_INTERVAL_SECONDS: float = 10.0
    RELAY_STEP_TIMEOUT_SECONDS: float = 8.0
    RELAY_LINK_SETTLE_SECONDS: float = 0.5
    RELAY_PEER_COOLDOWN_SECONDS: float = 30.0
    RELAY_FORWARD_RECEIVED: bool = True

    # ── Service area (default coordinates when geolocation fails) ──
    SERVICE_AREA_LAT: float = 27.65
    SERVICE_AREA_LNG: float = 85.45
    SERVICE_AREA_JITTER_DEG: float = 0.005
    DEFAULT_WARD_NO: str = "Ward 16"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
