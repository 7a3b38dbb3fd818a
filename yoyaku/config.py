"""Centralized configuration loaded from environment variables."""

from __future__ import annotations

import datetime as dt
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application-wide settings sourced from .env / environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────────────
    yoyaku_env: str = "development"
    yoyaku_log_level: str = "INFO"
    yoyaku_encryption_key: str = ""

    # ── API Server ───────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: str = "*"
    auth_hook_secret: str = ""

    # ── Database ─────────────────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///data/yoyaku.db"

    # ── Google Calendar ──────────────────────────────────────────────
    google_client_id: str = ""
    google_client_secret: str = ""
    google_token_uri: str = "https://oauth2.googleapis.com/token"
    calendar_timezone: str = "Asia/Tokyo"
    calendar_timeout_seconds: float = 10.0
    calendar_retry_attempts: int = 3

    # ── Booking ──────────────────────────────────────────────────────
    availability_marker: str = "[予約可]"
    sync_window_days: int = 30
    slot_minutes: int = 30
    allow_guest_booking: bool = True

    @field_validator("slot_minutes", "sync_window_days")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("availability_marker")
    @classmethod
    def _marker_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("availability marker cannot be blank")
        return value

    # ── Derived ──────────────────────────────────────────────────────
    @property
    def slot_length(self) -> dt.timedelta:
        return dt.timedelta(minutes=self.slot_minutes)

    @property
    def sync_window(self) -> dt.timedelta:
        return dt.timedelta(days=self.sync_window_days)

    @property
    def cors_origin_list(self) -> list[str]:
        """Parse comma-separated CORS origins."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def google_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the singleton Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
