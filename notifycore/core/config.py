"""
Core configuration module for NotifyCore.
Uses pydantic-settings for environment variable management with full validation.
"""
from __future__ import annotations

import json
from typing import Any

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────────────────────
    APP_NAME: str = "NotifyCore"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    API_V1_STR: str = "/api/v1"

    # ── Security ──────────────────────────────────────────────────────────────
    SECRET_KEY: str = "change-this-secret-key-in-production-min-32-chars"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # ── CORS ──────────────────────────────────────────────────────────────────
    ALLOWED_ORIGINS: list[str] = ["*"]

    # ── Rate Limiting ─────────────────────────────────────────────────────────
    RATE_LIMIT_CREATE: str = "60/minute"

    # ── Notifications ─────────────────────────────────────────────────────────
    NOTIFICATION_DEFAULT_LIMIT: int = 50
    NOTIFICATION_MAX_LIMIT: int = 100
    NOTIFICATION_CLEANUP_INTERVAL_SECONDS: float = 30 * 60

    # ── WebSocket ─────────────────────────────────────────────────────────────
    WS_HEARTBEAT_INTERVAL: float = 30

    # ── Email (SMTP) ──────────────────────────────────────────────────────────
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USER: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_FROM: str = "noreply@notifycore.local"
    SMTP_USE_TLS: bool = False
    # None lets aiosmtplib upgrade when the server offers STARTTLS
    SMTP_START_TLS: bool | None = None
    SMTP_TIMEOUT: float = 30

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def parse_allowed_origins(cls, v: Any) -> list[str]:
        """Accept JSON array string or Python list."""
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
                if isinstance(parsed, list):
                    return parsed
            except (json.JSONDecodeError, ValueError):
                pass
            # Comma-separated fallback
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalise_log_level(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        if len(self.SECRET_KEY) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        if self.NOTIFICATION_DEFAULT_LIMIT > self.NOTIFICATION_MAX_LIMIT:
            raise ValueError(
                "NOTIFICATION_DEFAULT_LIMIT must not exceed NOTIFICATION_MAX_LIMIT"
            )
        if self.SMTP_USE_TLS and self.SMTP_START_TLS:
            raise ValueError("SMTP_USE_TLS and SMTP_START_TLS are mutually exclusive")
        return self

    @property
    def access_token_expire_seconds(self) -> int:
        return self.ACCESS_TOKEN_EXPIRE_MINUTES * 60


settings = Settings()
