"""
Client-side configuration for the notification channel.
Uses pydantic-settings with the NOTIFYCORE_CLIENT_ prefix.
"""
from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ChannelSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="NOTIFYCORE_CLIENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Endpoints ─────────────────────────────────────────────────────────────
    BASE_URL: str = "http://localhost:8000"
    WS_URL: str | None = None
    API_PREFIX: str = "/api/v1"

    # ── Reconnection ──────────────────────────────────────────────────────────
    RECONNECT_ATTEMPTS: int = Field(default=5, ge=1)
    RECONNECT_DELAY: float = Field(default=1.0, ge=0)
    BACKOFF_FACTOR: float = Field(default=1.0, ge=1.0)
    MAX_RECONNECT_DELAY: float = Field(default=30.0, ge=0)

    # ── Timeouts ──────────────────────────────────────────────────────────────
    OPEN_TIMEOUT: float = 10.0
    REQUEST_TIMEOUT: float = 10.0

    @model_validator(mode="after")
    def derive_ws_url(self) -> "ChannelSettings":
        if self.WS_URL is None:
            base = self.BASE_URL.rstrip("/")
            if base.startswith("https://"):
                self.WS_URL = "wss://" + base[len("https://"):]
            elif base.startswith("http://"):
                self.WS_URL = "ws://" + base[len("http://"):]
            else:
                self.WS_URL = base
        return self

    def reconnect_delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempts count from 1)."""
        delay = self.RECONNECT_DELAY * (self.BACKOFF_FACTOR ** (attempt - 1))
        return min(delay, self.MAX_RECONNECT_DELAY)

    def socket_url(self, user_id: str) -> str:
        return f"{str(self.WS_URL).rstrip('/')}{self.API_PREFIX}/ws/{user_id}"
