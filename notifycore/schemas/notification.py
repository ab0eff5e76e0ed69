"""
Notification Pydantic schemas.
Includes the creation payload, the read model, the list filter and stats.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from notifycore.models.notification import NotificationType, as_utc
from notifycore.schemas.pagination import OffsetPage

TITLE_MAX_LENGTH = 200
MESSAGE_MAX_LENGTH = 1000


# ── Create ────────────────────────────────────────────────────────────────────

class NotificationContent(BaseModel):
    """Fields shared by every notification payload, whatever its type."""

    title: str = Field(min_length=1, max_length=TITLE_MAX_LENGTH)
    message: str = Field(min_length=1, max_length=MESSAGE_MAX_LENGTH)
    data: dict[str, Any] | None = None
    expires_at: datetime | None = None

    @field_validator("title", "message")
    @classmethod
    def reject_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    @field_validator("data")
    @classmethod
    def require_serializable(cls, v: dict[str, Any] | None) -> dict[str, Any] | None:
        if v is None:
            return v
        try:
            json.dumps(v)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"data must be JSON serializable: {exc}") from exc
        return v

    @field_validator("expires_at")
    @classmethod
    def normalise_expiry(cls, v: datetime | None) -> datetime | None:
        return as_utc(v) if v is not None else None


class NotificationCreate(NotificationContent):
    type: NotificationType


class SystemNotificationCreate(NotificationContent):
    user_ids: list[str] = Field(min_length=1, max_length=1000)


# ── Read ──────────────────────────────────────────────────────────────────────

class NotificationRead(BaseModel):
    id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    data: dict[str, Any] | None = None
    read: bool
    created_at: datetime
    expires_at: datetime | None = None

    model_config = {"from_attributes": True}


class NotificationStats(BaseModel):
    total: int = 0
    unread: int = 0
    by_type: dict[str, int] = Field(
        default_factory=lambda: {t.value: 0 for t in NotificationType}
    )


class NotificationPage(OffsetPage[NotificationRead]):
    stats: NotificationStats


class MarkAllReadResult(BaseModel):
    marked_count: int


# ── Filter ────────────────────────────────────────────────────────────────────

class NotificationFilter(BaseModel):
    """Predicates for notification queries. Unset fields match everything."""

    user_id: str | None = None
    type: NotificationType | None = None
    read: bool | None = None
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)


# ── Announcements ─────────────────────────────────────────────────────────────

class AnnouncementCreate(BaseModel):
    message: str = Field(min_length=1, max_length=MESSAGE_MAX_LENGTH)


class AnnouncementResult(BaseModel):
    delivered: int


class ConnectionInfo(BaseModel):
    socket_id: str
    user_id: str
    state: str
    connected_at: datetime
