"""
Audit event service.
Records business events (NOTIFICATION_CREATED, NOTIFICATION_READ, ...) to the
audit logger and to an optional external sink. Fire-and-forget: a failing
sink never breaks the operation that produced the event.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from pydantic import BaseModel, Field

from notifycore.models.notification import utcnow

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("notifycore.audit")


class AuditEvent(BaseModel):
    action: str
    user_id: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)


AuditSink = Callable[[AuditEvent], None]


class AuditService:

    def __init__(self, sink: AuditSink | None = None) -> None:
        self._sink = sink

    def log(
        self,
        action: str,
        *,
        user_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Record an audit event.
        Sink failures are logged and swallowed so that audit trouble never
        fails the notification operation that produced the event.
        """
        event = AuditEvent(action=action, user_id=user_id, meta=meta or {})
        audit_logger.info("%s user_id=%s meta=%s", action, user_id, event.meta)
        if self._sink is not None:
            try:
                self._sink(event)
            except Exception as exc:
                logger.error(
                    "Failed to forward audit event: action=%s user_id=%s: %s",
                    action,
                    user_id,
                    exc,
                )
        return event
