"""
Notification business logic service.
Enforces ownership, validates payloads, fans out system notifications and
hands created or mutated notifications to the realtime publisher.
"""
from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Sequence

from pydantic import ValidationError

from notifycore.core.exceptions import CreationError
from notifycore.models.notification import Notification, NotificationType, utcnow
from notifycore.schemas.notification import (
    NotificationContent,
    NotificationCreate,
    NotificationFilter,
    NotificationStats,
)
from notifycore.services.audit_service import AuditService
from notifycore.services.email_service import EmailService
from notifycore.store.notification_store import NotificationStore

if TYPE_CHECKING:
    from datetime import datetime

    from notifycore.services.realtime_service import RealtimePublisher

logger = logging.getLogger(__name__)


def _validation_reason(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(loc) for loc in error['loc']) or 'payload'}: {error['msg']}"
        for error in exc.errors()
    )


class NotificationService:

    def __init__(
        self,
        store: NotificationStore,
        *,
        audit: AuditService | None = None,
        clock: Callable[[], "datetime"] = utcnow,
        mailer: EmailService | None = None,
    ) -> None:
        self._store = store
        self._audit = audit or AuditService()
        self._clock = clock
        self._mailer = mailer or EmailService()
        self._publisher: RealtimePublisher | None = None

    def bind_publisher(self, publisher: "RealtimePublisher | None") -> None:
        self._publisher = publisher

    @property
    def store(self) -> NotificationStore:
        return self._store

    # ── Creation ──────────────────────────────────────────────────────────────

    async def create(
        self,
        user_id: str,
        payload: NotificationCreate | Mapping[str, Any],
    ) -> Notification:
        """
        Validate the payload, persist a new notification and schedule its
        realtime delivery. Raises CreationError when the payload is invalid.
        """
        if not isinstance(payload, NotificationCreate):
            try:
                payload = NotificationCreate.model_validate(payload)
            except ValidationError as exc:
                raise CreationError(_validation_reason(exc)) from exc
        self._require_user_id(user_id)
        return self._create_validated(user_id, payload)

    async def create_system_notification(
        self,
        payload: NotificationContent | Mapping[str, Any],
        user_ids: Iterable[str],
    ) -> list[Notification]:
        """
        Create one ``system`` notification per user.
        The payload is validated once before any record is written, so an
        invalid payload creates nothing.
        """
        raw = payload.model_dump() if isinstance(payload, NotificationContent) else dict(payload)
        raw.pop("user_ids", None)
        raw["type"] = NotificationType.SYSTEM
        try:
            validated = NotificationCreate.model_validate(raw)
        except ValidationError as exc:
            raise CreationError(_validation_reason(exc)) from exc

        targets = list(dict.fromkeys(user_ids))
        for user_id in targets:
            self._require_user_id(user_id)

        notifications = [self._create_validated(user_id, validated) for user_id in targets]

        self._audit.log(
            "SYSTEM_NOTIFICATION_BROADCAST",
            meta={"count": len(notifications), "title": validated.title},
        )
        return notifications

    def _create_validated(self, user_id: str, payload: NotificationCreate) -> Notification:
        notification = Notification(
            id=str(uuid.uuid4()),
            user_id=user_id,
            type=payload.type,
            title=payload.title,
            message=payload.message,
            data=payload.data,
            read=False,
            created_at=self._clock(),
            expires_at=payload.expires_at,
        )
        self._store.insert(notification)

        self._audit.log(
            "NOTIFICATION_CREATED",
            user_id=user_id,
            meta={"notification_id": notification.id, "type": notification.type.value},
        )
        logger.info(
            "Notification created: id=%s user_id=%s type=%s",
            notification.id,
            user_id,
            notification.type.value,
        )

        # Only after the write: a push must never announce an invisible record
        self._push_notification(notification)
        return notification

    @staticmethod
    def _require_user_id(user_id: str) -> None:
        if not isinstance(user_id, str) or not user_id.strip():
            raise CreationError("user_id must be a non-empty string")

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def get_notifications(self, filter: NotificationFilter) -> list[Notification]:
        return self._store.query(filter, now=self._clock())

    async def count_notifications(self, filter: NotificationFilter) -> int:
        return self._store.count(filter, now=self._clock())

    async def get_notification_stats(self, user_id: str) -> NotificationStats:
        return self._store.stats_for(user_id, now=self._clock())

    # ── Mutations ─────────────────────────────────────────────────────────────

    async def mark_as_read(self, notification_id: str, requesting_user_id: str) -> bool:
        """
        Mark a notification read on behalf of its owner.

        Returns False when the notification does not exist. Raises
        AuthorizationError when it belongs to someone else. Marking an
        already-read notification returns True.
        """
        notification = self._store.check_and_set_read(notification_id, requesting_user_id)
        if notification is None:
            return False

        self._audit.log(
            "NOTIFICATION_READ",
            user_id=requesting_user_id,
            meta={"notification_id": notification_id},
        )
        self._push_event(requesting_user_id, "notification_read", notification_id)
        return True

    async def mark_all_as_read(self, user_id: str) -> int:
        count = self._store.mark_all_read(user_id, now=self._clock())
        if count > 0:
            self._audit.log("NOTIFICATIONS_BULK_READ", user_id=user_id, meta={"count": count})
            self._push_event(user_id, "notifications_read_all", {"count": count})
        return count

    async def delete_notification(self, notification_id: str, requesting_user_id: str) -> bool:
        """
        Delete a notification on behalf of its owner.
        Same not-found / unauthorized distinction as mark_as_read.
        """
        notification = self._store.check_and_remove(notification_id, requesting_user_id)
        if notification is None:
            return False

        self._audit.log(
            "NOTIFICATION_DELETED",
            user_id=requesting_user_id,
            meta={"notification_id": notification_id},
        )
        self._push_event(requesting_user_id, "notification_deleted", notification_id)
        return True

    async def cleanup_expired_notifications(self) -> int:
        count = self._store.sweep_expired(now=self._clock())
        if count > 0:
            logger.info("Cleaned up expired notifications: count=%d", count)
            self._audit.log("NOTIFICATIONS_CLEANUP", meta={"count": count})
        return count

    # ── Email ─────────────────────────────────────────────────────────────────

    async def send_email(
        self,
        to: str | Sequence[str],
        subject: str,
        text: str,
        html: str | None = None,
    ) -> None:
        """Send an email. Raises EmailDeliveryError when SMTP delivery fails."""
        await self._mailer.send_email(to, subject, text, html)

    async def send_email_with_attachment(
        self,
        to: str | Sequence[str],
        subject: str,
        text: str,
        attachment_path: str | Path,
        attachment_name: str | None = None,
        html: str | None = None,
    ) -> None:
        await self._mailer.send_email_with_attachment(
            to, subject, text, attachment_path, attachment_name, html
        )

    # ── Realtime hand-off ─────────────────────────────────────────────────────

    def _push_notification(self, notification: Notification) -> None:
        if self._publisher is None:
            return
        try:
            self._publisher.dispatch(notification)
        except Exception as exc:
            logger.error(
                "Failed to schedule realtime delivery: notification_id=%s user_id=%s: %s",
                notification.id,
                notification.user_id,
                exc,
            )

    def _push_event(self, user_id: str, event_type: str, data: Any) -> None:
        if self._publisher is None:
            return
        try:
            self._publisher.dispatch_event(user_id, event_type, data)
        except Exception as exc:
            logger.error(
                "Failed to schedule realtime event: event=%s user_id=%s: %s",
                event_type,
                user_id,
                exc,
            )
