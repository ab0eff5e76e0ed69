"""
User-facing alerts raised by the notification channel.

Duration and visual treatment depend only on the notification type.
System announcements and connection loss use their own, separate styles.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable

from notifycore.models.notification import NotificationType
from notifycore.schemas.notification import NotificationRead

logger = logging.getLogger(__name__)


class AlertKind(str, enum.Enum):
    NOTIFICATION = "notification"
    ANNOUNCEMENT = "announcement"
    CONNECTION = "connection"


class AlertSeverity(str, enum.Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class AlertPosition(str, enum.Enum):
    TOP_RIGHT = "top-right"
    TOP_CENTER = "top-center"


@dataclass(frozen=True)
class AlertStyle:
    severity: AlertSeverity
    icon: str
    duration: float


@dataclass(frozen=True)
class Alert:
    kind: AlertKind
    message: str
    severity: AlertSeverity
    icon: str
    # seconds; None keeps the alert until dismissed
    duration: float | None
    position: AlertPosition
    title: str | None = None
    notification_id: str | None = None

    @property
    def persistent(self) -> bool:
        return self.duration is None


AlertHandler = Callable[[Alert], None]

DEFAULT_STYLE = AlertStyle(AlertSeverity.INFO, "ℹ️", 5.0)

ALERT_STYLES: dict[NotificationType, AlertStyle] = {
    NotificationType.INFO: DEFAULT_STYLE,
    NotificationType.SUCCESS: AlertStyle(AlertSeverity.SUCCESS, "✅", 4.0),
    NotificationType.WARNING: AlertStyle(AlertSeverity.WARNING, "⚠️", 6.0),
    NotificationType.ERROR: AlertStyle(AlertSeverity.ERROR, "❌", 8.0),
    NotificationType.SYSTEM: AlertStyle(AlertSeverity.INFO, "🔧", 10.0),
    NotificationType.USER_ACTION: AlertStyle(AlertSeverity.INFO, "👤", 5.0),
    NotificationType.DATA_UPDATE: AlertStyle(AlertSeverity.INFO, "🔄", 5.0),
    NotificationType.REPORT_READY: AlertStyle(AlertSeverity.SUCCESS, "📊", 5.0),
}

ANNOUNCEMENT_DURATION = 6.0


def style_for(notification_type: NotificationType) -> AlertStyle:
    return ALERT_STYLES.get(notification_type, DEFAULT_STYLE)


def alert_for_notification(notification: NotificationRead) -> Alert:
    style = style_for(notification.type)
    return Alert(
        kind=AlertKind.NOTIFICATION,
        message=notification.message,
        title=notification.title,
        severity=style.severity,
        icon=style.icon,
        duration=style.duration,
        position=AlertPosition.TOP_RIGHT,
        notification_id=notification.id,
    )


def announcement_alert(message: str) -> Alert:
    return Alert(
        kind=AlertKind.ANNOUNCEMENT,
        message=message,
        severity=AlertSeverity.INFO,
        icon="📢",
        duration=ANNOUNCEMENT_DURATION,
        position=AlertPosition.TOP_CENTER,
    )


def connection_lost_alert(attempts: int) -> Alert:
    return Alert(
        kind=AlertKind.CONNECTION,
        message=f"Disconnected from notifications after {attempts} attempt(s)",
        severity=AlertSeverity.ERROR,
        icon="🔌",
        duration=None,
        position=AlertPosition.TOP_CENTER,
    )


def log_alert(alert: Alert) -> None:
    """Default handler for headless consumers."""
    logger.info("[%s] %s %s", alert.kind.value, alert.icon, alert.message)
