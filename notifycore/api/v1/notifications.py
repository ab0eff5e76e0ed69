"""
Notification routes.
"""
import uuid

from fastapi import APIRouter, Query, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from notifycore.core.config import settings
from notifycore.core.dependencies import AdminUser, CurrentUser, Notifications, Publisher
from notifycore.core.exceptions import NotFoundException
from notifycore.core.instrumentation import instrumented
from notifycore.models.notification import NotificationType
from notifycore.schemas.notification import (
    AnnouncementCreate,
    AnnouncementResult,
    ConnectionInfo,
    MarkAllReadResult,
    NotificationCreate,
    NotificationFilter,
    NotificationPage,
    NotificationRead,
    NotificationStats,
    SystemNotificationCreate,
)

router = APIRouter(prefix="/notifications", tags=["Notifications"])

limiter = Limiter(key_func=get_remote_address)


@router.get(
    "/",
    response_model=NotificationPage,
    summary="List my notifications",
)
async def list_notifications(
    current_user: CurrentUser,
    service: Notifications,
    notification_type: NotificationType | None = Query(default=None, alias="type"),
    read: bool | None = Query(default=None),
    limit: int = Query(
        default=settings.NOTIFICATION_DEFAULT_LIMIT,
        ge=1,
        le=settings.NOTIFICATION_MAX_LIMIT,
    ),
    offset: int = Query(default=0, ge=0),
) -> NotificationPage:
    filter = NotificationFilter(
        user_id=current_user.id,
        type=notification_type,
        read=read,
        limit=limit,
        offset=offset,
    )
    notifications = await instrumented(service.get_notifications)(filter)
    total = await service.count_notifications(filter)
    stats = await service.get_notification_stats(current_user.id)
    return NotificationPage(
        items=[NotificationRead.model_validate(n) for n in notifications],
        total=total,
        limit=limit,
        offset=offset,
        stats=stats,
    )


@router.post(
    "/",
    response_model=NotificationRead,
    status_code=status.HTTP_201_CREATED,
    summary="Create a notification for myself",
)
@limiter.limit(settings.RATE_LIMIT_CREATE)
async def create_notification(
    request: Request,
    payload: NotificationCreate,
    current_user: CurrentUser,
    service: Notifications,
) -> NotificationRead:
    notification = await instrumented(service.create)(current_user.id, payload)
    return NotificationRead.model_validate(notification)


@router.get(
    "/stats",
    response_model=NotificationStats,
    summary="Notification statistics for the current user",
)
async def get_stats(
    current_user: CurrentUser,
    service: Notifications,
) -> NotificationStats:
    return await service.get_notification_stats(current_user.id)


@router.patch(
    "/mark-all-read",
    response_model=MarkAllReadResult,
    summary="Mark all notifications as read",
)
async def mark_all_read(
    current_user: CurrentUser,
    service: Notifications,
) -> MarkAllReadResult:
    count = await instrumented(service.mark_all_as_read)(current_user.id)
    return MarkAllReadResult(marked_count=count)


@router.patch(
    "/{notification_id}/read",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Mark a notification as read",
)
async def mark_as_read(
    notification_id: uuid.UUID,
    current_user: CurrentUser,
    service: Notifications,
) -> None:
    found = await instrumented(service.mark_as_read)(str(notification_id), current_user.id)
    if not found:
        raise NotFoundException("Notification", str(notification_id))


@router.delete(
    "/{notification_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a notification",
)
async def delete_notification(
    notification_id: uuid.UUID,
    current_user: CurrentUser,
    service: Notifications,
) -> None:
    found = await instrumented(service.delete_notification)(str(notification_id), current_user.id)
    if not found:
        raise NotFoundException("Notification", str(notification_id))


# ── Admin ─────────────────────────────────────────────────────────────────────

@router.post(
    "/system",
    response_model=list[NotificationRead],
    status_code=status.HTTP_201_CREATED,
    summary="Create a system notification for several users (admin only)",
)
async def create_system_notification(
    payload: SystemNotificationCreate,
    _admin: AdminUser,
    service: Notifications,
) -> list[NotificationRead]:
    notifications = await instrumented(service.create_system_notification)(
        payload, payload.user_ids
    )
    return [NotificationRead.model_validate(n) for n in notifications]


@router.post(
    "/announcements",
    response_model=AnnouncementResult,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Broadcast a system announcement to every connected client (admin only)",
)
async def broadcast_announcement(
    body: AnnouncementCreate,
    _admin: AdminUser,
    publisher: Publisher,
) -> AnnouncementResult:
    delivered = await publisher.broadcast_system_announcement(body.message)
    return AnnouncementResult(delivered=delivered)


@router.get(
    "/connections",
    response_model=list[ConnectionInfo],
    summary="Live realtime connections (admin only)",
)
async def list_connections(
    _admin: AdminUser,
    publisher: Publisher,
) -> list[ConnectionInfo]:
    return [
        ConnectionInfo(
            socket_id=c.socket_id,
            user_id=c.user_id,
            state=c.state.value,
            connected_at=c.connected_at,
        )
        for c in publisher.connected_users_info()
    ]
