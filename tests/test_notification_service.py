"""
Notification service tests.
Covers: creation and validation, ownership, expiry, stats, cleanup, system fan-out, audit events.
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from notifycore.core.exceptions import AuthorizationError, CreationError
from notifycore.models.notification import NotificationType
from notifycore.schemas.notification import NotificationCreate, NotificationFilter
from notifycore.services.audit_service import AuditEvent, AuditService
from notifycore.services.notification_service import NotificationService
from notifycore.store.notification_store import NotificationStore
from tests.fakes import OTHER_USER_ID, USER_ID, FrozenClock

pytestmark = pytest.mark.asyncio


async def _create(service: NotificationService, user_id: str = USER_ID, **overrides):
    payload = {"type": "info", "title": "Hello", "message": "World", **overrides}
    return await service.create(user_id, payload)


class TestCreate:
    async def test_create_success(
        self, service: NotificationService, clock: FrozenClock
    ) -> None:
        notification = await _create(service, data={"report_id": 7})
        assert notification.user_id == USER_ID
        assert notification.type is NotificationType.INFO
        assert notification.read is False
        assert notification.created_at == clock.now
        assert notification.data == {"report_id": 7}
        assert service.store.get(notification.id) is not None

    async def test_ids_are_unique(self, service: NotificationService) -> None:
        ids = {(await _create(service)).id for _ in range(20)}
        assert len(ids) == 20

    async def test_accepts_validated_model(self, service: NotificationService) -> None:
        payload = NotificationCreate(type=NotificationType.REPORT_READY, title="t", message="m")
        notification = await service.create(USER_ID, payload)
        assert notification.type is NotificationType.REPORT_READY

    @pytest.mark.parametrize(
        "overrides",
        [
            {"type": "bogus"},
            {"title": ""},
            {"title": "   "},
            {"title": "x" * 201},
            {"message": "x" * 1001},
            {"data": {"when": object()}},
        ],
    )
    async def test_invalid_payload_raises_creation_error(
        self, service: NotificationService, overrides: dict
    ) -> None:
        with pytest.raises(CreationError):
            await _create(service, **overrides)
        assert len(service.store) == 0

    async def test_empty_user_id_rejected(self, service: NotificationService) -> None:
        with pytest.raises(CreationError, match="user_id"):
            await _create(service, user_id="  ")

    async def test_creation_is_audited(
        self, service: NotificationService, audit_events: list[AuditEvent]
    ) -> None:
        notification = await _create(service)
        assert [e.action for e in audit_events] == ["NOTIFICATION_CREATED"]
        assert audit_events[0].meta["notification_id"] == notification.id

    async def test_failing_audit_sink_does_not_fail_creation(
        self, store: NotificationStore
    ) -> None:
        def broken_sink(event: AuditEvent) -> None:
            raise RuntimeError("sink down")

        service = NotificationService(store, audit=AuditService(broken_sink))
        notification = await _create(service)
        assert store.get(notification.id) is not None


class TestQueries:
    async def test_only_owner_notifications_are_listed(
        self, service: NotificationService
    ) -> None:
        await _create(service, title="mine")
        await _create(service, user_id=OTHER_USER_ID, title="theirs")

        mine = await service.get_notifications(NotificationFilter(user_id=USER_ID))
        assert [n.title for n in mine] == ["mine"]

    async def test_expired_excluded_until_swept(
        self, service: NotificationService, clock: FrozenClock
    ) -> None:
        await _create(service, expires_at=clock.now + timedelta(minutes=5))
        await _create(service, title="forever")

        clock.advance(minutes=5)
        visible = await service.get_notifications(NotificationFilter(user_id=USER_ID))
        assert [n.title for n in visible] == ["forever"]
        assert len(service.store) == 2

        assert await service.cleanup_expired_notifications() == 1
        assert len(service.store) == 1
        assert await service.cleanup_expired_notifications() == 0

    async def test_cleanup_leaves_exactly_the_survivors_across_users(
        self, service: NotificationService, clock: FrozenClock
    ) -> None:
        soon = clock.now + timedelta(minutes=1)
        await _create(service, title="u1-expiring", expires_at=soon)
        kept = [
            await _create(service, title="u1-kept"),
            await _create(service, user_id=OTHER_USER_ID, title="u2-kept", expires_at=soon + timedelta(days=1)),
        ]
        await _create(service, user_id=OTHER_USER_ID, title="u2-expiring", expires_at=soon)
        kept.append(await _create(service, user_id="user-3", title="u3-kept"))

        clock.advance(minutes=1)
        assert await service.cleanup_expired_notifications() == 2

        survivors = await service.get_notifications(NotificationFilter())
        assert sorted(n.id for n in survivors) == sorted(n.id for n in kept)
        assert await service.count_notifications(NotificationFilter()) == 3

    async def test_naive_expiry_is_treated_as_utc(
        self, service: NotificationService, clock: FrozenClock
    ) -> None:
        naive = (clock.now + timedelta(minutes=1)).replace(tzinfo=None)
        notification = await _create(service, expires_at=naive)
        assert notification.expires_at == clock.now + timedelta(minutes=1)

    async def test_stats_consistent_with_queries(self, service: NotificationService) -> None:
        first = await _create(service, type="error")
        await _create(service, type="error")
        await _create(service, type="success")
        await service.mark_as_read(first.id, USER_ID)

        stats = await service.get_notification_stats(USER_ID)
        unread = await service.count_notifications(NotificationFilter(user_id=USER_ID, read=False))
        assert stats.total == 3
        assert stats.unread == unread == 2
        assert stats.by_type["error"] == 2
        assert stats.by_type["success"] == 1

    async def test_pagination(self, service: NotificationService, clock: FrozenClock) -> None:
        for i in range(5):
            await _create(service, title=f"n{i}")
            clock.advance(seconds=1)

        page = await service.get_notifications(
            NotificationFilter(user_id=USER_ID, limit=2, offset=2)
        )
        assert [n.title for n in page] == ["n2", "n1"]


class TestMarkAsRead:
    async def test_mark_as_read_by_owner(self, service: NotificationService) -> None:
        notification = await _create(service)
        assert await service.mark_as_read(notification.id, USER_ID) is True
        assert service.store.get(notification.id).read is True

    async def test_mark_as_read_is_idempotent(self, service: NotificationService) -> None:
        notification = await _create(service)
        assert await service.mark_as_read(notification.id, USER_ID) is True
        assert await service.mark_as_read(notification.id, USER_ID) is True
        stats = await service.get_notification_stats(USER_ID)
        assert stats.unread == 0

    async def test_missing_returns_false(self, service: NotificationService) -> None:
        assert await service.mark_as_read("does-not-exist", USER_ID) is False

    async def test_other_user_is_rejected(self, service: NotificationService) -> None:
        notification = await _create(service)
        with pytest.raises(AuthorizationError) as exc_info:
            await service.mark_as_read(notification.id, OTHER_USER_ID)
        assert exc_info.value.detail == "Unauthorized to mark this notification as read"
        assert service.store.get(notification.id).read is False

    async def test_expired_notification_can_still_be_marked(
        self, service: NotificationService, clock: FrozenClock
    ) -> None:
        notification = await _create(service, expires_at=clock.now + timedelta(seconds=1))
        clock.advance(seconds=2)
        assert await service.mark_as_read(notification.id, USER_ID) is True

    async def test_mark_all_as_read(self, service: NotificationService) -> None:
        for _ in range(3):
            await _create(service)
        other = await _create(service, user_id=OTHER_USER_ID)

        assert await service.mark_all_as_read(USER_ID) == 3
        assert await service.mark_all_as_read(USER_ID) == 0
        assert service.store.get(other.id).read is False


class TestDelete:
    async def test_delete_by_owner(self, service: NotificationService) -> None:
        notification = await _create(service)
        assert await service.delete_notification(notification.id, USER_ID) is True
        assert await service.delete_notification(notification.id, USER_ID) is False

    async def test_delete_by_other_user_is_rejected(self, service: NotificationService) -> None:
        notification = await _create(service)
        with pytest.raises(AuthorizationError) as exc_info:
            await service.delete_notification(notification.id, OTHER_USER_ID)
        assert exc_info.value.detail == "Unauthorized to delete this notification"
        assert service.store.get(notification.id) is not None


class TestSystemNotifications:
    async def test_one_record_per_user(
        self, service: NotificationService, audit_events: list[AuditEvent]
    ) -> None:
        created = await service.create_system_notification(
            {"title": "Maintenance", "message": "Tonight at 22:00"},
            ["a", "b", "a", "c"],
        )
        assert [n.user_id for n in created] == ["a", "b", "c"]
        assert all(n.type is NotificationType.SYSTEM for n in created)
        assert len({n.id for n in created}) == 3
        assert audit_events[-1].action == "SYSTEM_NOTIFICATION_BROADCAST"
        assert audit_events[-1].meta["count"] == 3

    async def test_type_is_forced_to_system(self, service: NotificationService) -> None:
        created = await service.create_system_notification(
            {"type": "error", "title": "t", "message": "m"}, ["a"]
        )
        assert created[0].type is NotificationType.SYSTEM

    async def test_invalid_payload_creates_nothing(self, service: NotificationService) -> None:
        with pytest.raises(CreationError):
            await service.create_system_notification({"title": "", "message": "m"}, ["a", "b"])
        assert len(service.store) == 0

    async def test_empty_user_list_creates_nothing(self, service: NotificationService) -> None:
        assert await service.create_system_notification({"title": "t", "message": "m"}, []) == []
