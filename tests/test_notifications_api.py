"""
Notification endpoint tests.
Covers: create, list/filter/paginate, stats, mark read, delete, ownership, admin endpoints, auth.
"""
from __future__ import annotations

import uuid
from typing import Any

import pytest
from httpx import AsyncClient

from notifycore.core.runtime import NotificationRuntime
from notifycore.services.audit_service import AuditEvent
from tests.fakes import USER_ID, FakeWebSocket

pytestmark = pytest.mark.asyncio

BASE = "/api/v1/notifications"


async def _create_notification(
    client: AsyncClient,
    headers: dict,
    title: str = "Build finished",
    **kwargs: Any,
) -> dict:
    payload = {
        "type": "success",
        "title": title,
        "message": "Pipeline #42 passed",
        **kwargs,
    }
    response = await client.post(f"{BASE}/", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


class TestCreateNotification:
    async def test_create_success(self, client: AsyncClient, auth_headers: dict) -> None:
        response = await client.post(
            f"{BASE}/",
            json={
                "type": "report_ready",
                "title": "Monthly report",
                "message": "Your report is ready to download",
                "data": {"report_id": "r-7"},
            },
            headers=auth_headers,
        )
        assert response.status_code == 201
        data = response.json()
        assert data["user_id"] == USER_ID
        assert data["type"] == "report_ready"
        assert data["read"] is False
        assert data["data"] == {"report_id": "r-7"}
        assert "id" in data

    async def test_create_unauthenticated(self, client: AsyncClient) -> None:
        response = await client.post(
            f"{BASE}/", json={"type": "info", "title": "t", "message": "m"}
        )
        assert response.status_code == 401
        assert response.json()["error"] == "UNAUTHORIZED"

    async def test_create_with_invalid_token(self, client: AsyncClient) -> None:
        response = await client.post(
            f"{BASE}/",
            json={"type": "info", "title": "t", "message": "m"},
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert response.status_code == 401
        assert response.json()["error"] == "INVALID_TOKEN"

    @pytest.mark.parametrize(
        "payload",
        [
            {"type": "info", "message": "missing title"},
            {"type": "unknown", "title": "t", "message": "m"},
            {"type": "info", "title": "t" * 201, "message": "m"},
            {"type": "info", "title": "t", "message": ""},
        ],
    )
    async def test_create_invalid_payload(
        self, client: AsyncClient, auth_headers: dict, payload: dict
    ) -> None:
        response = await client.post(f"{BASE}/", json=payload, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"


class TestListNotifications:
    async def test_lists_only_own_notifications(
        self, client: AsyncClient, auth_headers: dict, other_headers: dict
    ) -> None:
        await _create_notification(client, auth_headers, title="Mine")
        await _create_notification(client, other_headers, title="Theirs")

        response = await client.get(f"{BASE}/", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert [n["title"] for n in data["items"]] == ["Mine"]
        assert data["total"] == 1
        assert data["stats"]["unread"] == 1

    async def test_filter_by_type_and_read(self, client: AsyncClient, auth_headers: dict) -> None:
        await _create_notification(client, auth_headers, type="error", title="Err")
        read_one = await _create_notification(client, auth_headers, type="error", title="Read")
        await _create_notification(client, auth_headers, type="info", title="Info")
        await client.patch(f"{BASE}/{read_one['id']}/read", headers=auth_headers)

        response = await client.get(
            f"{BASE}/", params={"type": "error", "read": "false"}, headers=auth_headers
        )
        assert [n["title"] for n in response.json()["items"]] == ["Err"]

    async def test_pagination(self, client: AsyncClient, auth_headers: dict) -> None:
        for i in range(5):
            await _create_notification(client, auth_headers, title=f"N{i}")

        response = await client.get(
            f"{BASE}/", params={"limit": 2, "offset": 0}, headers=auth_headers
        )
        data = response.json()
        assert len(data["items"]) == 2
        assert data["total"] == 5
        assert data["limit"] == 2
        assert data["has_more"] is True

        response = await client.get(
            f"{BASE}/", params={"limit": 2, "offset": 4}, headers=auth_headers
        )
        assert response.json()["has_more"] is False

    async def test_limit_above_maximum_rejected(
        self, client: AsyncClient, auth_headers: dict
    ) -> None:
        response = await client.get(f"{BASE}/", params={"limit": 1000}, headers=auth_headers)
        assert response.status_code == 400

    async def test_stats(self, client: AsyncClient, auth_headers: dict) -> None:
        await _create_notification(client, auth_headers, type="warning")
        await _create_notification(client, auth_headers, type="warning")

        response = await client.get(f"{BASE}/stats", headers=auth_headers)
        assert response.status_code == 200
        stats = response.json()
        assert stats["total"] == 2
        assert stats["unread"] == 2
        assert stats["by_type"]["warning"] == 2
        assert stats["by_type"]["info"] == 0


class TestMarkAsRead:
    async def test_mark_as_read(self, client: AsyncClient, auth_headers: dict) -> None:
        notification = await _create_notification(client, auth_headers)
        response = await client.patch(f"{BASE}/{notification['id']}/read", headers=auth_headers)
        assert response.status_code == 204

        # second call is a no-op, not an error
        response = await client.patch(f"{BASE}/{notification['id']}/read", headers=auth_headers)
        assert response.status_code == 204

        stats = (await client.get(f"{BASE}/stats", headers=auth_headers)).json()
        assert stats["unread"] == 0

    async def test_mark_as_read_not_found(self, client: AsyncClient, auth_headers: dict) -> None:
        response = await client.patch(f"{BASE}/{uuid.uuid4()}/read", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"

    async def test_mark_as_read_other_users_notification(
        self, client: AsyncClient, auth_headers: dict, other_headers: dict
    ) -> None:
        notification = await _create_notification(client, auth_headers)
        response = await client.patch(f"{BASE}/{notification['id']}/read", headers=other_headers)
        assert response.status_code == 403
        assert response.json()["detail"] == "Unauthorized to mark this notification as read"

    async def test_mark_as_read_malformed_id(
        self, client: AsyncClient, auth_headers: dict
    ) -> None:
        response = await client.patch(f"{BASE}/not-a-uuid/read", headers=auth_headers)
        assert response.status_code == 400

    async def test_mark_all_read(
        self, client: AsyncClient, auth_headers: dict, other_headers: dict
    ) -> None:
        for _ in range(3):
            await _create_notification(client, auth_headers)
        await _create_notification(client, other_headers)

        response = await client.patch(f"{BASE}/mark-all-read", headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {"marked_count": 3}

        other_stats = (await client.get(f"{BASE}/stats", headers=other_headers)).json()
        assert other_stats["unread"] == 1


class TestDeleteNotification:
    async def test_delete(self, client: AsyncClient, auth_headers: dict) -> None:
        notification = await _create_notification(client, auth_headers)
        response = await client.delete(f"{BASE}/{notification['id']}", headers=auth_headers)
        assert response.status_code == 204

        response = await client.delete(f"{BASE}/{notification['id']}", headers=auth_headers)
        assert response.status_code == 404

    async def test_delete_other_users_notification(
        self, client: AsyncClient, auth_headers: dict, other_headers: dict
    ) -> None:
        notification = await _create_notification(client, auth_headers)
        response = await client.delete(f"{BASE}/{notification['id']}", headers=other_headers)
        assert response.status_code == 403
        assert response.json()["detail"] == "Unauthorized to delete this notification"

        listing = (await client.get(f"{BASE}/", headers=auth_headers)).json()
        assert listing["total"] == 1


class TestAdminEndpoints:
    async def test_system_notification_fan_out(
        self,
        client: AsyncClient,
        admin_headers: dict,
        auth_headers: dict,
        audit_events: list[AuditEvent],
    ) -> None:
        response = await client.post(
            f"{BASE}/system",
            json={
                "title": "Scheduled maintenance",
                "message": "The service will be down at 02:00 UTC",
                "user_ids": [USER_ID, "user-3"],
            },
            headers=admin_headers,
        )
        assert response.status_code == 201
        created = response.json()
        assert {n["user_id"] for n in created} == {USER_ID, "user-3"}
        assert all(n["type"] == "system" for n in created)
        assert "SYSTEM_NOTIFICATION_BROADCAST" in [e.action for e in audit_events]

        mine = (await client.get(f"{BASE}/", headers=auth_headers)).json()
        assert mine["items"][0]["title"] == "Scheduled maintenance"

    async def test_system_notification_requires_admin(
        self, client: AsyncClient, auth_headers: dict
    ) -> None:
        response = await client.post(
            f"{BASE}/system",
            json={"title": "t", "message": "m", "user_ids": [USER_ID]},
            headers=auth_headers,
        )
        assert response.status_code == 403

    async def test_announcement_and_connections(
        self, client: AsyncClient, admin_headers: dict, runtime: NotificationRuntime
    ) -> None:
        websocket = FakeWebSocket()
        await runtime.publisher.connect(websocket, USER_ID)

        connections = await client.get(f"{BASE}/connections", headers=admin_headers)
        assert connections.status_code == 200
        assert [c["user_id"] for c in connections.json()] == [USER_ID]

        response = await client.post(
            f"{BASE}/announcements", json={"message": "Release 2.0 is live"}, headers=admin_headers
        )
        assert response.status_code == 202
        assert response.json() == {"delivered": 1}
        assert websocket.events("system_announcement")[0]["data"] == "Release 2.0 is live"


class TestHealth:
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
