"""
Test configuration and shared fixtures.
Every test gets a fresh application with its own in-memory store.
"""
from __future__ import annotations

import os

# Must be set before notifycore reads its settings
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-at-least-32-characters")
os.environ.setdefault("RATE_LIMIT_CREATE", "1000/minute")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from collections.abc import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from notifycore.core.runtime import NotificationRuntime  # noqa: E402
from notifycore.core.security import create_access_token  # noqa: E402
from notifycore.main import create_application  # noqa: E402
from notifycore.services.audit_service import AuditEvent, AuditService  # noqa: E402
from notifycore.services.notification_service import NotificationService  # noqa: E402
from notifycore.services.realtime_service import RealtimePublisher  # noqa: E402
from notifycore.store.notification_store import NotificationStore  # noqa: E402
from tests.fakes import ADMIN_ID, OTHER_USER_ID, USER_ID, FrozenClock, bearer  # noqa: E402


# ── Domain components ─────────────────────────────────────────────────────────

@pytest.fixture
def audit_events() -> list[AuditEvent]:
    return []


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> NotificationStore:
    return NotificationStore()


@pytest.fixture
def audit(audit_events: list[AuditEvent]) -> AuditService:
    return AuditService(audit_events.append)


@pytest.fixture
def service(store: NotificationStore, audit: AuditService, clock: FrozenClock) -> NotificationService:
    """A service with no publisher bound."""
    return NotificationService(store, audit=audit, clock=clock)


@pytest_asyncio.fixture
async def publisher(
    service: NotificationService, audit: AuditService
) -> AsyncGenerator[RealtimePublisher, None]:
    """A publisher wired to ``service``; pending deliveries are cancelled afterwards."""
    publisher = RealtimePublisher(service, audit=audit, heartbeat_interval=3600)
    service.bind_publisher(publisher)
    yield publisher
    await publisher.close()


# ── Application ───────────────────────────────────────────────────────────────

@pytest.fixture
def app(audit_events: list[AuditEvent]) -> FastAPI:
    return create_application(audit_sink=audit_events.append)


@pytest.fixture
def runtime(app: FastAPI) -> NotificationRuntime:
    return app.state.notifications


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP test client bound to a fresh application."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    await app.state.notifications.publisher.close()


# ── Auth helpers ──────────────────────────────────────────────────────────────

@pytest.fixture
def user_token() -> str:
    return create_access_token(USER_ID)


@pytest.fixture
def auth_headers(user_token: str) -> dict[str, str]:
    """Return Authorization headers for the standard test user."""
    return {"Authorization": f"Bearer {user_token}"}


@pytest.fixture
def other_headers() -> dict[str, str]:
    """Return Authorization headers for a second, unrelated user."""
    return bearer(OTHER_USER_ID)


@pytest.fixture
def admin_headers() -> dict[str, str]:
    """Return Authorization headers for an admin."""
    return bearer(ADMIN_ID, role="admin")
