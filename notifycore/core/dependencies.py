"""
FastAPI dependency injection functions.
Provides the authenticated principal and the notification runtime components.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from notifycore.core.exceptions import ForbiddenException, InvalidTokenException, UnauthorizedException
from notifycore.core.runtime import NotificationRuntime
from notifycore.core.security import decode_access_token
from notifycore.services.notification_service import NotificationService
from notifycore.services.realtime_service import RealtimePublisher

__all__ = [
    "Principal",
    "get_current_user",
    "require_admin",
    "CurrentUser",
    "AdminUser",
    "Notifications",
    "Publisher",
]

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """Identity asserted by the access token. The core trusts it for ownership checks."""

    id: str
    role: str = "user"


async def get_current_user(
    credentials: Annotated[
        HTTPAuthorizationCredentials | None, Depends(bearer_scheme)
    ] = None,
) -> Principal:
    """
    Extract and validate the JWT access token from the Authorization header.
    Returns the authenticated principal.
    """
    if credentials is None:
        raise UnauthorizedException("Missing authentication token")

    try:
        payload = decode_access_token(credentials.credentials)
    except JWTError:
        raise InvalidTokenException("Invalid or expired access token")

    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise InvalidTokenException("Malformed token: missing subject")

    return Principal(id=user_id, role=str(payload.get("role") or "user"))


async def require_admin(
    current_user: Annotated[Principal, Depends(get_current_user)],
) -> Principal:
    """Dependency that requires the current user to have the 'admin' role."""
    if current_user.role != "admin":
        raise ForbiddenException("Admin privileges required")
    return current_user


def get_runtime(request: Request) -> NotificationRuntime:
    return request.app.state.notifications


def get_notification_service(
    runtime: Annotated[NotificationRuntime, Depends(get_runtime)],
) -> NotificationService:
    return runtime.service


def get_publisher(
    runtime: Annotated[NotificationRuntime, Depends(get_runtime)],
) -> RealtimePublisher:
    return runtime.publisher


# Convenience type aliases for route signatures
CurrentUser = Annotated[Principal, Depends(get_current_user)]
AdminUser = Annotated[Principal, Depends(require_admin)]
Notifications = Annotated[NotificationService, Depends(get_notification_service)]
Publisher = Annotated[RealtimePublisher, Depends(get_publisher)]
