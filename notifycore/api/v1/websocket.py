"""
WebSocket endpoint.
Clients connect with a valid JWT access token as a query parameter; the
connection joins the room of the token's subject only.
"""
from __future__ import annotations

from fastapi import APIRouter, WebSocket

from notifycore.core.runtime import NotificationRuntime

router = APIRouter(tags=["WebSocket"])

CLOSE_INVALID_TOKEN = 4001
CLOSE_USER_MISMATCH = 4003


@router.websocket("/ws/{user_id}")
async def websocket_endpoint(websocket: WebSocket, user_id: str) -> None:
    """
    WebSocket endpoint for real-time notifications.

    Query parameters:
        token: A valid JWT access token.

    The server sends:
        - {"type": "connected", "user_id": "...", "data": {"stats": {...}}} on join.
        - {"type": "ping"} every heartbeat interval.
        - {"type": "notification", "data": {...}} when a notification is created.
        - {"type": "notification_read" | "notification_deleted", "data": "<id>"}.
        - {"type": "notifications_read_all", "data": {"count": n}}.
        - {"type": "system_announcement", "data": "<text>"}.

    The client may send:
        - {"type": "mark_notification_read", "data": "<id>"}
        - {"type": "get_notifications", "data": {<filter>}}
        - {"type": "pong"}
    """
    runtime: NotificationRuntime = websocket.app.state.notifications
    publisher = runtime.publisher

    token = websocket.query_params.get("token")
    if not token:
        await publisher.reject(websocket, CLOSE_INVALID_TOKEN, "Missing authentication token")
        return

    token_user_id = publisher.authenticate(token)
    if token_user_id is None:
        await publisher.reject(websocket, CLOSE_INVALID_TOKEN, "Invalid or expired token")
        return

    # Ensure the token subject matches the path parameter
    if token_user_id != user_id:
        await publisher.reject(websocket, CLOSE_USER_MISMATCH, "Token user_id mismatch")
        return

    await publisher.run_session(websocket, user_id)
