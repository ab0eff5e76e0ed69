"""
Realtime publisher.
Binds authenticated WebSocket connections to user ids, pushes notification
events to them and serves client requests arriving over the same socket.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Coroutine, Iterable, Protocol

from fastapi import WebSocketDisconnect
from pydantic import ValidationError

from notifycore.core.exceptions import AuthorizationError, DeliveryError
from notifycore.core.instrumentation import instrumented
from notifycore.core.security import user_id_from_token
from notifycore.models.notification import Notification, utcnow
from notifycore.schemas.notification import NotificationFilter, NotificationRead
from notifycore.services.audit_service import AuditService
from notifycore.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


class SocketLike(Protocol):
    async def accept(self) -> None: ...

    async def send_json(self, data: Any) -> None: ...

    async def receive_json(self) -> Any: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    JOINED = "joined"
    DISCONNECTED = "disconnected"


@dataclass(eq=False)
class Connection:
    user_id: str
    websocket: SocketLike
    socket_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: ConnectionState = ConnectionState.CONNECTING
    connected_at: datetime = field(default_factory=utcnow)


def serialize_notification(notification: Notification) -> dict[str, Any]:
    """Return the websocket payload representation for ``notification``."""
    return NotificationRead.model_validate(notification).model_dump(mode="json")


class RealtimePublisher:
    """
    Manages joined connections keyed by user_id (a user may have several tabs
    or devices) and delivers events to them at most once per socket.
    """

    def __init__(
        self,
        service: NotificationService,
        *,
        audit: AuditService | None = None,
        heartbeat_interval: float = 30,
        default_limit: int = 50,
        max_limit: int = 100,
    ) -> None:
        self._service = service
        self._audit = audit or AuditService()
        self._heartbeat_interval = heartbeat_interval
        self._default_limit = default_limit
        self._max_limit = max_limit
        # user_id → socket_id → connection
        self._connections: dict[str, dict[str, Connection]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    # ── Handshake and lifecycle ───────────────────────────────────────────────

    @staticmethod
    def authenticate(token: str | None) -> str | None:
        """Return the user id carried by a valid access token, or None."""
        if not token:
            return None
        return user_id_from_token(token)

    async def reject(self, websocket: SocketLike, code: int, reason: str) -> None:
        """
        Refuse a socket with an application close code. The socket is
        accepted first; closing during the handshake would surface as a
        plain HTTP 403 and the client would never see the code.
        """
        logger.info("WebSocket rejected: code=%s reason=%s", code, reason)
        await websocket.accept()
        await websocket.close(code=code, reason=reason)

    async def connect(self, websocket: SocketLike, user_id: str) -> Connection:
        connection = Connection(user_id=user_id, websocket=websocket)
        await websocket.accept()
        connection.state = ConnectionState.JOINED
        self._connections.setdefault(user_id, {})[connection.socket_id] = connection
        logger.info("WebSocket connected: user_id=%s socket_id=%s", user_id, connection.socket_id)
        self._audit.log(
            "SOCKET_USER_JOINED",
            user_id=user_id,
            meta={"socket_id": connection.socket_id},
        )
        return connection

    def disconnect(self, connection: Connection) -> None:
        if connection.state is ConnectionState.DISCONNECTED:
            return
        connection.state = ConnectionState.DISCONNECTED
        user_connections = self._connections.get(connection.user_id)
        if user_connections is not None:
            user_connections.pop(connection.socket_id, None)
            if not user_connections:
                del self._connections[connection.user_id]
        logger.info(
            "WebSocket disconnected: user_id=%s socket_id=%s",
            connection.user_id,
            connection.socket_id,
        )
        self._audit.log(
            "SOCKET_USER_DISCONNECTED",
            user_id=connection.user_id,
            meta={"socket_id": connection.socket_id},
        )

    async def run_session(self, websocket: SocketLike, user_id: str) -> None:
        """
        Serve one authenticated socket until it goes away.

        The server sends:
            - {"type": "connected", ...} with the user's unread stats on join.
            - {"type": "ping"} every heartbeat interval.
            - notification events and replies to client requests.
        """
        connection = await self.connect(websocket, user_id)
        heartbeat_task: asyncio.Task[None] | None = None
        try:
            stats = await self._service.get_notification_stats(user_id)
            await websocket.send_json(
                {
                    "type": "connected",
                    "user_id": user_id,
                    "socket_id": connection.socket_id,
                    "data": {"stats": stats.model_dump(mode="json")},
                }
            )
            heartbeat_task = asyncio.create_task(self._heartbeat(connection))

            while True:
                try:
                    message = await websocket.receive_json()
                except ValueError:
                    await self._send_error(connection, "INVALID_MESSAGE", "Frames must be JSON objects")
                    continue
                await self.handle_client_message(connection, message)

        except WebSocketDisconnect:
            logger.info("WebSocket client disconnected: user_id=%s", user_id)
        except Exception as exc:
            logger.error("WebSocket error for user_id=%s: %s", user_id, exc)
        finally:
            if heartbeat_task is not None:
                heartbeat_task.cancel()
                try:
                    await heartbeat_task
                except asyncio.CancelledError:
                    pass
            self.disconnect(connection)

    async def _heartbeat(self, connection: Connection) -> None:
        """Send periodic ping frames to keep the connection alive."""
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await connection.websocket.send_json({"type": "ping"})
            except Exception:
                break

    # ── Inbound client messages ───────────────────────────────────────────────

    async def handle_client_message(self, connection: Connection, message: Any) -> None:
        """
        Dispatch a client frame. The requester is always the connection's
        bound user; any user_id in the frame is ignored.
        """
        if not isinstance(message, dict):
            await self._send_error(connection, "INVALID_MESSAGE", "Frames must be JSON objects")
            return

        event = message.get("type")
        if event == "pong":
            logger.debug("Received pong from user_id=%s", connection.user_id)
        elif event == "mark_notification_read":
            await self._on_mark_read(connection, message.get("data"))
        elif event == "get_notifications":
            await self._on_get_notifications(connection, message.get("data"))
        else:
            await self._send_error(connection, "UNKNOWN_EVENT", f"Unsupported event: {event!r}")

    async def _on_mark_read(self, connection: Connection, notification_id: Any) -> None:
        if not isinstance(notification_id, str) or not notification_id:
            await self._send_error(connection, "INVALID_PAYLOAD", "Expected a notification id")
            return
        try:
            found = await instrumented(self._service.mark_as_read)(
                notification_id, connection.user_id
            )
        except AuthorizationError as exc:
            logger.warning(
                "Rejected realtime mark-as-read: user_id=%s notification_id=%s",
                connection.user_id,
                notification_id,
            )
            await self._send_error(connection, exc.error_code, exc.detail, notification_id)
            return
        if not found:
            await self._send_error(
                connection, "NOT_FOUND", "Notification not found", notification_id
            )

    async def _on_get_notifications(self, connection: Connection, data: Any) -> None:
        if data is None:
            data = {}
        if not isinstance(data, dict):
            await self._send_error(connection, "INVALID_FILTER", "Filter must be an object")
            return
        criteria = {key: value for key, value in data.items() if key != "user_id"}
        try:
            filter = NotificationFilter.model_validate({**criteria, "user_id": connection.user_id})
        except ValidationError as exc:
            await self._send_error(connection, "INVALID_FILTER", str(exc))
            return
        limit = min(filter.limit or self._default_limit, self._max_limit)
        filter = filter.model_copy(update={"limit": limit})

        notifications = await instrumented(self._service.get_notifications)(filter)
        await self._send(
            connection,
            {
                "type": "notifications",
                "data": [serialize_notification(n) for n in notifications],
            },
        )

    async def _send(self, connection: Connection, message: dict[str, Any]) -> None:
        try:
            await connection.websocket.send_json(message)
        except Exception as exc:
            logger.warning(
                "Failed to reply on socket_id=%s user_id=%s: %s",
                connection.socket_id,
                connection.user_id,
                exc,
            )

    async def _send_error(
        self,
        connection: Connection,
        error_code: str,
        detail: str,
        notification_id: str | None = None,
    ) -> None:
        message: dict[str, Any] = {"type": "error", "error": error_code, "detail": detail}
        if notification_id is not None:
            message["notification_id"] = notification_id
        await self._send(connection, message)

    # ── Outbound delivery ─────────────────────────────────────────────────────

    async def send_to_user(self, user_id: str, message: dict[str, Any]) -> int:
        """
        Send ``message`` to every joined connection of ``user_id``.

        Returns the number of sockets reached. Zero connections is not an
        error. Dead sockets are unbound; DeliveryError is raised only when
        every attempted send failed.
        """
        connections = [
            c
            for c in self._connections.get(user_id, {}).values()
            if c.state is ConnectionState.JOINED
        ]
        if not connections:
            return 0

        results = await asyncio.gather(
            *(c.websocket.send_json(message) for c in connections),
            return_exceptions=True,
        )
        delivered = 0
        failures: list[BaseException] = []
        for connection, result in zip(connections, results):
            if isinstance(result, BaseException):
                failures.append(result)
                logger.warning(
                    "Dropping dead socket_id=%s user_id=%s: %s",
                    connection.socket_id,
                    user_id,
                    result,
                )
                self.disconnect(connection)
            else:
                delivered += 1

        if failures and not delivered:
            raise DeliveryError(user_id, len(failures), str(failures[0]))
        return delivered

    async def send_notification_to_user(self, user_id: str, notification: Notification) -> int:
        delivered = await self.send_to_user(
            user_id, {"type": "notification", "data": serialize_notification(notification)}
        )
        logger.info(
            "Notification sent to user: notification_id=%s user_id=%s connections=%d",
            notification.id,
            user_id,
            delivered,
        )
        return delivered

    async def send_notification_to_users(
        self, user_ids: Iterable[str], notification: Notification
    ) -> int:
        """
        Push ``notification`` to every joined socket of several users.
        A user whose sockets all failed does not stop delivery to the others.
        """
        targets = list(dict.fromkeys(user_ids))
        results = await asyncio.gather(
            *(self.send_notification_to_user(user_id, notification) for user_id in targets),
            return_exceptions=True,
        )
        delivered = 0
        for result in results:
            if isinstance(result, DeliveryError):
                logger.warning("%s", result)
            elif isinstance(result, BaseException):
                raise result
            else:
                delivered += result
        logger.info(
            "Notification sent to multiple users: notification_id=%s users=%d connections=%d",
            notification.id,
            len(targets),
            delivered,
        )
        return delivered

    async def send_event_to_user(self, user_id: str, event_type: str, data: Any) -> int:
        return await self.send_to_user(user_id, {"type": event_type, "data": data})

    async def broadcast_system_announcement(self, message: str) -> int:
        """Send a plain-text announcement to every joined connection."""
        delivered = 0
        for user_id in list(self._connections):
            try:
                delivered += await self.send_event_to_user(user_id, "system_announcement", message)
            except DeliveryError as exc:
                logger.warning("System announcement not delivered: %s", exc)
        logger.info("System announcement broadcasted: connections=%d", delivered)
        self._audit.log("SYSTEM_ANNOUNCEMENT_BROADCAST", meta={"message": message, "delivered": delivered})
        return delivered

    # ── Fire-and-forget scheduling ────────────────────────────────────────────

    def dispatch(self, notification: Notification) -> None:
        """Schedule delivery of ``notification`` to its owner's sockets."""
        self._schedule(lambda: self.send_notification_to_user(notification.user_id, notification))

    def dispatch_event(self, user_id: str, event_type: str, data: Any) -> None:
        self._schedule(lambda: self.send_event_to_user(user_id, event_type, data))

    def _schedule(self, send: Callable[[], Coroutine[Any, Any, int]]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise DeliveryError("*", 0, "no running event loop to schedule delivery on") from None
        task = loop.create_task(self._deliver(send()))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _deliver(send: Coroutine[Any, Any, int]) -> None:
        try:
            await send
        except DeliveryError as exc:
            logger.warning("%s", exc)
        except Exception:
            logger.exception("Unexpected realtime delivery failure")

    async def drain(self) -> None:
        """Wait until every scheduled delivery has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        for user_connections in list(self._connections.values()):
            for connection in list(user_connections.values()):
                try:
                    await connection.websocket.close(code=1001, reason="Server shutting down")
                except Exception as exc:
                    logger.debug("Ignoring close failure on socket_id=%s: %s", connection.socket_id, exc)
                self.disconnect(connection)

    # ── Introspection ─────────────────────────────────────────────────────────

    def is_connected(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    def connected_users_info(self) -> list[Connection]:
        return [
            connection
            for user_connections in self._connections.values()
            for connection in user_connections.values()
        ]

    @property
    def connected_user_count(self) -> int:
        return len(self._connections)

    @property
    def connection_count(self) -> int:
        return sum(len(c) for c in self._connections.values())
