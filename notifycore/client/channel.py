"""
Client notification channel.

Keeps one live WebSocket to the notification service with bounded
reconnects, reconciles a local cache (list + unread stats) with server
events and raises alerts for new notifications. Mutations go through the
REST API and touch the cache only once the server has accepted them.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol
from urllib.parse import quote

import httpx
from pydantic import ValidationError
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidStatus
from websockets.protocol import State

from notifycore.client.alerts import (
    AlertHandler,
    alert_for_notification,
    announcement_alert,
    connection_lost_alert,
    log_alert,
)
from notifycore.client.config import ChannelSettings
from notifycore.schemas.notification import (
    NotificationFilter,
    NotificationPage,
    NotificationRead,
    NotificationStats,
)

logger = logging.getLogger(__name__)

# Close codes the server uses to refuse a socket: bad token, wrong user
AUTH_CLOSE_CODES = frozenset({4001, 4003})
# HTTP statuses that refuse the upgrade for good; anything else (502, 503, ...) is retried
AUTH_HTTP_STATUSES = frozenset({401, 403})


class Transport(Protocol):
    state: State

    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


Connector = Callable[[str], Awaitable[Transport]]


class ChannelState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    DISCONNECTED = "disconnected"


class ChannelConnectionError(Exception):
    """The channel could not (re)establish its socket."""


class ChannelRequestError(Exception):
    """The server rejected a REST request issued by the channel."""

    def __init__(
        self,
        status_code: int | None,
        detail: str,
        error_code: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.detail = detail
        self.error_code = error_code
        super().__init__(f"{status_code or 'transport'}: {detail}")


class ClientNotificationChannel:

    def __init__(
        self,
        settings: ChannelSettings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        connector: Connector | None = None,
        on_alert: AlertHandler | None = None,
        on_notification: Callable[[NotificationRead], None] | None = None,
        on_state_change: Callable[[ChannelState], None] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or ChannelSettings()
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._connector = connector or self._default_connector
        self._on_alert = on_alert or log_alert
        self._on_notification = on_notification
        self._on_state_change = on_state_change
        self._sleep = sleep

        self._user_id: str | None = None
        self._token: str | None = None
        self._state = ChannelState.IDLE
        self._closing = False
        self._transport: Transport | None = None
        self._reader: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None

        self._notifications: list[NotificationRead] = []
        self._stats = NotificationStats()

    async def __aenter__(self) -> "ClientNotificationChannel":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ── Views ─────────────────────────────────────────────────────────────────

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def notifications(self) -> list[NotificationRead]:
        return list(self._notifications)

    @property
    def stats(self) -> NotificationStats:
        return self._stats.model_copy(deep=True)

    @property
    def unread_count(self) -> int:
        return self._stats.unread

    def is_connected(self) -> bool:
        return self._transport is not None and self._transport.state is State.OPEN

    # ── Connection management ─────────────────────────────────────────────────

    def set_credentials(self, user_id: str, token: str) -> None:
        self._user_id = user_id
        self._token = token

    async def connect(self, user_id: str, token: str) -> None:
        """
        Open the socket and join the user's room. Retries up to
        RECONNECT_ATTEMPTS times; raises ChannelConnectionError afterwards
        and leaves the channel in the FAILED state.
        """
        if self.is_connected() and user_id == self._user_id:
            return
        await self._cancel_reconnect()
        self.set_credentials(user_id, token)
        self._closing = False
        await self._open_with_retries(ChannelState.CONNECTING)

    async def disconnect(self) -> None:
        """Tear the channel down. Safe to call any number of times."""
        self._closing = True
        await self._cancel_reconnect()
        await self._teardown_transport()
        if self._state not in (ChannelState.IDLE, ChannelState.DISCONNECTED):
            self._set_state(ChannelState.DISCONNECTED)

    async def aclose(self) -> None:
        await self.disconnect()
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _default_connector(self, url: str) -> Transport:
        return await ws_connect(url, open_timeout=self._settings.OPEN_TIMEOUT)

    async def _open_with_retries(self, state: ChannelState) -> None:
        attempts = self._settings.RECONNECT_ATTEMPTS
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            self._set_state(state)
            try:
                await self._open()
                return
            except InvalidStatus as exc:
                status_code = exc.response.status_code
                if status_code in AUTH_HTTP_STATUSES:
                    self._fail(attempt)
                    raise ChannelConnectionError(
                        f"Notification socket refused: HTTP {status_code}"
                    ) from exc
                last_error = exc
                logger.warning(
                    "Notification socket attempt %d/%d refused with HTTP %d",
                    attempt,
                    attempts,
                    status_code,
                )
            except ConnectionClosed as exc:
                if exc.rcvd is not None and exc.rcvd.code in AUTH_CLOSE_CODES:
                    self._fail(attempt)
                    raise ChannelConnectionError(
                        f"Notification socket rejected: {exc.rcvd.code} {exc.rcvd.reason}"
                    ) from exc
                last_error = exc
                logger.warning(
                    "Notification socket attempt %d/%d closed: %s", attempt, attempts, exc
                )
            except (
                OSError,
                ValueError,
                asyncio.TimeoutError,
                InvalidHandshake,
                ChannelConnectionError,
            ) as exc:
                last_error = exc
                logger.warning(
                    "Notification socket attempt %d/%d failed: %s", attempt, attempts, exc
                )
            if attempt < attempts:
                await self._sleep(self._settings.reconnect_delay_for(attempt))

        self._fail(attempts)
        raise ChannelConnectionError(
            f"Could not connect to notifications after {attempts} attempt(s)"
        ) from last_error

    async def _open(self) -> None:
        if self._user_id is None or self._token is None:
            raise ChannelConnectionError("connect() has not been called")
        # Never more than one transport and one reader at a time
        await self._teardown_transport()

        url = f"{self._settings.socket_url(quote(self._user_id, safe=''))}?token={quote(self._token, safe='')}"
        transport = await self._connector(url)
        try:
            raw = await asyncio.wait_for(transport.recv(), timeout=self._settings.OPEN_TIMEOUT)
            frame = json.loads(raw)
            if not isinstance(frame, dict) or frame.get("type") != "connected":
                raise ChannelConnectionError(f"Unexpected handshake frame: {frame!r}")
        except BaseException:
            await self._close_quietly(transport)
            raise

        self._transport = transport
        self._apply_connected(frame)
        self._reader = asyncio.create_task(self._read(transport))
        self._set_state(ChannelState.CONNECTED)
        logger.info("Connected to notification service: user_id=%s", self._user_id)

    async def _read(self, transport: Transport) -> None:
        try:
            async for raw in transport:
                await self._handle_frame(transport, raw)
        except (ConnectionClosed, OSError) as exc:
            logger.warning("Notification socket lost: %s", exc)

        if transport is self._transport and not self._closing:
            self._transport = None
            self._reader = None
            self._set_state(ChannelState.RECONNECTING)
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        """Background reconnect; ends CONNECTED or FAILED, never stuck in RECONNECTING."""
        try:
            await self._open_with_retries(ChannelState.RECONNECTING)
        except ChannelConnectionError as exc:
            logger.error("Giving up on notification socket: %s", exc)
        except Exception:
            logger.exception("Notification socket reconnect crashed")
            await self._teardown_transport()
            self._fail(self._settings.RECONNECT_ATTEMPTS)

    async def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _teardown_transport(self) -> None:
        reader, self._reader = self._reader, None
        transport, self._transport = self._transport, None
        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if transport is not None:
            await self._close_quietly(transport)

    @staticmethod
    async def _close_quietly(transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as exc:
            logger.debug("Ignoring transport close failure: %s", exc)

    def _fail(self, attempts: int) -> None:
        self._set_state(ChannelState.FAILED)
        self._emit_alert_for(connection_lost_alert(attempts))

    def _set_state(self, state: ChannelState) -> None:
        if state is self._state:
            return
        self._state = state
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception:
                logger.exception("State listener failed")

    # ── Inbound events ────────────────────────────────────────────────────────

    async def _handle_frame(self, transport: Transport, raw: str | bytes) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("Discarding non-JSON frame")
            return
        if not isinstance(frame, dict):
            return

        event = frame.get("type")
        data = frame.get("data")
        if event == "notification":
            self._receive_notification(data)
        elif event == "system_announcement":
            self._emit_alert_for(announcement_alert(str(data)))
        elif event == "notification_read":
            if not self._apply_read(data):
                await self._refresh_stats()
        elif event == "notification_deleted":
            if not self._apply_delete(data):
                await self._refresh_stats()
        elif event == "notifications_read_all":
            self._apply_read_all()
        elif event == "notifications":
            self._replace_cache(data)
        elif event == "connected":
            self._apply_connected(frame)
        elif event == "ping":
            await transport.send(json.dumps({"type": "pong"}))
        elif event == "error":
            logger.warning(
                "Notification service reported %s: %s", frame.get("error"), frame.get("detail")
            )
        else:
            logger.debug("Ignoring unknown event %r", event)

    def _receive_notification(self, data: Any) -> None:
        try:
            notification = NotificationRead.model_validate(data)
        except ValidationError as exc:
            logger.warning("Discarding malformed notification: %s", exc)
            return
        if self._find(notification.id) is not None:
            logger.debug("Duplicate notification %s ignored", notification.id)
            return

        self._notifications.insert(0, notification)
        self._stats.total += 1
        self._stats.by_type[notification.type.value] = (
            self._stats.by_type.get(notification.type.value, 0) + 1
        )
        if not notification.read:
            self._stats.unread += 1

        self._emit_alert_for(alert_for_notification(notification))
        if self._on_notification is not None:
            try:
                self._on_notification(notification)
            except Exception:
                logger.exception("Notification listener failed")

    def _emit_alert_for(self, alert: Any) -> None:
        try:
            self._on_alert(alert)
        except Exception:
            logger.exception("Alert handler failed")

    def _find(self, notification_id: Any) -> int | None:
        for index, notification in enumerate(self._notifications):
            if notification.id == notification_id:
                return index
        return None

    def _apply_connected(self, frame: dict[str, Any]) -> None:
        data = frame.get("data")
        stats = data.get("stats") if isinstance(data, dict) else None
        if stats is None:
            return
        try:
            self._stats = NotificationStats.model_validate(stats)
        except ValidationError as exc:
            logger.warning("Discarding malformed stats: %s", exc)

    # The _apply_* helpers return False when the id is not cached; the
    # caller then cannot derive the new counts locally and refreshes them.

    def _apply_read(self, notification_id: Any) -> bool:
        index = self._find(notification_id)
        if index is None:
            return False
        notification = self._notifications[index]
        if not notification.read:
            self._notifications[index] = notification.model_copy(update={"read": True})
            self._stats.unread = max(0, self._stats.unread - 1)
        return True

    def _apply_delete(self, notification_id: Any) -> bool:
        index = self._find(notification_id)
        if index is None:
            return False
        notification = self._notifications.pop(index)
        self._stats.total = max(0, self._stats.total - 1)
        key = notification.type.value
        self._stats.by_type[key] = max(0, self._stats.by_type.get(key, 0) - 1)
        if not notification.read:
            self._stats.unread = max(0, self._stats.unread - 1)
        return True

    async def _refresh_stats(self) -> None:
        try:
            await self.load_stats()
        except (ChannelRequestError, ValueError) as exc:
            logger.warning("Could not refresh notification stats: %s", exc)

    def _apply_read_all(self) -> None:
        self._notifications = [
            n if n.read else n.model_copy(update={"read": True}) for n in self._notifications
        ]
        self._stats.unread = 0

    def _replace_cache(self, data: Any) -> None:
        if not isinstance(data, list):
            return
        try:
            self._notifications = [NotificationRead.model_validate(item) for item in data]
        except ValidationError as exc:
            logger.warning("Discarding malformed notification list: %s", exc)

    # ── REST operations ───────────────────────────────────────────────────────

    def _http(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._settings.BASE_URL,
                timeout=self._settings.REQUEST_TIMEOUT,
            )
        return self._http_client

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if self._token is None:
            raise ChannelRequestError(None, "No credentials; call connect() or set_credentials()")
        try:
            response = await self._http().request(
                method,
                f"{self._settings.API_PREFIX}{path}",
                headers={"Authorization": f"Bearer {self._token}"},
                **kwargs,
            )
        except httpx.HTTPError as exc:
            raise ChannelRequestError(None, str(exc)) from exc

        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            raise ChannelRequestError(
                response.status_code,
                str(body.get("detail") or response.text),
                body.get("error"),
            )
        return response

    async def load_notifications(
        self, filter: NotificationFilter | None = None
    ) -> list[NotificationRead]:
        """Fetch notifications over REST and replace the local cache."""
        params: dict[str, Any] = {}
        if filter is not None:
            if filter.type is not None:
                params["type"] = filter.type.value
            if filter.read is not None:
                params["read"] = str(filter.read).lower()
            if filter.limit is not None:
                params["limit"] = filter.limit
            if filter.offset:
                params["offset"] = filter.offset
        response = await self._request("GET", "/notifications/", params=params)
        page = NotificationPage.model_validate(response.json())
        self._notifications = list(page.items)
        self._stats = page.stats
        return self.notifications

    async def load_stats(self) -> NotificationStats:
        response = await self._request("GET", "/notifications/stats")
        self._stats = NotificationStats.model_validate(response.json())
        return self.stats

    async def mark_as_read(self, notification_id: str) -> None:
        await self._request("PATCH", f"/notifications/{quote(notification_id, safe='')}/read")
        if not self._apply_read(notification_id):
            await self._refresh_stats()

    async def delete_notification(self, notification_id: str) -> None:
        await self._request("DELETE", f"/notifications/{quote(notification_id, safe='')}")
        if not self._apply_delete(notification_id):
            await self._refresh_stats()

    async def mark_all_as_read(self) -> int:
        response = await self._request("PATCH", "/notifications/mark-all-read")
        count = int(response.json().get("marked_count", 0))
        self._apply_read_all()
        return count

    async def request_notifications(self, filter: NotificationFilter | None = None) -> bool:
        """Ask for notifications over the socket; the reply replaces the cache."""
        if not self.is_connected() or self._transport is None:
            return False
        data = filter.model_dump(mode="json", exclude={"user_id"}, exclude_none=True) if filter else {}
        await self._transport.send(json.dumps({"type": "get_notifications", "data": data}))
        return True
