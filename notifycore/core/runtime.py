"""
Notification runtime.
Constructs the store, audit service, mailer, notification service and realtime
publisher once per process, wires them together and owns the periodic
expiry sweep.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from notifycore.core.config import Settings
from notifycore.services.audit_service import AuditService, AuditSink
from notifycore.services.email_service import EmailService
from notifycore.services.notification_service import NotificationService
from notifycore.services.realtime_service import RealtimePublisher
from notifycore.store.notification_store import NotificationStore

logger = logging.getLogger(__name__)


@dataclass
class NotificationRuntime:
    store: NotificationStore
    audit: AuditService
    service: NotificationService
    publisher: RealtimePublisher
    cleanup_interval: float
    _cleanup_task: asyncio.Task[None] | None = field(default=None, init=False, repr=False)

    @classmethod
    def build(cls, settings: Settings, audit_sink: AuditSink | None = None) -> "NotificationRuntime":
        store = NotificationStore()
        audit = AuditService(audit_sink)
        service = NotificationService(store, audit=audit, mailer=EmailService(settings))
        publisher = RealtimePublisher(
            service,
            audit=audit,
            heartbeat_interval=settings.WS_HEARTBEAT_INTERVAL,
            default_limit=settings.NOTIFICATION_DEFAULT_LIMIT,
            max_limit=settings.NOTIFICATION_MAX_LIMIT,
        )
        service.bind_publisher(publisher)
        return cls(
            store=store,
            audit=audit,
            service=service,
            publisher=publisher,
            cleanup_interval=settings.NOTIFICATION_CLEANUP_INTERVAL_SECONDS,
        )

    @property
    def running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    def start(self) -> None:
        if self.running:
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("Notification cleanup scheduled every %ss", self.cleanup_interval)

    async def stop(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        await self.publisher.close()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.service.cleanup_expired_notifications()
            except Exception:
                logger.exception("Notification cleanup failed")
