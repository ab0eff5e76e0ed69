"""
In-memory notification store.

Holds the authoritative set of notifications keyed by id and answers
filtered queries. Every read and mutation runs under a single re-entrant
lock, so REST handlers, realtime handlers and the periodic sweep may call
in from any thread or task. Records handed out are copies.
"""
from __future__ import annotations

import itertools
import threading
from datetime import datetime
from typing import Iterator

from notifycore.core.exceptions import AuthorizationError, StoreIntegrityError
from notifycore.models.notification import Notification, NotificationType, utcnow
from notifycore.schemas.notification import NotificationFilter, NotificationStats


class NotificationStore:

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: dict[str, Notification] = {}
        # id → insertion sequence, breaks created_at ties deterministically
        self._sequence: dict[str, int] = {}
        self._counter = itertools.count()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ── Mutations ─────────────────────────────────────────────────────────────

    def insert(self, notification: Notification) -> None:
        with self._lock:
            if notification.id in self._records:
                raise StoreIntegrityError(
                    f"Notification id collision: {notification.id!r}"
                )
            self._records[notification.id] = notification.copy()
            self._sequence[notification.id] = next(self._counter)

    def set_read(self, notification_id: str) -> bool:
        """Mark a notification read. Idempotent; False only when it is absent."""
        with self._lock:
            record = self._records.get(notification_id)
            if record is None:
                return False
            record.read = True
            return True

    def check_and_set_read(self, notification_id: str, user_id: str) -> Notification | None:
        """
        Ownership check and read transition in one critical section.
        Returns None when absent, raises AuthorizationError on owner mismatch.
        """
        with self._lock:
            record = self._records.get(notification_id)
            if record is None:
                return None
            if record.user_id != user_id:
                raise AuthorizationError("Unauthorized to mark this notification as read")
            record.read = True
            return record.copy()

    def mark_all_read(self, user_id: str, now: datetime | None = None) -> int:
        now = now or utcnow()
        count = 0
        with self._lock:
            for record in self._records.values():
                if record.user_id == user_id and not record.read and not record.is_expired(now):
                    record.read = True
                    count += 1
        return count

    def remove(self, notification_id: str) -> bool:
        with self._lock:
            existed = self._records.pop(notification_id, None) is not None
            self._sequence.pop(notification_id, None)
            return existed

    def check_and_remove(self, notification_id: str, user_id: str) -> Notification | None:
        """
        Ownership check and removal in one critical section.
        Returns None when absent, raises AuthorizationError on owner mismatch.
        """
        with self._lock:
            record = self._records.get(notification_id)
            if record is None:
                return None
            if record.user_id != user_id:
                raise AuthorizationError("Unauthorized to delete this notification")
            del self._records[notification_id]
            self._sequence.pop(notification_id, None)
            return record

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Remove every notification whose expires_at <= now. Returns the count."""
        now = now or utcnow()
        with self._lock:
            expired = [
                notification_id
                for notification_id, record in self._records.items()
                if record.is_expired(now)
            ]
            for notification_id in expired:
                del self._records[notification_id]
                self._sequence.pop(notification_id, None)
        return len(expired)

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get(self, notification_id: str) -> Notification | None:
        with self._lock:
            record = self._records.get(notification_id)
            return record.copy() if record is not None else None

    def query(
        self, filter: NotificationFilter, now: datetime | None = None
    ) -> list[Notification]:
        """
        Notifications matching every set predicate, expired ones excluded,
        newest first, sliced by offset/limit. A None limit is unbounded.
        """
        now = now or utcnow()
        with self._lock:
            matches = sorted(
                self._matching(filter, now),
                key=lambda r: (r.created_at, self._sequence[r.id]),
                reverse=True,
            )
            start = filter.offset
            end = None if filter.limit is None else start + filter.limit
            return [record.copy() for record in matches[start:end]]

    def count(self, filter: NotificationFilter, now: datetime | None = None) -> int:
        """Number of matching, non-expired notifications ignoring limit/offset."""
        now = now or utcnow()
        with self._lock:
            return sum(1 for _ in self._matching(filter, now))

    def stats_for(self, user_id: str, now: datetime | None = None) -> NotificationStats:
        now = now or utcnow()
        by_type = {t.value: 0 for t in NotificationType}
        total = unread = 0
        with self._lock:
            for record in self._records.values():
                if record.user_id != user_id or record.is_expired(now):
                    continue
                total += 1
                if not record.read:
                    unread += 1
                by_type[record.type.value] += 1
        return NotificationStats(total=total, unread=unread, by_type=by_type)

    def _matching(self, filter: NotificationFilter, now: datetime) -> Iterator[Notification]:
        # caller holds the lock
        for record in self._records.values():
            if record.is_expired(now):
                continue
            if filter.user_id is not None and record.user_id != filter.user_id:
                continue
            if filter.type is not None and record.type != filter.type:
                continue
            if filter.read is not None and record.read != filter.read:
                continue
            yield record
