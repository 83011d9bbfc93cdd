"""Notification persistence layer (in-memory).

Rows are unique per (ticket_no, user_id, notification_type, status_id);
inserting the same key again is reported as DuplicateSuppressed with the
existing row, which makes event redelivery harmless.
"""
import asyncio
import itertools
from typing import Any
import structlog
from .models import Notification, NotificationType
from ..errors import DuplicateSuppressed, NotFoundError
from ..event_models import utcnow

log = structlog.get_logger()


class NotificationPersistence:
    """In-memory notification store."""

    def __init__(self):
        self._rows: dict[int, Notification] = {}
        self._keys: dict[tuple, int] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()
        log.info("notifications.persistence.initialized", backend="memory")

    async def create(
        self,
        ticket_no: str,
        user_id: int,
        notification_type: NotificationType,
        title: str,
        message: str,
        status_id: int | None = None,
    ) -> Notification:
        """
        Insert a notification row.

        Raises:
            DuplicateSuppressed: If a row with the same idempotency key
                exists; ``existing`` carries it
        """
        key = (ticket_no, user_id, NotificationType(notification_type).value, status_id)
        async with self._lock:
            existing_id = self._keys.get(key)
            if existing_id is not None:
                raise DuplicateSuppressed(
                    "Notification already recorded",
                    existing=self._rows[existing_id].model_copy(),
                    ticket_no=ticket_no,
                    user_id=user_id,
                )
            notification = Notification(
                id=next(self._ids),
                ticket_no=ticket_no,
                user_id=user_id,
                status_id=status_id,
                notification_type=notification_type,
                title=title,
                message=message,
            )
            self._rows[notification.id] = notification
            self._keys[key] = notification.id
        return notification.model_copy()

    async def get(self, notification_id: int) -> Notification | None:
        row = self._rows.get(notification_id)
        return row.model_copy() if row else None

    async def update(self, notification_id: int, **changes: Any) -> Notification:
        async with self._lock:
            row = self._rows.get(notification_id)
            if row is None:
                raise NotFoundError("Notification not found", notification_id=notification_id)
            updated = row.model_copy(update=changes)
            self._rows[notification_id] = updated
        return updated.model_copy()

    async def list_by_user(
        self,
        user_id: int,
        page: int = 1,
        limit: int = 20,
        notification_type: NotificationType | None = None,
    ) -> tuple[list[Notification], int]:
        """Newest first, optionally of one type; returns the page and the total row count."""
        wanted = NotificationType(notification_type).value if notification_type else None
        rows = sorted(
            (
                row for row in self._rows.values()
                if row.user_id == user_id and (wanted is None or row.notification_type == wanted)
            ),
            key=lambda row: (row.create_date, row.id),
            reverse=True,
        )
        offset = (page - 1) * limit
        return [row.model_copy() for row in rows[offset:offset + limit]], len(rows)

    async def list_by_ticket(self, ticket_no: str) -> list[Notification]:
        return [row.model_copy() for row in self._rows.values() if row.ticket_no == ticket_no]

    async def has_assignment(self, ticket_no: str, user_id: int) -> bool:
        """Whether ``user_id`` was notified of being assigned ``ticket_no``."""
        return any(
            row.ticket_no == ticket_no
            and row.user_id == user_id
            and row.notification_type == NotificationType.ASSIGNMENT.value
            for row in self._rows.values()
        )

    async def mark_read(self, notification_id: int, user_id: int) -> Notification:
        """
        Raises:
            NotFoundError: If the row does not exist or belongs to another user
        """
        row = self._rows.get(notification_id)
        if row is None or row.user_id != user_id:
            raise NotFoundError(
                "Notification not found or access denied",
                notification_id=notification_id,
                user_id=user_id,
            )
        if row.is_read:
            return row.model_copy()
        return await self.update(notification_id, is_read=True, read_at=utcnow())

    async def mark_all_read(self, user_id: int) -> int:
        now = utcnow()
        updated = 0
        async with self._lock:
            for notification_id, row in self._rows.items():
                if row.user_id == user_id and not row.is_read:
                    self._rows[notification_id] = row.model_copy(update={"is_read": True, "read_at": now})
                    updated += 1
        return updated

    async def unread_count(self, user_id: int) -> int:
        return sum(1 for row in self._rows.values() if row.user_id == user_id and not row.is_read)

    async def failed_emails(self, limit: int = 100) -> list[Notification]:
        """Rows whose email has not been sent and last failed, oldest first."""
        rows = [row for row in self._rows.values() if row.email_failed and not row.email_sent]
        rows.sort(key=lambda row: row.id)
        return [row.model_copy() for row in rows[:limit]]
