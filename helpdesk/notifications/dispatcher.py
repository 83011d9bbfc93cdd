"""Turns ticket events into notifications and emails."""
from typing import Any
import structlog
from .email import EmailDeliveryError, EmailTransport
from .models import Notification, NotificationType
from .persistence import NotificationPersistence
from ..config import Settings, get_settings
from ..errors import DuplicateSuppressed, HelpdeskError
from ..event_models import DomainEvent, utcnow
from ..messaging.gateway import RequestReplyGateway
from ..messaging.topics import (
    STATUS_FIND_BY_ID,
    TICKET_GET_INFO,
    USER_FIND_BY_ID,
    USERS_FIND_BY_ROLES,
)
from ..metrics.collector import (
    collector,
    DUPLICATES_SUPPRESSED_TOTAL,
    EMAILS_FAILED_TOTAL,
    EMAILS_SENT_TOTAL,
    NOTIFICATIONS_CREATED_TOTAL,
)

log = structlog.get_logger()


class NotificationDispatcher:
    """
    Consumes ticket events and notifies the right people.

    Recipients are resolved through the user and ticket services. Each
    recipient gets at most one notification per (ticket, type, status),
    so a redelivered event creates nothing new. Email goes out after the
    row is stored; a failed email is recorded on the row and can be
    retried with ``retry_failed_emails``.
    """

    def __init__(
        self,
        gateway: RequestReplyGateway,
        persistence: NotificationPersistence,
        transport: EmailTransport,
        settings: Settings | None = None,
    ):
        self.gateway = gateway
        self.persistence = persistence
        self.transport = transport
        self.settings = settings or get_settings()

    async def on_ticket_created(self, event: DomainEvent):
        """Notify every supporter about a new ticket."""
        payload = event.payload
        ticket_no = payload["ticket_no"]
        try:
            supporters = await self.gateway.call(
                "user", USERS_FIND_BY_ROLES, {"role_ids": self.settings.supporter_role_ids}
            )
        except HelpdeskError as e:
            log.warning("notification.recipients_unavailable", ticket_no=ticket_no, kind=e.kind, error=e.message)
            return

        subject = payload.get("issue_description") or "no subject"
        for user in supporters or []:
            await self._notify(
                user,
                NotificationType.NEW_TICKET,
                ticket_no,
                payload.get("status_id"),
                title=f"New ticket: #{ticket_no}",
                message=f"A new ticket needs attention - {subject}",
            )

    async def on_status_changed(self, event: DomainEvent):
        """Notify the ticket's creator about its new status."""
        payload = event.payload
        ticket_no = payload["ticket_no"]
        status_id = payload["new_status_id"]
        try:
            ticket = await self.gateway.call("ticket", TICKET_GET_INFO, {"ticket_id": payload["ticket_id"]})
            creator = await self.gateway.call("user", USER_FIND_BY_ID, {"user_id": ticket["create_by"]})
        except HelpdeskError as e:
            log.warning("notification.recipients_unavailable", ticket_no=ticket_no, kind=e.kind, error=e.message)
            return

        status_name = await self._status_name(status_id)
        await self._notify(
            creator,
            NotificationType.STATUS_CHANGE,
            ticket_no,
            status_id,
            title=f"Status update: #{ticket_no}",
            message=f"Your ticket status was updated to: {status_name}",
        )

    async def on_ticket_assigned(self, event: DomainEvent):
        """Notify the assignee."""
        payload = event.payload
        ticket_no = payload["ticket_no"]
        try:
            assignee = await self.gateway.call("user", USER_FIND_BY_ID, {"user_id": payload["assignee_id"]})
        except HelpdeskError as e:
            log.warning("notification.recipients_unavailable", ticket_no=ticket_no, kind=e.kind, error=e.message)
            return

        await self._notify(
            assignee,
            NotificationType.ASSIGNMENT,
            ticket_no,
            payload.get("status_id"),
            title=f"Assignment: #{ticket_no}",
            message=f"You have been assigned ticket {ticket_no}",
        )

    async def retry_failed_emails(self, limit: int = 100) -> dict[str, int]:
        """
        Retry delivery for rows whose email failed.

        Returns:
            Counts of rows retried, sent and still failing
        """
        rows = await self.persistence.failed_emails(limit=limit)
        sent = 0
        for row in rows:
            try:
                recipient = await self.gateway.call("user", USER_FIND_BY_ID, {"user_id": row.user_id})
            except HelpdeskError as e:
                log.warning("notification.retry_lookup_failed", notification_id=row.id, error=e.message)
                continue
            if await self._deliver(row, recipient.get("email")):
                sent += 1
        result = {"retried": len(rows), "sent": sent, "failed": len(rows) - sent}
        log.info("notification.email_retry_finished", **result)
        return result

    async def is_user_supporter(self, user_id: int) -> bool:
        """Whether the user holds a supporter role; False when the lookup fails."""
        try:
            user = await self.gateway.call("user", USER_FIND_BY_ID, {"user_id": user_id})
        except HelpdeskError as e:
            log.info("notification.supporter_lookup_failed", user_id=user_id, kind=e.kind, error=e.message)
            return False
        return bool(set(user.get("role_ids") or ()) & set(self.settings.supporter_role_ids))

    async def can_access_ticket(self, user_id: int, ticket_no: str) -> bool:
        """
        Whether a user may see a ticket's notifications.

        The ticket's creator, its assignees and every supporter may; an
        unknown ticket is visible to nobody.
        """
        try:
            ticket = await self.gateway.call("ticket", TICKET_GET_INFO, {"ticket_no": ticket_no})
        except HelpdeskError as e:
            log.info("notification.access_lookup_failed", ticket_no=ticket_no, kind=e.kind, error=e.message)
            return False
        if ticket.get("create_by") == user_id:
            return True
        if await self.persistence.has_assignment(ticket["ticket_no"], user_id):
            return True
        return await self.is_user_supporter(user_id)

    async def _notify(
        self,
        recipient: dict[str, Any],
        notification_type: NotificationType,
        ticket_no: str,
        status_id: int | None,
        title: str,
        message: str,
    ) -> Notification | None:
        try:
            notification = await self.persistence.create(
                ticket_no=ticket_no,
                user_id=recipient["id"],
                notification_type=notification_type,
                title=title,
                message=message,
                status_id=status_id,
            )
        except DuplicateSuppressed:
            collector.increment(DUPLICATES_SUPPRESSED_TOTAL, labels={"kind": "notification"})
            log.info(
                "notification.duplicate",
                ticket_no=ticket_no,
                user_id=recipient["id"],
                notification_type=notification_type.value,
            )
            return None

        collector.increment(NOTIFICATIONS_CREATED_TOTAL, labels={"type": notification_type.value})
        log.info(
            "notification.created",
            notification_id=notification.id,
            ticket_no=ticket_no,
            user_id=notification.user_id,
            notification_type=notification_type.value,
        )
        await self._deliver(notification, recipient.get("email"))
        return notification

    async def _deliver(self, notification: Notification, email: str | None) -> bool:
        if not email:
            await self._mark_failed(notification, "Recipient has no email address")
            return False
        body = f"{notification.message}\n\n{self.settings.FRONTEND_URL}/tickets/{notification.ticket_no}"
        try:
            await self.transport.send(email, notification.title, body)
        except EmailDeliveryError as e:
            await self._mark_failed(notification, e.message)
            return False
        await self.persistence.update(
            notification.id,
            email_sent=True,
            email_sent_at=utcnow(),
            email_failed=False,
            email_failed_reason=None,
        )
        collector.increment(EMAILS_SENT_TOTAL)
        return True

    async def _mark_failed(self, notification: Notification, reason: str):
        await self.persistence.update(
            notification.id,
            email_sent=False,
            email_failed=True,
            email_failed_at=utcnow(),
            email_failed_reason=reason,
        )
        collector.increment(EMAILS_FAILED_TOTAL)
        log.warning("notification.email_failed", notification_id=notification.id, reason=reason)

    async def _status_name(self, status_id: int) -> str:
        try:
            status = await self.gateway.call("status", STATUS_FIND_BY_ID, {"status_id": status_id, "language": "en"})
        except HelpdeskError as e:
            log.info("notification.status_name_unavailable", status_id=status_id, error=e.message)
            return f"#{status_id}"
        return status.get("name") or f"#{status_id}"
