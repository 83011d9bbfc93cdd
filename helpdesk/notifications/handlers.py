"""Request and event handlers of the notification service."""
from typing import Any
from .dispatcher import NotificationDispatcher
from .models import NotificationType
from .persistence import NotificationPersistence
from ..errors import InvalidArgumentError
from ..messaging.endpoint import ServiceEndpoint
from ..messaging.payloads import as_dict, optional_int, require_int
from ..messaging import topics
from ..messaging.topics import EventTypes

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


def register_notification_handlers(
    endpoint: ServiceEndpoint,
    persistence: NotificationPersistence,
    dispatcher: NotificationDispatcher,
):
    async def find_by_user(value: Any) -> dict[str, Any]:
        payload = as_dict(value)
        user_id = require_int(payload, "user_id")
        notification_type = _notification_type(payload.get("type"))
        page = max(optional_int(payload, "page", 1), 1)
        limit = optional_int(payload, "limit", DEFAULT_PAGE_SIZE)
        if limit < 1 or limit > MAX_PAGE_SIZE:
            limit = DEFAULT_PAGE_SIZE
        rows, total = await persistence.list_by_user(
            user_id, page=page, limit=limit, notification_type=notification_type
        )
        return {
            "notifications": [row.model_dump(mode="json") for row in rows],
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": -(-total // limit),
        }

    async def mark_read(value: Any) -> dict[str, Any]:
        payload = as_dict(value)
        row = await persistence.mark_read(
            require_int(payload, "notification_id"), require_int(payload, "user_id")
        )
        return row.model_dump(mode="json")

    async def mark_all_read(value: Any) -> dict[str, int]:
        updated = await persistence.mark_all_read(require_int(as_dict(value), "user_id"))
        return {"updated": updated}

    async def unread_count(value: Any) -> dict[str, int]:
        count = await persistence.unread_count(require_int(as_dict(value), "user_id"))
        return {"count": count}

    async def retry_emails(value: Any) -> dict[str, int]:
        payload = as_dict(value)
        return await dispatcher.retry_failed_emails(limit=optional_int(payload, "limit", 100))

    async def ticket_access(value: Any) -> dict[str, bool]:
        payload = as_dict(value)
        ticket_no = payload.get("ticket_no")
        if not isinstance(ticket_no, str) or not ticket_no.strip():
            raise InvalidArgumentError("ticket_no is required")
        allowed = await dispatcher.can_access_ticket(require_int(payload, "user_id"), ticket_no)
        return {"allowed": allowed}

    endpoint.register_handler(topics.NOTIFICATION_FIND_BY_USER, find_by_user)
    endpoint.register_handler(topics.NOTIFICATION_MARK_READ, mark_read)
    endpoint.register_handler(topics.NOTIFICATION_MARK_ALL_READ, mark_all_read)
    endpoint.register_handler(topics.NOTIFICATION_UNREAD_COUNT, unread_count)
    endpoint.register_handler(topics.NOTIFICATION_RETRY_EMAILS, retry_emails)
    endpoint.register_handler(topics.NOTIFICATION_TICKET_ACCESS, ticket_access)

    endpoint.register_event_handler(EventTypes.TICKET_CREATED, dispatcher.on_ticket_created)
    endpoint.register_event_handler(EventTypes.TICKET_STATUS_CHANGED, dispatcher.on_status_changed)
    endpoint.register_event_handler(EventTypes.TICKET_ASSIGNED, dispatcher.on_ticket_assigned)


def _notification_type(value: Any) -> NotificationType | None:
    if value is None:
        return None
    try:
        return NotificationType(value)
    except ValueError as e:
        raise InvalidArgumentError(f"Unknown notification type '{value}'", type=value) from e
