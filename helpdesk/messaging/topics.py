"""Topic names and naming rules.

Request topics are named per operation. Replies for a request topic go to
a reply topic owned by the requesting client, and events go to one topic
per subscribing service so that each subscriber can be published to (and
can fail) independently.
"""

# Ticket service
TICKET_GET_INFO = "ticket.get.info"
TICKET_STATUS_UPDATE = "ticket.status.update"
TICKET_CREATE = "ticket.create"
TICKET_ASSIGN = "ticket.assign"
STATUS_HISTORY_FIND_BY_TICKET = "status.history.find.by.ticket"

# Status service
STATUS_FIND_BY_ID = "status.find.by.id"
STATUS_FIND_ALL = "status.find.all"

# User service
USER_FIND_BY_ID = "user.find.by.id"
USERS_FIND_BY_IDS = "users.find.by.ids"
USERS_FIND_BY_ROLES = "users.find.by.roles"

# Notification service
NOTIFICATION_FIND_BY_USER = "notification.find.by.user"
NOTIFICATION_MARK_READ = "notification.mark.read"
NOTIFICATION_MARK_ALL_READ = "notification.mark.all.read"
NOTIFICATION_UNREAD_COUNT = "notification.unread.count"
NOTIFICATION_RETRY_EMAILS = "notification.retry.emails"
NOTIFICATION_TICKET_ACCESS = "notification.ticket.access"

# Satisfaction service
SATISFACTION_CREATE = "satisfaction.create"
SATISFACTION_FIND_BY_TICKET = "satisfaction.find.by.ticket"


class EventTypes:
    """Domain event types."""
    TICKET_CREATED = "ticket.created"
    TICKET_STATUS_CHANGED = "ticket.status.changed"
    TICKET_ASSIGNED = "ticket.assigned"


# Request topics served by each logical service. A broker client for a
# remote service subscribes the reply topics of all of them at connect.
SERVICE_TOPICS: dict[str, tuple[str, ...]] = {
    "ticket": (
        TICKET_GET_INFO,
        TICKET_STATUS_UPDATE,
        TICKET_CREATE,
        TICKET_ASSIGN,
        STATUS_HISTORY_FIND_BY_TICKET,
    ),
    "status": (
        STATUS_FIND_BY_ID,
        STATUS_FIND_ALL,
    ),
    "user": (
        USER_FIND_BY_ID,
        USERS_FIND_BY_IDS,
        USERS_FIND_BY_ROLES,
    ),
    "notification": (
        NOTIFICATION_FIND_BY_USER,
        NOTIFICATION_MARK_READ,
        NOTIFICATION_MARK_ALL_READ,
        NOTIFICATION_UNREAD_COUNT,
        NOTIFICATION_RETRY_EMAILS,
        NOTIFICATION_TICKET_ACCESS,
    ),
    "satisfaction": (
        SATISFACTION_CREATE,
        SATISFACTION_FIND_BY_TICKET,
    ),
}


def reply_topic(topic: str, client_id: str) -> str:
    """Reply topic for ``topic`` owned by one requesting client."""
    return f"{topic}.reply.{client_id}"


def event_topic(subscriber: str, event_type: str) -> str:
    """Topic carrying ``event_type`` to one subscriber service."""
    return f"{subscriber}.{event_type}"
