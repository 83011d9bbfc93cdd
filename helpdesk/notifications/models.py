"""Notification models."""
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from ..event_models import utcnow


class NotificationType(str, Enum):
    """Reason a notification was created."""
    NEW_TICKET = "new_ticket"
    STATUS_CHANGE = "status_change"
    ASSIGNMENT = "assignment"


class Notification(BaseModel):
    """One notification for one recipient."""
    model_config = ConfigDict(use_enum_values=True)

    id: int
    ticket_no: str
    user_id: int = Field(..., description="Recipient")
    status_id: int | None = Field(default=None, description="Status that triggered the notification")
    notification_type: NotificationType
    title: str
    message: str
    is_read: bool = False
    read_at: datetime | None = None
    email_sent: bool = False
    email_sent_at: datetime | None = None
    email_failed: bool = False
    email_failed_at: datetime | None = None
    email_failed_reason: str | None = None
    create_date: datetime = Field(default_factory=utcnow)
