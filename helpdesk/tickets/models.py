"""Ticket and status history models."""
from datetime import datetime
from pydantic import BaseModel, Field
from ..event_models import utcnow


class Ticket(BaseModel):
    """A support ticket."""
    id: int
    ticket_no: str = Field(..., description="Business key, T{YY}{MM}{NNNNN}")
    status_id: int
    project_id: int | None = None
    categories_id: int | None = None
    issue_description: str = ""
    create_by: int
    create_date: datetime = Field(default_factory=utcnow)
    update_by: int | None = None
    update_date: datetime | None = None
    isenabled: bool = True


class StatusHistoryEntry(BaseModel):
    """One row of a ticket's append-only status history."""
    id: int
    ticket_id: int
    status_id: int
    create_by: int
    create_date: datetime = Field(default_factory=utcnow)
    comment: str | None = None
    request_id: str | None = Field(default=None, description="Causal request that produced the row")


class TransitionResult(BaseModel):
    """Outcome of a status transition."""
    ticket_id: int
    ticket_no: str
    old_status_id: int
    new_status_id: int
    history: StatusHistoryEntry
    duplicate: bool = False
    event_id: str | None = None
    delivered: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)
