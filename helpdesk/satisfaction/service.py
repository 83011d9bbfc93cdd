"""Satisfaction ratings for closed tickets."""
import asyncio
import itertools
from datetime import datetime
import structlog
from pydantic import BaseModel, Field
from ..config import Settings, get_settings
from ..errors import InvalidArgumentError, NotFoundError
from ..event_models import DomainEvent, utcnow
from ..tickets.persistence import normalize_ticket_no

log = structlog.get_logger()


class Satisfaction(BaseModel):
    id: int
    ticket_id: int
    ticket_no: str
    rating: int = Field(..., ge=1, le=5)
    create_by: int
    create_date: datetime = Field(default_factory=utcnow)


class TicketState(BaseModel):
    """Last known status of a ticket, as seen through status events."""
    ticket_id: int
    ticket_no: str
    status_id: int
    changed_at: datetime


class SatisfactionService:
    """
    Accepts one rating per ticket, only while the ticket is closed.

    Ticket state is learned from ``ticket.status.changed`` events. Events
    can arrive out of order across redeliveries, so an event older than
    the state already recorded for the ticket is ignored.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._states: dict[str, TicketState] = {}
        self._ratings: dict[str, Satisfaction] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def on_status_changed(self, event: DomainEvent):
        payload = event.payload
        ticket_no = normalize_ticket_no(payload["ticket_no"])
        changed_at = datetime.fromisoformat(payload["changed_at"])
        current = self._states.get(ticket_no)
        if current is not None and current.changed_at > changed_at:
            log.info(
                "satisfaction.stale_event",
                ticket_no=ticket_no,
                event_id=event.event_id,
                status_id=payload["new_status_id"],
            )
            return
        self._states[ticket_no] = TicketState(
            ticket_id=payload["ticket_id"],
            ticket_no=ticket_no,
            status_id=payload["new_status_id"],
            changed_at=changed_at,
        )
        log.debug("satisfaction.ticket_state", ticket_no=ticket_no, status_id=payload["new_status_id"])

    def is_closed(self, ticket_no: str) -> bool:
        state = self._states.get(normalize_ticket_no(ticket_no))
        return state is not None and state.status_id == self.settings.CLOSED_STATUS_ID

    async def create(self, ticket_no: str, rating: int, user_id: int) -> Satisfaction:
        """
        Record a rating.

        Raises:
            InvalidArgumentError: Rating out of 1..5, ticket not closed, or
                ticket already rated
        """
        ticket_no = normalize_ticket_no(ticket_no)
        if rating < 1 or rating > 5:
            raise InvalidArgumentError("rating must be between 1 and 5", rating=rating)
        async with self._lock:
            state = self._states.get(ticket_no)
            if state is None or state.status_id != self.settings.CLOSED_STATUS_ID:
                raise InvalidArgumentError(
                    "Satisfaction can only be rated for closed tickets", ticket_no=ticket_no
                )
            if ticket_no in self._ratings:
                raise InvalidArgumentError("Ticket has already been rated", ticket_no=ticket_no)
            satisfaction = Satisfaction(
                id=next(self._ids),
                ticket_id=state.ticket_id,
                ticket_no=ticket_no,
                rating=rating,
                create_by=user_id,
            )
            self._ratings[ticket_no] = satisfaction
        log.info("satisfaction.created", ticket_no=ticket_no, rating=rating)
        return satisfaction

    async def find_by_ticket(self, ticket_no: str) -> Satisfaction:
        """
        Raises:
            NotFoundError: If the ticket has no rating
        """
        ticket_no = normalize_ticket_no(ticket_no)
        satisfaction = self._ratings.get(ticket_no)
        if satisfaction is None:
            raise NotFoundError("No satisfaction rating for ticket", ticket_no=ticket_no)
        return satisfaction
