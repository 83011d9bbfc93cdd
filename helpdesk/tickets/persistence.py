"""Ticket persistence layer (in-memory).

Tickets and their status history live in one store so that a status
change and its history row commit together. ``transaction`` serializes
writers per ticket and applies staged changes only when the block exits
without an exception.
"""
import asyncio
import itertools
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator
import structlog
from .models import Ticket, StatusHistoryEntry
from ..errors import DuplicateSuppressed, InvalidArgumentError, NotFoundError
from ..event_models import utcnow

log = structlog.get_logger()


def normalize_ticket_no(value: str) -> str:
    """
    Normalize a user-supplied ticket number.

    Trims whitespace, upper-cases, and adds the ``T`` prefix when missing.

    Raises:
        InvalidArgumentError: If nothing remains after trimming
    """
    ticket_no = (value or "").strip().upper()
    if not ticket_no:
        raise InvalidArgumentError("ticket_no is required")
    if not ticket_no.startswith("T"):
        ticket_no = f"T{ticket_no}"
    return ticket_no


class TicketTransaction:
    """Changes staged against one ticket; applied on commit."""

    def __init__(self, store: "TicketPersistence", ticket: Ticket):
        self._store = store
        self.ticket = ticket.model_copy()
        self.history: list[StatusHistoryEntry] = []

    def set_status(self, status_id: int, actor_user_id: int, at: datetime):
        self.ticket.status_id = status_id
        self.ticket.update_by = actor_user_id
        self.ticket.update_date = at

    def append_history(
        self,
        status_id: int,
        actor_user_id: int,
        at: datetime,
        comment: str | None = None,
        request_id: str | None = None,
    ) -> StatusHistoryEntry:
        """
        Stage a history row.

        Raises:
            DuplicateSuppressed: If the ticket's latest row already records
                this status, for the same request or within the same second
        """
        existing = self._store.find_duplicate_history(
            self.ticket.id, status_id, at, request_id
        )
        if existing is not None:
            raise DuplicateSuppressed(
                "Status history row already recorded",
                existing=existing,
                ticket_id=self.ticket.id,
                status_id=status_id,
            )
        entry = StatusHistoryEntry(
            id=self._store._next_history_id(),
            ticket_id=self.ticket.id,
            status_id=status_id,
            create_by=actor_user_id,
            create_date=at,
            comment=comment,
            request_id=request_id,
        )
        self.history.append(entry)
        return entry


class TicketPersistence:
    """In-memory store of tickets and status history."""

    def __init__(self):
        self._tickets: dict[int, Ticket] = {}
        self._history: list[StatusHistoryEntry] = []
        self._locks: dict[int, asyncio.Lock] = {}
        self._ticket_ids = itertools.count(1)
        self._history_ids = itertools.count(1)
        self._create_lock = asyncio.Lock()
        log.info("tickets.persistence.initialized", backend="memory")

    async def get(self, ticket_id: int) -> Ticket | None:
        ticket = self._tickets.get(ticket_id)
        return ticket.model_copy() if ticket else None

    async def get_by_no(self, ticket_no: str) -> Ticket | None:
        ticket_no = normalize_ticket_no(ticket_no)
        for ticket in self._tickets.values():
            if ticket.ticket_no == ticket_no:
                return ticket.model_copy()
        return None

    async def resolve(self, ticket_id: int | None = None, ticket_no: str | None = None) -> Ticket:
        """
        Find an enabled ticket by ID or ticket number.

        Raises:
            InvalidArgumentError: If neither key is given
            NotFoundError: If no enabled ticket matches
        """
        if ticket_id is None and not ticket_no:
            raise InvalidArgumentError("ticket_id or ticket_no is required")
        ticket = await self.get(ticket_id) if ticket_id is not None else await self.get_by_no(ticket_no)
        if ticket is None or not ticket.isenabled:
            raise NotFoundError(
                "Ticket not found", ticket_id=ticket_id, ticket_no=ticket_no
            )
        return ticket

    async def create(
        self,
        create_by: int,
        status_id: int,
        project_id: int | None = None,
        categories_id: int | None = None,
        issue_description: str = "",
        ticket_no: str | None = None,
    ) -> tuple[Ticket, StatusHistoryEntry]:
        """
        Insert a new ticket together with its first history row.

        A ticket number is generated when none is given.
        """
        async with self._create_lock:
            now = utcnow()
            number = normalize_ticket_no(ticket_no) if ticket_no else self.next_ticket_no(now)
            if any(t.ticket_no == number for t in self._tickets.values()):
                raise InvalidArgumentError(f"Ticket '{number}' already exists", ticket_no=number)
            ticket = Ticket(
                id=next(self._ticket_ids),
                ticket_no=number,
                status_id=status_id,
                project_id=project_id,
                categories_id=categories_id,
                issue_description=issue_description,
                create_by=create_by,
                create_date=now,
            )
            entry = StatusHistoryEntry(
                id=self._next_history_id(),
                ticket_id=ticket.id,
                status_id=status_id,
                create_by=create_by,
                create_date=now,
            )
            self._tickets[ticket.id] = ticket
            self._history.append(entry)
        log.info("ticket.created", ticket_id=ticket.id, ticket_no=ticket.ticket_no)
        return ticket.model_copy(), entry

    def next_ticket_no(self, now: datetime | None = None) -> str:
        """Next ticket number for the month: ``T{YY}{MM}{NNNNN}``."""
        now = now or utcnow()
        prefix = f"T{now:%y%m}"
        running = 0
        for ticket in self._tickets.values():
            suffix = ticket.ticket_no[len(prefix):].lstrip("-")
            if ticket.ticket_no.startswith(prefix) and suffix.isdigit():
                running = max(running, int(suffix))
        return f"{prefix}{running + 1:05d}"

    @asynccontextmanager
    async def transaction(self, ticket_id: int) -> AsyncIterator[TicketTransaction]:
        """
        Open a unit of work on one ticket.

        Writers on the same ticket are serialized. Staged changes are
        applied when the block exits normally and dropped otherwise.

        Raises:
            NotFoundError: If the ticket does not exist
        """
        lock = self._locks.setdefault(ticket_id, asyncio.Lock())
        async with lock:
            ticket = self._tickets.get(ticket_id)
            if ticket is None:
                raise NotFoundError("Ticket not found", ticket_id=ticket_id)
            tx = TicketTransaction(self, ticket)
            yield tx
            self._tickets[ticket_id] = tx.ticket
            self._history.extend(tx.history)
            log.debug("tickets.transaction_committed", ticket_id=ticket_id, history_rows=len(tx.history))

    async def history(self, ticket_id: int) -> list[StatusHistoryEntry]:
        """Status history of one ticket, oldest first."""
        return [entry for entry in self._history if entry.ticket_id == ticket_id]

    async def latest_history(self, ticket_id: int) -> StatusHistoryEntry | None:
        for entry in reversed(self._history):
            if entry.ticket_id == ticket_id:
                return entry
        return None

    def find_duplicate_history(
        self,
        ticket_id: int,
        status_id: int,
        at: datetime,
        request_id: str | None = None,
    ) -> StatusHistoryEntry | None:
        """
        The ticket's latest history row, if the new row would repeat it.

        Only the latest row counts: once another status has been recorded,
        returning to an earlier status is a new transition.
        """
        latest = None
        for entry in reversed(self._history):
            if entry.ticket_id == ticket_id:
                latest = entry
                break
        if latest is None or latest.status_id != status_id:
            return None
        if request_id is not None and latest.request_id == request_id:
            return latest
        if latest.create_date.replace(microsecond=0) == at.replace(microsecond=0):
            return latest
        return None

    async def count(self) -> int:
        return len(self._tickets)

    def _next_history_id(self) -> int:
        return next(self._history_ids)
