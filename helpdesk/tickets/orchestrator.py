"""Ticket workflow: status transitions, ticket creation and assignment."""
import asyncio
import time
from typing import Any
import structlog
from .models import Ticket, StatusHistoryEntry, TransitionResult
from .persistence import TicketPersistence
from ..config import Settings, get_settings
from ..errors import DuplicateSuppressed, InvalidStatusError, NotFoundError
from ..event_models import utcnow
from ..messaging.fanout import EventFanoutPublisher, FanoutResult
from ..messaging.gateway import RequestReplyGateway
from ..messaging.topics import EventTypes, STATUS_FIND_BY_ID, TICKET_GET_INFO
from ..metrics.collector import (
    collector,
    TRANSITIONS_TOTAL,
    DUPLICATES_SUPPRESSED_TOTAL,
)

log = structlog.get_logger()


class TicketWorkflowOrchestrator:
    """
    Runs the status-transition saga for tickets.

    A transition validates the ticket and the target status with the
    owning services, commits the status change and its history row in one
    local transaction, and only then announces ``ticket.status.changed``.
    Validation failures abort before any state changes; announcement
    failures are logged and never undo the commit.

    Any existing status is an accepted target, from any current status.
    """

    def __init__(
        self,
        gateway: RequestReplyGateway,
        fanout: EventFanoutPublisher,
        persistence: TicketPersistence,
        settings: Settings | None = None,
    ):
        self.gateway = gateway
        self.fanout = fanout
        self.persistence = persistence
        self.settings = settings or get_settings()
        self._emission_locks: dict[int, asyncio.Lock] = {}

    def _emission_lock(self, ticket_id: int) -> asyncio.Lock:
        return self._emission_locks.setdefault(ticket_id, asyncio.Lock())

    async def transition(
        self,
        ticket_id: int,
        new_status_id: int,
        actor_user_id: int,
        comment: str | None = None,
        request_id: str | None = None,
    ) -> TransitionResult:
        """
        Move a ticket to a new status.

        Args:
            ticket_id: Ticket to update
            new_status_id: Target status
            actor_user_id: User performing the change
            comment: Optional comment stored on the history row
            request_id: Causal request ID; a repeat of it is a no-op

        Returns:
            TransitionResult; ``duplicate`` is True when the change had
            already been applied and nothing new was written or announced

        Raises:
            NotFoundError: Ticket absent or disabled
            InvalidStatusError: Target status unknown
            RequestTimeoutError: A validation call got no reply in time
            TransportError: A validation call could not be sent
        """
        start = time.monotonic()
        with structlog.contextvars.bound_contextvars(ticket_id=ticket_id):
            info = await self.gateway.call(
                "ticket", TICKET_GET_INFO, {"ticket_id": ticket_id}
            )
            if not info or not info.get("isenabled", True):
                raise NotFoundError("Ticket not found", ticket_id=ticket_id)
            await self._require_status(new_status_id)

            # Held from commit until the event is out, so events for one
            # ticket leave in commit order
            async with self._emission_lock(ticket_id):
                now = utcnow()
                try:
                    async with self.persistence.transaction(ticket_id) as tx:
                        old_status_id = tx.ticket.status_id
                        latest = await self.persistence.latest_history(ticket_id)
                        if (
                            old_status_id == new_status_id
                            and latest is not None
                            and latest.status_id == new_status_id
                        ):
                            raise DuplicateSuppressed("Ticket already in target status", existing=latest)
                        entry = tx.append_history(
                            new_status_id, actor_user_id, now, comment=comment, request_id=request_id
                        )
                        tx.set_status(new_status_id, actor_user_id, now)
                        ticket = tx.ticket
                except DuplicateSuppressed as dup:
                    collector.increment(DUPLICATES_SUPPRESSED_TOTAL, labels={"kind": "status_history"})
                    log.info("ticket.transition_duplicate", status_id=new_status_id, request_id=request_id)
                    return await self._duplicate_result(ticket_id, new_status_id, dup.existing)

                collector.increment(TRANSITIONS_TOTAL)
                log.info(
                    "ticket.status_changed",
                    ticket_no=ticket.ticket_no,
                    old_status_id=old_status_id,
                    new_status_id=new_status_id,
                    actor_user_id=actor_user_id,
                    duration_ms=round((time.monotonic() - start) * 1000, 2),
                )

                fanout = await self.fanout.publish_event(
                    EventTypes.TICKET_STATUS_CHANGED,
                    {
                        "ticket_id": ticket.id,
                        "ticket_no": ticket.ticket_no,
                        "old_status_id": old_status_id,
                        "new_status_id": new_status_id,
                        "changed_by": actor_user_id,
                        "changed_at": now.isoformat(),
                        "comment": comment,
                        "create_by": ticket.create_by,
                    },
                    self.settings.status_changed_subscribers,
                    key=str(ticket.id),
                )
                return TransitionResult(
                    ticket_id=ticket.id,
                    ticket_no=ticket.ticket_no,
                    old_status_id=old_status_id,
                    new_status_id=new_status_id,
                    history=entry,
                    event_id=fanout.event.event_id,
                    delivered=fanout.delivered,
                    failed=fanout.failed,
                )

    async def open_ticket(
        self,
        create_by: int,
        issue_description: str = "",
        project_id: int | None = None,
        categories_id: int | None = None,
    ) -> tuple[Ticket, FanoutResult]:
        """Create a ticket in the open status and announce ``ticket.created``."""
        ticket, entry = await self.persistence.create(
            create_by=create_by,
            status_id=self.settings.OPEN_STATUS_ID,
            project_id=project_id,
            categories_id=categories_id,
            issue_description=issue_description,
        )
        fanout = await self.fanout.publish_event(
            EventTypes.TICKET_CREATED,
            {
                "ticket_id": ticket.id,
                "ticket_no": ticket.ticket_no,
                "status_id": ticket.status_id,
                "create_by": create_by,
                "issue_description": issue_description,
                "created_at": ticket.create_date.isoformat(),
            },
            self.settings.ticket_created_subscribers,
            key=str(ticket.id),
        )
        return ticket, fanout

    async def assign_ticket(
        self,
        ticket_id: int,
        assignee_id: int,
        actor_user_id: int,
    ) -> dict[str, Any]:
        """Announce that a ticket was assigned to a supporter."""
        ticket = await self.persistence.resolve(ticket_id=ticket_id)
        fanout = await self.fanout.publish_event(
            EventTypes.TICKET_ASSIGNED,
            {
                "ticket_id": ticket.id,
                "ticket_no": ticket.ticket_no,
                "status_id": ticket.status_id,
                "assignee_id": assignee_id,
                "assigned_by": actor_user_id,
            },
            self.settings.ticket_assigned_subscribers,
            key=str(ticket.id),
        )
        log.info("ticket.assigned", ticket_no=ticket.ticket_no, assignee_id=assignee_id)
        return {
            "ticket_id": ticket.id,
            "ticket_no": ticket.ticket_no,
            "assignee_id": assignee_id,
            "event_id": fanout.event.event_id,
        }

    async def _require_status(self, status_id: int):
        try:
            status = await self.gateway.call("status", STATUS_FIND_BY_ID, {"status_id": status_id})
        except NotFoundError as e:
            raise InvalidStatusError(f"Unknown status {status_id}", status_id=status_id) from e
        if not status:
            raise InvalidStatusError(f"Unknown status {status_id}", status_id=status_id)
        return status

    async def _duplicate_result(
        self,
        ticket_id: int,
        new_status_id: int,
        existing: StatusHistoryEntry,
    ) -> TransitionResult:
        ticket = await self.persistence.get(ticket_id)
        return TransitionResult(
            ticket_id=ticket_id,
            ticket_no=ticket.ticket_no,
            old_status_id=ticket.status_id,
            new_status_id=new_status_id,
            history=existing,
            duplicate=True,
        )
