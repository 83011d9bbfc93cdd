"""Request handlers served by the ticket service."""
from typing import Any
from .orchestrator import TicketWorkflowOrchestrator
from .persistence import TicketPersistence
from ..messaging.endpoint import ServiceEndpoint
from ..messaging.payloads import as_dict, optional_int, require_int
from ..messaging import topics


def register_ticket_handlers(
    endpoint: ServiceEndpoint,
    persistence: TicketPersistence,
    orchestrator: TicketWorkflowOrchestrator,
):
    """Register every ticket-service request topic on ``endpoint``."""

    async def get_info(value: Any) -> dict[str, Any]:
        payload = as_dict(value)
        ticket = await persistence.resolve(
            ticket_id=optional_int(payload, "ticket_id"),
            ticket_no=payload.get("ticket_no"),
        )
        return ticket.model_dump(mode="json")

    async def update_status(value: Any) -> dict[str, Any]:
        payload = as_dict(value)
        result = await orchestrator.transition(
            require_int(payload, "ticket_id"),
            require_int(payload, "status_id"),
            require_int(payload, "user_id"),
            comment=payload.get("comment"),
            request_id=payload.get("request_id"),
        )
        return result.model_dump(mode="json")

    async def create(value: Any) -> dict[str, Any]:
        payload = as_dict(value)
        ticket, fanout = await orchestrator.open_ticket(
            require_int(payload, "user_id"),
            issue_description=payload.get("issue_description") or "",
            project_id=optional_int(payload, "project_id"),
            categories_id=optional_int(payload, "categories_id"),
        )
        return {**ticket.model_dump(mode="json"), "event_id": fanout.event.event_id}

    async def assign(value: Any) -> dict[str, Any]:
        payload = as_dict(value)
        return await orchestrator.assign_ticket(
            require_int(payload, "ticket_id"),
            require_int(payload, "assignee_id"),
            require_int(payload, "user_id"),
        )

    async def history(value: Any) -> list[dict[str, Any]]:
        payload = as_dict(value)
        ticket = await persistence.resolve(
            ticket_id=optional_int(payload, "ticket_id"),
            ticket_no=payload.get("ticket_no"),
        )
        return [entry.model_dump(mode="json") for entry in await persistence.history(ticket.id)]

    endpoint.register_handler(topics.TICKET_GET_INFO, get_info)
    endpoint.register_handler(topics.TICKET_STATUS_UPDATE, update_status)
    endpoint.register_handler(topics.TICKET_CREATE, create)
    endpoint.register_handler(topics.TICKET_ASSIGN, assign)
    endpoint.register_handler(topics.STATUS_HISTORY_FIND_BY_TICKET, history)
