"""Request and event handlers of the satisfaction service."""
from typing import Any
from .service import SatisfactionService
from ..errors import InvalidArgumentError
from ..messaging.endpoint import ServiceEndpoint
from ..messaging.payloads import as_dict, require_int
from ..messaging import topics
from ..messaging.topics import EventTypes


def _ticket_no(payload: dict[str, Any]) -> str:
    ticket_no = payload.get("ticket_no")
    if not ticket_no:
        raise InvalidArgumentError("'ticket_no' is required", field="ticket_no")
    return str(ticket_no)


def register_satisfaction_handlers(endpoint: ServiceEndpoint, service: SatisfactionService):
    async def create(value: Any) -> dict[str, Any]:
        payload = as_dict(value)
        satisfaction = await service.create(
            _ticket_no(payload),
            require_int(payload, "rating"),
            require_int(payload, "user_id"),
        )
        return satisfaction.model_dump(mode="json")

    async def find_by_ticket(value: Any) -> dict[str, Any]:
        satisfaction = await service.find_by_ticket(_ticket_no(as_dict(value)))
        return satisfaction.model_dump(mode="json")

    endpoint.register_handler(topics.SATISFACTION_CREATE, create)
    endpoint.register_handler(topics.SATISFACTION_FIND_BY_TICKET, find_by_ticket)
    endpoint.register_event_handler(EventTypes.TICKET_STATUS_CHANGED, service.on_status_changed)
