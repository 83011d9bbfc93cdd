"""Request handlers served by the status service."""
from typing import Any
from .catalog import StatusCatalog
from ..messaging.endpoint import ServiceEndpoint
from ..messaging.payloads import as_dict, require_int
from ..messaging import topics


def register_status_handlers(endpoint: ServiceEndpoint, catalog: StatusCatalog):
    async def find_by_id(value: Any) -> dict[str, Any]:
        payload = as_dict(value)
        status = await catalog.find_by_id(require_int(payload, "status_id"))
        item = status.model_dump()
        if payload.get("language"):
            item["name"] = status.name(payload["language"])
        return item

    async def find_all(value: Any) -> list[dict[str, Any]]:
        payload = as_dict(value)
        return await catalog.find_all(language=payload.get("language"))

    endpoint.register_handler(topics.STATUS_FIND_BY_ID, find_by_id)
    endpoint.register_handler(topics.STATUS_FIND_ALL, find_all)
