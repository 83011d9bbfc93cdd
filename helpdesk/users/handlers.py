"""Request handlers served by the user service."""
from typing import Any
from .directory import UserDirectory
from ..messaging.endpoint import ServiceEndpoint
from ..messaging.payloads import as_dict, int_list, require_int
from ..messaging import topics


def register_user_handlers(endpoint: ServiceEndpoint, directory: UserDirectory):
    async def find_by_id(value: Any) -> dict[str, Any]:
        user = await directory.find_by_id(require_int(as_dict(value), "user_id"))
        return user.model_dump()

    async def find_by_ids(value: Any) -> list[dict[str, Any]]:
        users = await directory.find_by_ids(int_list(as_dict(value), "user_ids"))
        return [user.model_dump() for user in users]

    async def find_by_roles(value: Any) -> list[dict[str, Any]]:
        users = await directory.find_by_roles(int_list(as_dict(value), "role_ids"))
        return [user.model_dump() for user in users]

    endpoint.register_handler(topics.USER_FIND_BY_ID, find_by_id)
    endpoint.register_handler(topics.USERS_FIND_BY_IDS, find_by_ids)
    endpoint.register_handler(topics.USERS_FIND_BY_ROLES, find_by_roles)
