"""User directory owned by the user service."""
import structlog
from pydantic import BaseModel, Field
from ..errors import NotFoundError

log = structlog.get_logger()


class User(BaseModel):
    id: int
    email: str | None = None
    firstname: str = ""
    lastname: str = ""
    role_ids: list[int] = Field(default_factory=list)
    isenabled: bool = True

    @property
    def display_name(self) -> str:
        return f"{self.firstname} {self.lastname}".strip() or f"user {self.id}"


class UserDirectory:
    """In-memory user directory; disabled users are never returned."""

    def __init__(self, users: list[User] | None = None):
        self._users: dict[int, User] = {}
        for user in users or []:
            self.add(user)

    def add(self, user: User):
        self._users[user.id] = user

    async def find_by_id(self, user_id: int) -> User:
        """
        Raises:
            NotFoundError: If the user is unknown or disabled
        """
        user = self._users.get(user_id)
        if user is None or not user.isenabled:
            raise NotFoundError(f"User {user_id} not found", user_id=user_id)
        return user

    async def find_by_ids(self, user_ids: list[int]) -> list[User]:
        """Enabled users among ``user_ids``, in request order; unknown IDs are skipped."""
        found = []
        for user_id in dict.fromkeys(user_ids):
            user = self._users.get(user_id)
            if user is not None and user.isenabled:
                found.append(user)
        return found

    async def find_by_roles(self, role_ids: list[int]) -> list[User]:
        """Enabled users holding at least one of ``role_ids``."""
        wanted = set(role_ids)
        return [
            user for user in sorted(self._users.values(), key=lambda u: u.id)
            if user.isenabled and wanted.intersection(user.role_ids)
        ]
