"""Ticket status catalogue owned by the status service."""
import structlog
from pydantic import BaseModel, Field
from ..errors import NotFoundError

log = structlog.get_logger()


class TicketStatus(BaseModel):
    """A ticket status with its display name per language."""
    id: int
    names: dict[str, str] = Field(default_factory=dict, description="Language code -> name")
    isenabled: bool = True

    def name(self, language: str = "en") -> str:
        return self.names.get(language) or self.names.get("en") or str(self.id)


DEFAULT_STATUSES = [
    TicketStatus(id=1, names={"en": "Open", "th": "เปิด"}),
    TicketStatus(id=2, names={"en": "In Progress", "th": "กำลังดำเนินการ"}),
    TicketStatus(id=3, names={"en": "Assigned", "th": "มอบหมายแล้ว"}),
    TicketStatus(id=4, names={"en": "Pending", "th": "รอดำเนินการ"}),
    TicketStatus(id=5, names={"en": "Completed", "th": "เสร็จสิ้น"}),
    TicketStatus(id=6, names={"en": "Cancelled", "th": "ยกเลิก"}),
]


class StatusCatalog:
    """In-memory status catalogue."""

    def __init__(self, statuses: list[TicketStatus] | None = None):
        source = DEFAULT_STATUSES if statuses is None else statuses
        self._statuses = {status.id: status.model_copy() for status in source}
        log.info("status.catalog.initialized", statuses=len(self._statuses))

    async def find_by_id(self, status_id: int) -> TicketStatus:
        """
        Get an enabled status.

        Raises:
            NotFoundError: If the status is unknown or disabled
        """
        status = self._statuses.get(status_id)
        if status is None or not status.isenabled:
            raise NotFoundError(f"Status {status_id} not found", status_id=status_id)
        return status

    async def find_all(self, language: str | None = None) -> list[dict]:
        """All enabled statuses; with ``language`` each carries a flat ``name``."""
        result = []
        for status in sorted(self._statuses.values(), key=lambda s: s.id):
            if not status.isenabled:
                continue
            item = status.model_dump()
            if language:
                item["name"] = status.name(language)
            result.append(item)
        return result

    def add(self, status: TicketStatus):
        self._statuses[status.id] = status
