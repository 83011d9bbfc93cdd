from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from typing import Any, Awaitable, Callable, Dict
from datetime import datetime, timezone
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DomainEvent(BaseModel):
    """Immutable domain event broadcast by the fan-out publisher."""
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str = Field(..., description="Event type discriminator")
    payload: Dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=utcnow)
    origin_service: str = Field(..., description="Service that emitted the event")


class Envelope(BaseModel):
    """Wire envelope for requests, replies and events.

    A request carries ``correlation_id`` and ``reply_to``; a reply carries
    ``correlation_id`` and either ``value`` or ``error``; an event carries
    only ``value``.
    """
    correlation_id: str | None = None
    reply_to: str | None = None
    value: Any = None
    error: Dict[str, Any] | None = None

    @property
    def is_request(self) -> bool:
        return self.correlation_id is not None and self.reply_to is not None


class BrokerMessage(BaseModel):
    """A message as delivered by a broker adapter.

    Adapters that track delivery bind an acknowledgement. By default the
    adapter acknowledges once the subscriber's handler returns; a handler
    that finishes the work later calls ``defer_ack`` and then ``ack``.
    """
    topic: str
    key: str | None = None
    data: Dict[str, Any] = Field(default_factory=dict)
    offset: str | None = None

    _ack: Callable[[], Awaitable[None]] | None = PrivateAttr(default=None)
    _ack_deferred: bool = PrivateAttr(default=False)

    def bind_ack(self, ack: Callable[[], Awaitable[None]]):
        self._ack = ack

    def defer_ack(self):
        """Take over acknowledgement from the adapter."""
        self._ack_deferred = True

    @property
    def ack_deferred(self) -> bool:
        return self._ack_deferred

    async def ack(self):
        """Acknowledge the message. Idempotent; a no-op without a bound ack."""
        ack, self._ack = self._ack, None
        if ack is not None:
            await ack()
