"""In-memory broker adapter."""
import asyncio
import itertools
from collections import defaultdict
from typing import Any, Iterable
import orjson
import structlog
from .base import BrokerAdapter, MessageHandler
from ..errors import TransportClosedError, TransportError
from ..event_models import BrokerMessage

log = structlog.get_logger()


class InMemoryBroker:
    """
    Process-local topic broker shared by every ``InMemoryAdapter``.

    Each topic keeps an append-only log. A message is delivered to every
    connected adapter subscribed to the topic, in publish order.
    """

    def __init__(self):
        self._logs: dict[str, list[BrokerMessage]] = defaultdict(list)
        self._subscribers: dict[str, set["InMemoryAdapter"]] = defaultdict(set)
        self._offsets = itertools.count(1)

    def append(self, topic: str, key: str | None, data: dict[str, Any]) -> BrokerMessage:
        # Round-trip through JSON so in-memory traffic has wire semantics
        body = orjson.loads(orjson.dumps(data))
        message = BrokerMessage(topic=topic, key=key, data=body, offset=str(next(self._offsets)))
        self._logs[topic].append(message)
        for adapter in list(self._subscribers.get(topic, ())):
            adapter._deliver(message)
        return message

    def attach(self, topic: str, adapter: "InMemoryAdapter"):
        self._subscribers[topic].add(adapter)

    def detach(self, adapter: "InMemoryAdapter"):
        for subscribers in self._subscribers.values():
            subscribers.discard(adapter)

    def messages(self, topic: str) -> list[BrokerMessage]:
        """Return every message ever appended to ``topic``."""
        return list(self._logs.get(topic, ()))

    def topics(self) -> list[str]:
        return sorted(self._logs)


class InMemoryAdapter(BrokerAdapter):
    """In-memory implementation of the broker adapter."""

    def __init__(self, broker: InMemoryBroker, name: str = "memory"):
        self._broker = broker
        self._name = name
        self._connected = False
        self._handlers: dict[str, MessageHandler] = {}
        self._queue: asyncio.Queue[BrokerMessage] | None = None
        self._pump: asyncio.Task | None = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self._connected:
            return
        self._queue = asyncio.Queue()
        self._pump = asyncio.create_task(self._run_pump(), name=f"memory-pump-{self._name}")
        self._connected = True
        log.info("broker.connected", adapter="memory", connection=self._name)

    async def close(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self._broker.detach(self)
        self._handlers.clear()
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None
        self._queue = None
        log.info("broker.closed", adapter="memory", connection=self._name)

    async def publish(self, topic: str, key: str | None, data: dict[str, Any]) -> str:
        if not self._connected:
            raise TransportClosedError(f"Connection '{self._name}' is closed", topic=topic)
        try:
            message = self._broker.append(topic, key, data)
        except orjson.JSONEncodeError as e:
            raise TransportError(f"Message for '{topic}' is not serializable: {e}", topic=topic) from e
        log.debug("broker.published", topic=topic, key=key, offset=message.offset, adapter="memory")
        return message.offset

    async def subscribe(self, topics: Iterable[str], handler: MessageHandler) -> None:
        if not self._connected:
            raise TransportClosedError(f"Connection '{self._name}' is closed")
        for topic in topics:
            self._handlers[topic] = handler
            self._broker.attach(topic, self)
            log.debug("broker.subscribed", topic=topic, adapter="memory", connection=self._name)

    async def health_check(self) -> bool:
        """In-memory adapter is healthy while connected."""
        return self._connected

    def _deliver(self, message: BrokerMessage):
        if self._connected and self._queue is not None:
            self._queue.put_nowait(message)

    async def _run_pump(self):
        while True:
            message = await self._queue.get()
            handler = self._handlers.get(message.topic)
            if handler is None:
                continue
            try:
                await handler(message)
            except Exception as e:
                log.error(
                    "broker.handler_failed",
                    topic=message.topic,
                    offset=message.offset,
                    error=str(e),
                    error_type=type(e).__name__,
                    adapter="memory",
                )
