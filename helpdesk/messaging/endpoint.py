"""Inbound side of a service: request handlers and event consumers."""
from collections import OrderedDict
from typing import Any, Awaitable, Callable
import structlog
from pydantic import ValidationError
from .broker_client import connect_with_retry
from .dispatch import KeyedDispatcher
from .topics import event_topic
from ..adapters.base import BrokerAdapter
from ..errors import HelpdeskError, RemoteError, TransportError
from ..event_models import BrokerMessage, DomainEvent, Envelope
from ..metrics.collector import (
    collector,
    REQUESTS_HANDLED_TOTAL,
    REPLIES_REPLAYED_TOTAL,
    EVENTS_CONSUMED_TOTAL,
)

log = structlog.get_logger()

RequestHandler = Callable[[Any], Awaitable[Any]]
EventHandler = Callable[[DomainEvent], Awaitable[None]]


class ServiceEndpoint:
    """
    Serves request topics and consumes event topics for one service.

    Handlers are registered explicitly before ``start``. Each inbound
    message runs in its own task; messages sharing a partition key are
    handled in order. A request that is redelivered after it was answered
    gets the cached reply instead of running its handler again.
    Messages are acknowledged only once their task has finished; a request
    whose reply could not be sent or an event with a failed handler stays
    unacknowledged.
    """

    def __init__(
        self,
        service_name: str,
        adapter: BrokerAdapter,
        reply_cache_size: int = 1024,
        connect_retries: int = 8,
        backoff_initial: float = 0.1,
        backoff_max: float = 5.0,
    ):
        self.service_name = service_name
        self.reply_cache_size = reply_cache_size
        self.connect_retries = connect_retries
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self._adapter = adapter
        self._request_handlers: dict[str, RequestHandler] = {}
        self._event_handlers: dict[str, list[EventHandler]] = {}
        self._event_topics: dict[str, str] = {}
        self._replies: OrderedDict[str, dict[str, Any]] = OrderedDict()
        self._in_progress: set[str] = set()
        self._dispatcher = KeyedDispatcher(name=service_name)
        self._started = False

    @property
    def adapter(self) -> BrokerAdapter:
        return self._adapter

    @property
    def is_running(self) -> bool:
        return self._started and self._adapter.is_connected

    @property
    def dispatcher(self) -> KeyedDispatcher:
        return self._dispatcher

    @property
    def topics(self) -> list[str]:
        return list(self._request_handlers) + list(self._event_topics)

    def register_handler(self, topic: str, handler: RequestHandler):
        """Serve ``topic``; ``handler`` receives the request value and returns the reply value."""
        if self._started:
            raise RuntimeError("Handlers must be registered before the endpoint starts")
        self._request_handlers[topic] = handler

    def register_event_handler(self, event_type: str, handler: EventHandler):
        """Consume ``event_type`` from this service's own event topic."""
        if self._started:
            raise RuntimeError("Handlers must be registered before the endpoint starts")
        self._event_handlers.setdefault(event_type, []).append(handler)
        self._event_topics[event_topic(self.service_name, event_type)] = event_type

    async def start(self):
        if self._started:
            return
        await connect_with_retry(
            self._adapter,
            self.service_name,
            retries=self.connect_retries,
            backoff_initial=self.backoff_initial,
            backoff_max=self.backoff_max,
        )
        if self.topics:
            await self._adapter.subscribe(self.topics, self._on_message)
        self._started = True
        log.info(
            "endpoint.started",
            service=self.service_name,
            request_topics=sorted(self._request_handlers),
            event_types=sorted(self._event_handlers),
        )

    async def stop(self, drain_timeout: float = 5.0):
        if not self._started:
            return
        self._started = False
        await self._adapter.close()
        if not await self._dispatcher.drain(timeout=drain_timeout):
            await self._dispatcher.cancel_all()
        log.info("endpoint.stopped", service=self.service_name)

    async def _on_message(self, message: BrokerMessage):
        if message.topic in self._request_handlers:
            handling = self._handle_request(message)
        elif message.topic in self._event_topics:
            handling = self._handle_event(message)
        else:
            log.warning("endpoint.unrouted_message", topic=message.topic)
            return
        # The message is acknowledged by the dispatched task, not on return
        message.defer_ack()
        self._dispatcher.submit(self._ack_when_done(message, handling), key=message.key)

    async def _ack_when_done(self, message: BrokerMessage, handling: Awaitable[bool]):
        if await handling:
            await message.ack()
        else:
            log.info("endpoint.left_unacked", topic=message.topic, offset=message.offset)

    async def _handle_request(self, message: BrokerMessage) -> bool:
        """Answer one request; False when it must stay unacknowledged."""
        try:
            envelope = Envelope.model_validate(message.data)
        except ValidationError as e:
            log.warning("rpc.malformed_request", topic=message.topic, error=str(e))
            return True
        if not envelope.is_request:
            log.warning("rpc.request_without_reply_to", topic=message.topic)
            return True

        correlation_id = envelope.correlation_id
        with structlog.contextvars.bound_contextvars(
            correlation_id=correlation_id, topic=message.topic, service=self.service_name
        ):
            cached = self._replies.get(correlation_id)
            if cached is not None:
                collector.increment(REPLIES_REPLAYED_TOTAL, labels={"topic": message.topic})
                log.info("rpc.reply_replayed")
                await self._send_reply(envelope.reply_to, correlation_id, cached)
                return True
            if correlation_id in self._in_progress:
                # The copy being handled acknowledges once it has replied
                log.info("rpc.duplicate_in_progress")
                return False

            self._in_progress.add(correlation_id)
            try:
                reply = await self._invoke(message.topic, envelope.value)
                reply["correlation_id"] = correlation_id
                self._remember(correlation_id, reply)
            finally:
                self._in_progress.discard(correlation_id)
            await self._send_reply(envelope.reply_to, correlation_id, reply)
            return True

    async def _invoke(self, topic: str, value: Any) -> dict[str, Any]:
        handler = self._request_handlers[topic]
        try:
            result = await handler(value)
        except HelpdeskError as e:
            collector.increment(REQUESTS_HANDLED_TOTAL, labels={"topic": topic, "outcome": e.kind})
            log.info("rpc.request_failed", kind=e.kind, error=e.message)
            return Envelope(error=e.to_payload()).model_dump(mode="json")
        except Exception as e:
            collector.increment(REQUESTS_HANDLED_TOTAL, labels={"topic": topic, "outcome": "Internal"})
            log.error(
                "rpc.handler_crashed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            error = RemoteError("Internal error while handling request", error_type=type(e).__name__)
            return Envelope(error=error.to_payload()).model_dump(mode="json")
        collector.increment(REQUESTS_HANDLED_TOTAL, labels={"topic": topic, "outcome": "ok"})
        log.debug("rpc.request_handled")
        return Envelope(value=result).model_dump(mode="json")

    async def _send_reply(self, reply_to: str, correlation_id: str, reply: dict[str, Any]):
        try:
            await self._adapter.publish(reply_to, correlation_id, reply)
        except TransportError as e:
            log.error("rpc.reply_failed", reply_to=reply_to, error=str(e))
            raise

    def _remember(self, correlation_id: str, reply: dict[str, Any]):
        self._replies[correlation_id] = reply
        while len(self._replies) > self.reply_cache_size:
            self._replies.popitem(last=False)

    async def _handle_event(self, message: BrokerMessage) -> bool:
        """Run every handler of one event; False if any of them failed."""
        event_type = self._event_topics[message.topic]
        try:
            envelope = Envelope.model_validate(message.data)
            event = DomainEvent.model_validate(envelope.value)
        except ValidationError as e:
            log.warning("event.malformed", topic=message.topic, error=str(e))
            return True

        with structlog.contextvars.bound_contextvars(
            event_id=event.event_id, topic=message.topic, service=self.service_name
        ):
            collector.increment(EVENTS_CONSUMED_TOTAL, labels={"event_type": event_type})
            failed = 0
            for handler in self._event_handlers.get(event_type, []):
                try:
                    await handler(event)
                except Exception as e:
                    log.error(
                        "event.handler_failed",
                        event_type=event_type,
                        handler=getattr(handler, "__qualname__", repr(handler)),
                        error=str(e),
                        error_type=type(e).__name__,
                        exc_info=True,
                    )
                    failed += 1
            return failed == 0
