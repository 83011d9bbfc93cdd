"""Broker client: one connection from this service to one remote service."""
import asyncio
import uuid
from typing import Any, Iterable
import structlog
from pydantic import ValidationError
from .correlation import CorrelationRegistry
from .topics import reply_topic
from ..adapters.base import BrokerAdapter
from ..errors import TransportClosedError, TransportError, error_from_payload
from ..event_models import BrokerMessage, Envelope

log = structlog.get_logger()


async def connect_with_retry(
    adapter: BrokerAdapter,
    target: str,
    retries: int = 8,
    backoff_initial: float = 0.1,
    backoff_max: float = 5.0,
):
    """
    Connect ``adapter``, retrying with bounded exponential backoff.

    Args:
        adapter: Adapter to connect
        target: Name used in logs
        retries: Extra attempts after the first one
        backoff_initial: Delay before the first retry, in seconds
        backoff_max: Upper bound for a single delay, in seconds

    Raises:
        TransportError: If every attempt failed
    """
    last_error: BaseException | None = None
    for attempt in range(retries + 1):
        try:
            await adapter.connect()
            return
        except (TransportError, OSError) as e:
            last_error = e
            if attempt == retries:
                break
            delay = min(backoff_initial * (2 ** attempt), backoff_max)
            log.warning(
                "broker.connect_retry",
                target=target,
                attempt=attempt + 1,
                retry_in=delay,
                error=str(e),
            )
            await asyncio.sleep(delay)
    log.error("broker.connect_failed", target=target, attempts=retries + 1, error=str(last_error))
    raise TransportError(
        f"Could not connect to '{target}' after {retries + 1} attempts",
        target=target,
    ) from last_error


class BrokerClient:
    """
    Connection to one remote service.

    The client declares up front every request topic it will call; at
    connect time it subscribes the reply topic of each of them so that
    replies are routed back into the correlation registry. Closing the
    client fails every call still waiting on it.
    """

    def __init__(
        self,
        service_name: str,
        adapter: BrokerAdapter,
        request_topics: Iterable[str] = (),
        client_id: str | None = None,
        registry: CorrelationRegistry | None = None,
        connect_retries: int = 8,
        backoff_initial: float = 0.1,
        backoff_max: float = 5.0,
        metrics=None,
    ):
        self.service_name = service_name
        self.client_id = client_id or uuid.uuid4().hex[:12]
        self.registry = registry
        self.connect_retries = connect_retries
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.metrics = metrics
        self._adapter = adapter
        self._request_topics = tuple(dict.fromkeys(request_topics))
        self._reply_topics = {
            reply_topic(topic, self.client_id): topic for topic in self._request_topics
        }
        self._connected = False
        self._closed = False
        self._connect_lock = asyncio.Lock()

    @property
    def adapter(self) -> BrokerAdapter:
        return self._adapter

    @property
    def is_connected(self) -> bool:
        return self._connected and not self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def request_topics(self) -> tuple[str, ...]:
        return self._request_topics

    def declares(self, topic: str) -> bool:
        return topic in self._request_topics

    def reply_topic_for(self, topic: str) -> str:
        return reply_topic(topic, self.client_id)

    async def connect(self):
        """
        Connect and subscribe reply topics. Idempotent.

        Raises:
            TransportClosedError: If the client was already closed
            TransportError: If the broker stays unreachable
        """
        if self._closed:
            raise TransportClosedError(
                f"Client for '{self.service_name}' is closed", service=self.service_name
            )
        async with self._connect_lock:
            if self._connected:
                return
            await connect_with_retry(
                self._adapter,
                self.service_name,
                retries=self.connect_retries,
                backoff_initial=self.backoff_initial,
                backoff_max=self.backoff_max,
            )
            if self._reply_topics:
                await self._adapter.subscribe(list(self._reply_topics), self._on_reply)
            self._connected = True
            if self.metrics is not None:
                self.metrics.set_broker_connected(self.service_name, True)
            log.info(
                "broker.client_connected",
                target=self.service_name,
                client_id=self.client_id,
                request_topics=len(self._request_topics),
            )

    async def publish(self, topic: str, key: str | None, data: dict[str, Any]) -> str:
        """
        Publish one message through this client's connection.

        Raises:
            TransportClosedError: If the client is not connected
            TransportError: If the broker rejects the message
        """
        if not self.is_connected:
            raise TransportClosedError(
                f"Client for '{self.service_name}' is not connected",
                service=self.service_name,
                topic=topic,
            )
        return await self._adapter.publish(topic, key, data)

    async def health_check(self) -> bool:
        if not self.is_connected:
            return False
        return await self._adapter.health_check()

    async def close(self):
        """Close the connection and fail every call pending on it. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._connected = False
        if self.registry is not None:
            self.registry.fail_all(
                TransportClosedError(
                    f"Client for '{self.service_name}' closed", service=self.service_name
                ),
                service=self.service_name,
            )
        await self._adapter.close()
        if self.metrics is not None:
            self.metrics.set_broker_connected(self.service_name, False)
        log.info("broker.client_closed", target=self.service_name, client_id=self.client_id)

    async def _on_reply(self, message: BrokerMessage):
        try:
            envelope = Envelope.model_validate(message.data)
        except ValidationError as e:
            log.warning("rpc.malformed_reply", topic=message.topic, error=str(e))
            return
        if envelope.correlation_id is None:
            log.warning("rpc.reply_without_correlation_id", topic=message.topic)
            return
        if self.registry is None:
            return
        if envelope.error is not None:
            self.registry.reject(envelope.correlation_id, error_from_payload(envelope.error))
        else:
            self.registry.resolve(envelope.correlation_id, envelope.value)
