"""Request/reply over the broker with a per-call deadline."""
import time
import uuid
from typing import Any, Mapping
import structlog
from .broker_client import BrokerClient
from .correlation import CorrelationRegistry
from ..errors import (
    HelpdeskError,
    InvalidArgumentError,
    RequestTimeoutError,
    TransportError,
)
from ..event_models import Envelope
from ..metrics.collector import (
    collector,
    RPC_CALLS_TOTAL,
    RPC_FAILURES_TOTAL,
    RPC_TIMEOUTS_TOTAL,
    RPC_LATENCY_MS,
)

log = structlog.get_logger()


class RequestReplyGateway:
    """
    Sends a request to a remote service and waits for its reply.

    Each call gets a fresh correlation ID; the reply, a remote error, the
    deadline, or the target client closing settles it, whichever comes
    first.
    """

    def __init__(
        self,
        clients: Mapping[str, BrokerClient] | None = None,
        registry: CorrelationRegistry | None = None,
        default_timeout: float = 5.0,
        metrics=None,
    ):
        self.registry = registry if registry is not None else CorrelationRegistry()
        self.default_timeout = default_timeout
        self.metrics = metrics
        self._clients: dict[str, BrokerClient] = {}
        for client in (clients or {}).values():
            self.add_client(client)

    def add_client(self, client: BrokerClient):
        if client.registry is None:
            client.registry = self.registry
        self._clients[client.service_name] = client

    def client(self, service_name: str) -> BrokerClient:
        client = self._clients.get(service_name)
        if client is None:
            raise InvalidArgumentError(
                f"No broker client for service '{service_name}'", service=service_name
            )
        return client

    async def call(
        self,
        service_name: str,
        topic: str,
        payload: Any = None,
        timeout: float | None = None,
    ) -> Any:
        """
        Call ``topic`` on ``service_name`` and return the reply value.

        Args:
            service_name: Target service
            topic: Request topic, declared by the target's client
            payload: JSON-serializable request value
            timeout: Deadline in seconds (defaults to ``default_timeout``)

        Returns:
            The value the remote handler replied with

        Raises:
            InvalidArgumentError: Unknown service or undeclared topic
            TransportClosedError: Target client closed before the reply
            TransportError: Publish failed
            RequestTimeoutError: No reply before the deadline
            HelpdeskError: The remote handler's error, rebuilt locally
        """
        client = self.client(service_name)
        if not client.declares(topic):
            raise InvalidArgumentError(
                f"Topic '{topic}' is not declared for service '{service_name}'",
                service=service_name,
                topic=topic,
            )

        timeout = self.default_timeout if timeout is None else timeout
        correlation_id = str(uuid.uuid4())
        labels = {"target": service_name, "topic": topic}
        start = time.monotonic()
        collector.increment(RPC_CALLS_TOTAL, labels=labels)

        future = self.registry.register(
            correlation_id, timeout, service=service_name, topic=topic
        )
        try:
            envelope = Envelope(
                correlation_id=correlation_id,
                reply_to=client.reply_topic_for(topic),
                value=payload,
            )
            await client.publish(topic, correlation_id, envelope.model_dump(mode="json"))
        except Exception as e:
            # Nothing will ever settle the entry once the request is not out
            self.registry.discard(correlation_id)
            outcome = "transport_error" if isinstance(e, TransportError) else "error"
            self._record(labels, outcome, start)
            log.error("rpc.publish_failed", target=service_name, topic=topic, error=str(e))
            raise

        log.debug(
            "rpc.request_sent",
            target=service_name,
            topic=topic,
            correlation_id=correlation_id,
            timeout=timeout,
        )
        try:
            value = await future
        except RequestTimeoutError:
            collector.increment(RPC_TIMEOUTS_TOTAL, labels=labels)
            self._record(labels, "timeout", start)
            raise
        except HelpdeskError as e:
            collector.increment(RPC_FAILURES_TOTAL, labels={**labels, "kind": e.kind})
            self._record(labels, "error", start)
            raise
        self._record(labels, "ok", start)
        return value

    def _record(self, labels: dict[str, str], outcome: str, start: float):
        collector.record_latency(RPC_LATENCY_MS, start, labels=labels)
        if self.metrics is not None:
            self.metrics.record_call(
                labels["target"], labels["topic"], outcome, time.monotonic() - start
            )
