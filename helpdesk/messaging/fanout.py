"""Domain event fan-out to every interested service."""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping
import structlog
from .broker_client import BrokerClient
from .topics import event_topic
from ..errors import HelpdeskError, TransportClosedError
from ..event_models import DomainEvent, Envelope
from ..metrics.collector import collector, EVENTS_PUBLISHED_TOTAL, FANOUT_FAILURES_TOTAL

log = structlog.get_logger()


@dataclass
class FanoutResult:
    """Per-subscriber outcome of one published event."""
    event: DomainEvent
    delivered: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class EventFanoutPublisher:
    """
    Publishes a domain event to each subscriber's own topic.

    Subscribers are published to concurrently and independently: one
    closed or failing subscriber is logged and reported in the result,
    the others still get the event. Publishing never raises.
    """

    def __init__(self, clients: Mapping[str, BrokerClient], origin_service: str, metrics=None):
        self._clients = clients
        self.origin_service = origin_service
        self.metrics = metrics

    async def publish_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        subscribers: Iterable[str],
        key: str | None = None,
    ) -> FanoutResult:
        """
        Build a DomainEvent and deliver it to every subscriber.

        Args:
            event_type: Event type, also the topic suffix
            payload: Event body
            subscribers: Names of the subscribing services
            key: Partition key (usually the ticket ID)

        Returns:
            FanoutResult listing delivered and failed subscribers
        """
        event = DomainEvent(
            event_type=event_type,
            payload=payload,
            origin_service=self.origin_service,
        )
        data = Envelope(value=event.model_dump(mode="json")).model_dump(mode="json")
        result = FanoutResult(event=event)

        names = list(dict.fromkeys(subscribers))
        outcomes = await asyncio.gather(
            *(self._deliver(name, event, data, key) for name in names)
        )
        for name, error in zip(names, outcomes):
            if error is None:
                result.delivered.append(name)
            else:
                result.failed[name] = error

        log.info(
            "event.published",
            event_id=event.event_id,
            event_type=event_type,
            delivered=result.delivered,
            failed=sorted(result.failed),
        )
        return result

    async def _deliver(
        self,
        subscriber: str,
        event: DomainEvent,
        data: dict[str, Any],
        key: str | None,
    ) -> str | None:
        labels = {"event_type": event.event_type, "subscriber": subscriber}
        try:
            client = self._clients.get(subscriber)
            if client is None:
                raise TransportClosedError(f"No broker client for subscriber '{subscriber}'")
            await client.publish(event_topic(subscriber, event.event_type), key, data)
        except HelpdeskError as e:
            error = e.message
        except Exception as e:
            # A subscriber failure must not stop delivery to the others
            log.error(
                "fanout.subscriber_crashed",
                subscriber=subscriber,
                event_id=event.event_id,
                error=str(e),
                exc_info=True,
            )
            error = str(e) or type(e).__name__
        else:
            collector.increment(EVENTS_PUBLISHED_TOTAL, labels=labels)
            if self.metrics is not None:
                self.metrics.record_event_published(event.event_type, subscriber, True)
            return None

        collector.increment(FANOUT_FAILURES_TOTAL, labels=labels)
        if self.metrics is not None:
            self.metrics.record_event_published(event.event_type, subscriber, False)
        log.warning(
            "fanout.subscriber_failed",
            subscriber=subscriber,
            event_id=event.event_id,
            event_type=event.event_type,
            error=error,
        )
        return error
