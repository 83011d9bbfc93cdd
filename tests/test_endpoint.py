"""Tests for the inbound service endpoint."""
import asyncio
import pytest
from unittest.mock import AsyncMock
from conftest import eventually
from helpdesk.adapters.memory import InMemoryAdapter, InMemoryBroker
from helpdesk.event_models import BrokerMessage, DomainEvent, Envelope
from helpdesk.messaging.endpoint import ServiceEndpoint
from helpdesk.metrics.collector import collector, REPLIES_REPLAYED_TOTAL


async def start_endpoint(broker, **handlers):
    endpoint = ServiceEndpoint("notification", InMemoryAdapter(broker, "notification"), connect_retries=0)
    for topic, handler in handlers.get("requests", {}).items():
        endpoint.register_handler(topic, handler)
    for event_type, handler in handlers.get("events", []):
        endpoint.register_event_handler(event_type, handler)
    await endpoint.start()
    return endpoint


async def publisher(broker):
    adapter = InMemoryAdapter(broker, "publisher")
    await adapter.connect()
    return adapter


@pytest.mark.asyncio
async def test_redelivered_request_gets_cached_reply():
    """Test a redelivered request is answered without running the handler again."""
    broker = InMemoryBroker()
    calls = []

    async def unread_count(value):
        calls.append(value)
        return {"count": len(calls)}

    endpoint = await start_endpoint(broker, requests={"notification.unread.count": unread_count})
    adapter = await publisher(broker)
    request = Envelope(
        correlation_id="corr-1",
        reply_to="notification.unread.count.reply.test",
        value={"user_id": 42},
    ).model_dump(mode="json")
    before = collector.total(REPLIES_REPLAYED_TOTAL)

    await adapter.publish("notification.unread.count", "corr-1", request)
    await eventually(lambda: len(broker.messages("notification.unread.count.reply.test")) == 1)
    await adapter.publish("notification.unread.count", "corr-1", request)
    await eventually(lambda: len(broker.messages("notification.unread.count.reply.test")) == 2)

    replies = broker.messages("notification.unread.count.reply.test")
    assert len(calls) == 1
    assert replies[0].data == replies[1].data
    assert replies[0].data["value"] == {"count": 1}
    assert collector.total(REPLIES_REPLAYED_TOTAL) == before + 1
    await adapter.close()
    await endpoint.stop()


@pytest.mark.asyncio
async def test_event_handler_failure_is_isolated():
    """Test a failing event handler neither stops other handlers nor the consumer."""
    broker = InMemoryBroker()
    seen = []

    async def broken(event):
        raise RuntimeError("handler bug")

    async def recorder(event):
        seen.append(event.payload["n"])

    endpoint = await start_endpoint(
        broker,
        events=[("ticket.created", broken), ("ticket.created", recorder)],
    )
    adapter = await publisher(broker)

    for n in range(3):
        event = DomainEvent(event_type="ticket.created", payload={"n": n}, origin_service="ticket")
        await adapter.publish(
            "notification.ticket.created", "1", Envelope(value=event.model_dump(mode="json")).model_dump(mode="json")
        )

    await eventually(lambda: len(seen) == 3)
    assert seen == [0, 1, 2]
    await adapter.close()
    await endpoint.stop()


@pytest.mark.asyncio
async def test_malformed_messages_are_dropped():
    """Test invalid requests and events are logged and skipped."""
    broker = InMemoryBroker()
    seen = []

    async def recorder(event):
        seen.append(event.event_type)

    async def handler(value):
        return "ok"

    endpoint = await start_endpoint(
        broker,
        requests={"notification.unread.count": handler},
        events=[("ticket.created", recorder)],
    )
    adapter = await publisher(broker)

    await adapter.publish("notification.unread.count", None, {"value": 1})
    await adapter.publish("notification.ticket.created", None, {"value": {"nope": True}})
    event = DomainEvent(event_type="ticket.created", origin_service="ticket")
    await adapter.publish(
        "notification.ticket.created", None, Envelope(value=event.model_dump(mode="json")).model_dump(mode="json")
    )

    await eventually(lambda: seen == ["ticket.created"])
    await adapter.close()
    await endpoint.stop()


@pytest.mark.asyncio
async def test_register_after_start_rejected():
    endpoint = await start_endpoint(InMemoryBroker())

    with pytest.raises(RuntimeError):
        endpoint.register_handler("notification.unread.count", None)
    await endpoint.stop()


@pytest.mark.asyncio
async def test_topics_listing():
    broker = InMemoryBroker()
    endpoint = ServiceEndpoint("satisfaction", InMemoryAdapter(broker))

    async def noop(value):
        return None

    endpoint.register_handler("satisfaction.create", noop)
    endpoint.register_event_handler("ticket.status.changed", noop)

    assert endpoint.topics == ["satisfaction.create", "satisfaction.ticket.status.changed"]


def delivered(topic, data, key=None):
    message = BrokerMessage(topic=topic, key=key, data=data)
    ack = AsyncMock()
    message.bind_ack(ack)
    return message, ack


@pytest.mark.asyncio
async def test_request_acknowledged_after_reply_is_sent():
    """Test the broker ack waits for the handler and the reply."""
    broker = InMemoryBroker()
    release = asyncio.Event()

    async def unread_count(value):
        await release.wait()
        return {"count": 0}

    endpoint = await start_endpoint(broker, requests={"notification.unread.count": unread_count})
    request = Envelope(
        correlation_id="corr-ack",
        reply_to="notification.unread.count.reply.test",
        value={"user_id": 42},
    ).model_dump(mode="json")
    message, ack = delivered("notification.unread.count", request, key="corr-ack")

    await endpoint._on_message(message)
    await asyncio.sleep(0.05)
    ack.assert_not_awaited()

    release.set()
    await eventually(lambda: ack.await_count == 1)
    assert broker.messages("notification.unread.count.reply.test")[0].data["value"] == {"count": 0}
    await endpoint.stop()


@pytest.mark.asyncio
async def test_failed_event_handler_leaves_message_unacknowledged():
    """Test an event with a failing handler is not acknowledged, a clean one is."""
    broker = InMemoryBroker()
    fail = True

    async def sometimes_broken(event):
        if fail:
            raise RuntimeError("database unavailable")

    endpoint = await start_endpoint(broker, events=[("ticket.created", sometimes_broken)])
    event = DomainEvent(event_type="ticket.created", payload={"ticket_id": 1}, origin_service="ticket")
    body = Envelope(value=event.model_dump(mode="json")).model_dump(mode="json")

    first, first_ack = delivered("notification.ticket.created", body, key="1")
    await endpoint._on_message(first)
    assert await endpoint.dispatcher.drain(timeout=1.0)
    first_ack.assert_not_awaited()

    fail = False
    second, second_ack = delivered("notification.ticket.created", body, key="1")
    await endpoint._on_message(second)
    assert await endpoint.dispatcher.drain(timeout=1.0)
    second_ack.assert_awaited_once()
    await endpoint.stop()


@pytest.mark.asyncio
async def test_unfinished_request_is_not_acknowledged_on_stop():
    """Test a request cut off by shutdown stays unacknowledged."""
    broker = InMemoryBroker()

    async def never_returns(value):
        await asyncio.Event().wait()

    endpoint = await start_endpoint(broker, requests={"notification.unread.count": never_returns})
    request = Envelope(
        correlation_id="corr-stuck",
        reply_to="notification.unread.count.reply.test",
        value={},
    ).model_dump(mode="json")
    message, ack = delivered("notification.unread.count", request)

    await endpoint._on_message(message)
    await endpoint.stop(drain_timeout=0.05)

    ack.assert_not_awaited()
