"""Tests for request/reply over the in-memory broker."""
import asyncio
import time
import pytest
from helpdesk.adapters.memory import InMemoryAdapter, InMemoryBroker
from helpdesk.config import Settings
from helpdesk.errors import (
    InvalidArgumentError,
    NotFoundError,
    RemoteError,
    RequestTimeoutError,
    TransportClosedError,
)
from helpdesk.messaging.broker_client import BrokerClient
from helpdesk.messaging.correlation import CorrelationRegistry
from helpdesk.messaging.endpoint import ServiceEndpoint
from helpdesk.messaging.gateway import RequestReplyGateway
from helpdesk.messaging.runtime import ServiceRuntime, create_adapter_factory
from helpdesk.messaging.topics import SERVICE_TOPICS, STATUS_FIND_ALL, STATUS_FIND_BY_ID
from helpdesk.metrics.collector import collector, RPC_TIMEOUTS_TOTAL


async def start_status_service(broker, handlers):
    endpoint = ServiceEndpoint("status", InMemoryAdapter(broker, "status"), connect_retries=0)
    for topic, handler in handlers.items():
        endpoint.register_handler(topic, handler)
    await endpoint.start()
    return endpoint


async def connect_gateway(broker, default_timeout=1.0):
    registry = CorrelationRegistry()
    client = BrokerClient(
        "status",
        InMemoryAdapter(broker, "caller"),
        request_topics=SERVICE_TOPICS["status"],
        client_id="caller",
        registry=registry,
        connect_retries=0,
    )
    await client.connect()
    return RequestReplyGateway({"status": client}, registry, default_timeout=default_timeout), client


@pytest.mark.asyncio
async def test_call_returns_reply_value():
    """Test a call gets the handler's return value."""
    broker = InMemoryBroker()

    async def find_by_id(value):
        return {"id": value["status_id"], "names": {"en": "Open"}}

    endpoint = await start_status_service(broker, {STATUS_FIND_BY_ID: find_by_id})
    gateway, client = await connect_gateway(broker)

    result = await gateway.call("status", STATUS_FIND_BY_ID, {"status_id": 1})

    assert result == {"id": 1, "names": {"en": "Open"}}
    assert len(gateway.registry) == 0
    await client.close()
    await endpoint.stop()


@pytest.mark.asyncio
async def test_request_envelope_and_reply_topic():
    """Test the request carries a correlation ID and the client's reply topic."""
    broker = InMemoryBroker()

    async def find_all(value):
        return []

    endpoint = await start_status_service(broker, {STATUS_FIND_ALL: find_all})
    gateway, client = await connect_gateway(broker)

    await gateway.call("status", STATUS_FIND_ALL)

    request = broker.messages(STATUS_FIND_ALL)[0]
    assert request.data["reply_to"] == "status.find.all.reply.caller"
    assert request.key == request.data["correlation_id"]
    reply = broker.messages("status.find.all.reply.caller")[0]
    assert reply.data["correlation_id"] == request.data["correlation_id"]
    await client.close()
    await endpoint.stop()


@pytest.mark.asyncio
async def test_remote_error_is_rebuilt():
    """Test a NotFound raised remotely surfaces as NotFoundError."""
    broker = InMemoryBroker()

    async def find_by_id(value):
        raise NotFoundError("Status 99 not found", status_id=99)

    endpoint = await start_status_service(broker, {STATUS_FIND_BY_ID: find_by_id})
    gateway, client = await connect_gateway(broker)

    with pytest.raises(NotFoundError) as exc_info:
        await gateway.call("status", STATUS_FIND_BY_ID, {"status_id": 99})

    assert exc_info.value.message == "Status 99 not found"
    assert exc_info.value.details == {"status_id": 99}
    await client.close()
    await endpoint.stop()


@pytest.mark.asyncio
async def test_handler_crash_becomes_remote_error():
    """Test an unexpected handler exception reaches the caller as RemoteError."""
    broker = InMemoryBroker()

    async def find_by_id(value):
        raise KeyError("boom")

    endpoint = await start_status_service(broker, {STATUS_FIND_BY_ID: find_by_id})
    gateway, client = await connect_gateway(broker)

    with pytest.raises(RemoteError):
        await gateway.call("status", STATUS_FIND_BY_ID, {"status_id": 1})
    await client.close()
    await endpoint.stop()


@pytest.mark.asyncio
async def test_unanswered_call_times_out_at_deadline():
    """Test a call nobody answers fails at its deadline, not before."""
    broker = InMemoryBroker()
    gateway, client = await connect_gateway(broker)
    before = collector.total(RPC_TIMEOUTS_TOTAL)

    start = time.monotonic()
    with pytest.raises(RequestTimeoutError):
        await gateway.call("status", STATUS_FIND_BY_ID, {"status_id": 1}, timeout=0.2)
    elapsed = time.monotonic() - start

    assert 0.18 <= elapsed < 1.0
    assert collector.total(RPC_TIMEOUTS_TOTAL) == before + 1
    assert len(gateway.registry) == 0
    await client.close()


@pytest.mark.asyncio
async def test_undeclared_topic_rejected():
    """Test calling a topic the client did not declare fails immediately."""
    broker = InMemoryBroker()
    gateway, client = await connect_gateway(broker)

    with pytest.raises(InvalidArgumentError):
        await gateway.call("status", "ticket.get.info", {})
    with pytest.raises(InvalidArgumentError):
        await gateway.call("billing", STATUS_FIND_BY_ID, {})
    await client.close()


@pytest.mark.asyncio
async def test_call_on_closed_client_fails_fast():
    """Test a closed client fails the call without waiting for the deadline."""
    broker = InMemoryBroker()
    gateway, client = await connect_gateway(broker, default_timeout=5.0)
    await client.close()

    start = time.monotonic()
    with pytest.raises(TransportClosedError):
        await gateway.call("status", STATUS_FIND_BY_ID, {"status_id": 1})
    assert time.monotonic() - start < 0.5
    assert len(gateway.registry) == 0


@pytest.mark.asyncio
async def test_close_fails_pending_calls():
    """Test closing the client fails calls still waiting for a reply."""
    broker = InMemoryBroker()
    gateway, client = await connect_gateway(broker, default_timeout=5.0)

    call = asyncio.create_task(gateway.call("status", STATUS_FIND_BY_ID, {"status_id": 1}))
    await asyncio.sleep(0.05)
    await client.close()

    with pytest.raises(TransportClosedError):
        await asyncio.wait_for(call, timeout=1.0)


@pytest.mark.asyncio
async def test_concurrent_calls_get_their_own_replies():
    """Test replies are matched to callers by correlation ID."""
    broker = InMemoryBroker()

    async def find_by_id(value):
        # Answer out of order
        await asyncio.sleep(0.01 * (5 - value["status_id"]))
        return value["status_id"]

    endpoint = await start_status_service(broker, {STATUS_FIND_BY_ID: find_by_id})
    gateway, client = await connect_gateway(broker)

    results = await asyncio.gather(
        *(gateway.call("status", STATUS_FIND_BY_ID, {"status_id": i}) for i in range(5))
    )

    assert results == [0, 1, 2, 3, 4]
    await client.close()
    await endpoint.stop()


@pytest.mark.asyncio
async def test_runtime_gateway_shares_the_client_registry():
    """Test replies resolved by a runtime's clients reach the gateway's callers."""
    broker = InMemoryBroker()
    settings = Settings(BROKER_ADAPTER="memory", BROKER_CONNECT_RETRIES=0, RPC_TIMEOUT_MS=1000)

    async def find_by_id(value):
        return {"id": value["status_id"]}

    endpoint = await start_status_service(broker, {STATUS_FIND_BY_ID: find_by_id})
    runtime = ServiceRuntime(
        "ticket",
        create_adapter_factory(settings, broker=broker),
        remote_services=["status"],
        settings=settings,
    )

    assert runtime.gateway.registry is runtime.registry
    assert runtime.clients["status"].registry is runtime.registry

    async with runtime:
        result = await runtime.gateway.call("status", STATUS_FIND_BY_ID, {"status_id": 3})
    assert result == {"id": 3}
    assert len(runtime.registry) == 0
    await endpoint.stop()


@pytest.mark.asyncio
async def test_unserializable_payload_leaves_nothing_pending():
    """Test a request that cannot be encoded is dropped from the registry."""
    broker = InMemoryBroker()
    gateway, client = await connect_gateway(broker)

    with pytest.raises((TypeError, ValueError)):
        await gateway.call("status", STATUS_FIND_BY_ID, {"status_id": object()})

    assert len(gateway.registry) == 0
    await client.close()
