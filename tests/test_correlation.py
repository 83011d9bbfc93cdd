"""Tests for the correlation registry."""
import asyncio
import pytest
from helpdesk.errors import (
    InvalidArgumentError,
    NotFoundError,
    RequestTimeoutError,
    TransportClosedError,
)
from helpdesk.messaging.correlation import CorrelationRegistry
from helpdesk.metrics.collector import collector, LATE_REPLIES_TOTAL


@pytest.mark.asyncio
async def test_resolve_delivers_value_once():
    """Test a reply completes the call and removes the entry."""
    registry = CorrelationRegistry()
    future = registry.register("c-1", timeout=1.0, service="ticket", topic="ticket.get.info")

    assert "c-1" in registry
    assert registry.resolve("c-1", {"id": 7}) is True
    assert await future == {"id": 7}
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_second_reply_is_dropped():
    """Test a duplicate reply never overrides the first one."""
    registry = CorrelationRegistry()
    future = registry.register("c-1", timeout=1.0)

    assert registry.resolve("c-1", "first") is True
    assert registry.resolve("c-1", "second") is False
    assert await future == "first"


@pytest.mark.asyncio
async def test_timeout_then_late_reply():
    """Test a call times out once and a later reply is discarded."""
    registry = CorrelationRegistry()
    before = collector.total(LATE_REPLIES_TOTAL)
    future = registry.register("c-1", timeout=0.05, service="status", topic="status.find.by.id")

    with pytest.raises(RequestTimeoutError) as exc_info:
        await future
    assert exc_info.value.details["service"] == "status"

    assert registry.resolve("c-1", "late") is False
    assert collector.total(LATE_REPLIES_TOTAL) == before + 1


@pytest.mark.asyncio
async def test_timeout_is_a_builtin_timeout():
    """Test RequestTimeoutError can be caught as TimeoutError."""
    registry = CorrelationRegistry()
    future = registry.register("c-1", timeout=0.01)

    with pytest.raises(TimeoutError):
        await future


@pytest.mark.asyncio
async def test_duplicate_registration_rejected():
    """Test the same correlation ID cannot be pending twice."""
    registry = CorrelationRegistry()
    registry.register("c-1", timeout=1.0)

    with pytest.raises(InvalidArgumentError):
        registry.register("c-1", timeout=1.0)
    registry.discard("c-1")


@pytest.mark.asyncio
async def test_non_positive_timeout_rejected():
    registry = CorrelationRegistry()
    with pytest.raises(InvalidArgumentError):
        registry.register("c-1", timeout=0)


@pytest.mark.asyncio
async def test_reject_delivers_remote_error():
    """Test a remote error payload fails the call with its own class."""
    registry = CorrelationRegistry()
    future = registry.register("c-1", timeout=1.0)

    assert registry.reject("c-1", NotFoundError("Ticket not found")) is True
    with pytest.raises(NotFoundError):
        await future


@pytest.mark.asyncio
async def test_expire_and_reply_race_settles_once():
    """Test whichever of timeout and reply comes first wins."""
    registry = CorrelationRegistry()
    future = registry.register("c-1", timeout=5.0)

    assert registry.expire("c-1") is True
    assert registry.resolve("c-1", "too late") is False
    with pytest.raises(RequestTimeoutError):
        await future


@pytest.mark.asyncio
async def test_fail_all_for_one_service():
    """Test fail_all only touches the named service's calls."""
    registry = CorrelationRegistry()
    ticket_call = registry.register("c-1", timeout=1.0, service="ticket")
    user_call = registry.register("c-2", timeout=1.0, service="user")

    failed = registry.fail_all(TransportClosedError("closed"), service="ticket")

    assert failed == 1
    with pytest.raises(TransportClosedError):
        await ticket_call
    assert not user_call.done()
    assert registry.resolve("c-2", "ok") is True
    assert await user_call == "ok"


@pytest.mark.asyncio
async def test_cancelled_caller_releases_entry():
    """Test cancelling the awaiting side removes the pending entry."""
    registry = CorrelationRegistry()
    future = registry.register("c-1", timeout=1.0)

    future.cancel()
    await asyncio.sleep(0)

    assert "c-1" not in registry
    assert registry.resolve("c-1", "ignored") is False


@pytest.mark.asyncio
async def test_resolve_from_another_thread():
    """Test settlement requested off the loop thread reaches the caller."""
    registry = CorrelationRegistry()
    future = registry.register("c-1", timeout=1.0)

    resolved = await asyncio.to_thread(registry.resolve, "c-1", 42)

    assert resolved is True
    assert await asyncio.wait_for(future, timeout=1.0) == 42


@pytest.mark.asyncio
async def test_many_concurrent_calls_are_independent():
    """Test settling one call leaves the others pending."""
    registry = CorrelationRegistry()
    futures = {f"c-{i}": registry.register(f"c-{i}", timeout=1.0) for i in range(50)}

    for i in range(0, 50, 2):
        registry.resolve(f"c-{i}", i)

    assert len(registry) == 25
    assert await futures["c-10"] == 10
    assert not futures["c-11"].done()
    registry.fail_all(TransportClosedError("done"))
    assert len(registry) == 0
