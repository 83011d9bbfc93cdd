"""Tests for keyed message dispatch."""
import asyncio
import pytest
from helpdesk.messaging.dispatch import KeyedDispatcher


@pytest.mark.asyncio
async def test_same_key_runs_in_order():
    """Test tasks sharing a key run sequentially in submission order."""
    dispatcher = KeyedDispatcher()
    order = []

    async def job(n, delay):
        await asyncio.sleep(delay)
        order.append(n)

    dispatcher.submit(job(1, 0.03), key="ticket-1")
    dispatcher.submit(job(2, 0.0), key="ticket-1")
    dispatcher.submit(job(3, 0.01), key="ticket-1")

    assert await dispatcher.drain(timeout=1.0)
    assert order == [1, 2, 3]


@pytest.mark.asyncio
async def test_different_keys_run_concurrently():
    """Test a slow key does not hold back other keys."""
    dispatcher = KeyedDispatcher()
    release = asyncio.Event()
    order = []

    async def slow():
        await release.wait()
        order.append("slow")

    async def fast():
        order.append("fast")
        release.set()

    dispatcher.submit(slow(), key="ticket-1")
    dispatcher.submit(fast(), key="ticket-2")

    assert await dispatcher.drain(timeout=1.0)
    assert order == ["fast", "slow"]


@pytest.mark.asyncio
async def test_failure_does_not_block_successor():
    """Test a failing task is logged and the next one on its key still runs."""
    dispatcher = KeyedDispatcher()
    done = []

    async def broken():
        raise ValueError("bad message")

    async def ok():
        done.append(True)

    dispatcher.submit(broken(), key="k")
    dispatcher.submit(ok(), key="k")

    assert await dispatcher.drain(timeout=1.0)
    assert done == [True]
    assert dispatcher.pending == 0


@pytest.mark.asyncio
async def test_cancel_all():
    dispatcher = KeyedDispatcher()

    async def forever():
        await asyncio.sleep(60)

    dispatcher.submit(forever(), key="a")
    dispatcher.submit(forever(), key="a")

    assert not await dispatcher.drain(timeout=0.01)
    await dispatcher.cancel_all()
    assert dispatcher.pending == 0
