"""Concurrent message dispatch with per-key ordering."""
import asyncio
from typing import Any, Coroutine, Hashable
import structlog

log = structlog.get_logger()


class KeyedDispatcher:
    """
    Runs one task per inbound message.

    Tasks submitted with the same key run one after another in submission
    order; tasks with different keys (or no key) run concurrently. A failing
    task is logged and does not affect its successors.
    """

    def __init__(self, name: str = "dispatcher"):
        self.name = name
        self._tails: dict[Hashable, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of submitted tasks that have not finished."""
        return len(self._tasks)

    def submit(self, coro: Coroutine[Any, Any, Any], key: Hashable | None = None) -> asyncio.Task:
        """
        Schedule ``coro``, after any earlier task with the same key.

        Returns:
            The task wrapping ``coro``
        """
        previous = self._tails.get(key) if key is not None else None
        task = asyncio.create_task(self._run(coro, previous))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if key is not None:
            self._tails[key] = task
            task.add_done_callback(lambda done, k=key: self._release(k, done))
        return task

    def _release(self, key: Hashable, task: asyncio.Task):
        if self._tails.get(key) is task:
            del self._tails[key]

    async def _run(self, coro: Coroutine[Any, Any, Any], previous: asyncio.Task | None):
        started = False
        try:
            if previous is not None and not previous.done():
                await asyncio.wait([previous])
            started = True
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(
                "dispatch.task_failed",
                dispatcher=self.name,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
        finally:
            if not started:
                coro.close()

    async def drain(self, timeout: float | None = None) -> bool:
        """
        Wait for every submitted task to finish.

        Returns:
            True if all tasks finished within ``timeout``
        """
        while self._tasks:
            done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            if pending:
                return False
        return True

    async def cancel_all(self):
        """Cancel every unfinished task and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
