"""Pending request/reply calls keyed by correlation ID."""
import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any
import structlog
from ..errors import InvalidArgumentError, RequestTimeoutError
from ..metrics.collector import collector, LATE_REPLIES_TOTAL, RPC_PENDING

log = structlog.get_logger()


@dataclass
class PendingCall:
    correlation_id: str
    future: asyncio.Future
    deadline: float
    service: str | None = None
    topic: str | None = None
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


class CorrelationRegistry:
    """
    Tracks in-flight calls and settles each exactly once.

    A call is settled by whichever of reply, error, timeout or shutdown
    gets to it first. Taking the entry out of the pending table is the
    single arbitration point: only the caller that removed it may complete
    the future, everyone after that sees a miss. Settlement may be triggered
    from any thread; the future itself is always completed on the loop that
    registered it.
    """

    def __init__(self, settled_memory: int = 1024):
        self._pending: dict[str, PendingCall] = {}
        # Recently settled IDs, used to tell late replies from unknown ones
        self._settled: OrderedDict[str, str] = OrderedDict()
        self._settled_memory = settled_memory

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, correlation_id: str) -> bool:
        return correlation_id in self._pending

    def register(
        self,
        correlation_id: str,
        timeout: float,
        service: str | None = None,
        topic: str | None = None,
    ) -> asyncio.Future:
        """
        Register a call and arm its deadline.

        Args:
            correlation_id: Unique ID of the call
            timeout: Seconds until the call fails with RequestTimeoutError
            service: Target service, used by ``fail_all``
            topic: Request topic, for logging

        Returns:
            Future completed with the reply value or the failure

        Raises:
            InvalidArgumentError: If the ID is already pending or timeout <= 0
        """
        if timeout <= 0:
            raise InvalidArgumentError("timeout must be positive", timeout=timeout)
        if correlation_id in self._pending:
            raise InvalidArgumentError(
                f"Correlation ID '{correlation_id}' is already pending",
                correlation_id=correlation_id,
            )

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        call = PendingCall(
            correlation_id=correlation_id,
            future=future,
            deadline=loop.time() + timeout,
            service=service,
            topic=topic,
        )
        call.timer = loop.call_later(timeout, self.expire, correlation_id)
        self._pending[correlation_id] = call
        future.add_done_callback(lambda f: self._on_done(correlation_id, f))
        collector.gauge(RPC_PENDING, len(self._pending))
        return future

    def resolve(self, correlation_id: str, value: Any) -> bool:
        """
        Complete a call with its reply value.

        Returns:
            True if this call settled the entry, False if it was already
            settled or never registered
        """
        call = self._take(correlation_id, "resolved")
        if call is None:
            self._late(correlation_id)
            return False
        self._settle(call, value=value)
        return True

    def reject(self, correlation_id: str, error: BaseException) -> bool:
        """Fail a call with ``error``; same return contract as ``resolve``."""
        call = self._take(correlation_id, "rejected")
        if call is None:
            self._late(correlation_id)
            return False
        self._settle(call, error=error)
        return True

    def expire(self, correlation_id: str) -> bool:
        """Fail a call with RequestTimeoutError if it is still pending."""
        call = self._take(correlation_id, "timeout")
        if call is None:
            return False
        log.warning(
            "rpc.timeout",
            correlation_id=correlation_id,
            service=call.service,
            topic=call.topic,
        )
        error = RequestTimeoutError(
            f"No reply for '{call.topic}' from '{call.service}' before deadline",
            correlation_id=correlation_id,
            service=call.service,
            topic=call.topic,
        )
        self._settle(call, error=error)
        return True

    def fail_all(self, error: BaseException, service: str | None = None) -> int:
        """
        Fail every pending call, or only those targeting ``service``.

        Returns:
            Number of calls failed
        """
        failed = 0
        for correlation_id, call in list(self._pending.items()):
            if service is not None and call.service != service:
                continue
            if self.reject(correlation_id, error):
                failed += 1
        if failed:
            log.info("rpc.pending_failed", count=failed, service=service, error=str(error))
        return failed

    def discard(self, correlation_id: str) -> bool:
        """Drop a call without completing its future (caller gave up)."""
        call = self._take(correlation_id, "discarded")
        if call is None:
            return False
        if call.timer is not None:
            call.timer.cancel()
        return True

    def _take(self, correlation_id: str, outcome: str) -> PendingCall | None:
        call = self._pending.pop(correlation_id, None)
        if call is None:
            return None
        self._settled[correlation_id] = outcome
        while len(self._settled) > self._settled_memory:
            self._settled.popitem(last=False)
        collector.gauge(RPC_PENDING, len(self._pending))
        return call

    def _late(self, correlation_id: str):
        outcome = self._settled.get(correlation_id)
        collector.increment(LATE_REPLIES_TOTAL)
        if outcome is None:
            log.warning("rpc.unknown_reply", correlation_id=correlation_id)
        else:
            log.info("rpc.late_reply", correlation_id=correlation_id, settled_as=outcome)

    def _settle(self, call: PendingCall, value: Any = None, error: BaseException | None = None):
        loop = call.future.get_loop()

        def complete():
            if call.timer is not None:
                call.timer.cancel()
            if call.future.done():
                return
            if error is not None:
                call.future.set_exception(error)
            else:
                call.future.set_result(value)

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            complete()
        elif not loop.is_closed():
            loop.call_soon_threadsafe(complete)

    def _on_done(self, correlation_id: str, future: asyncio.Future):
        if future.cancelled():
            self.discard(correlation_id)
