"""Redis Streams broker adapter."""
import asyncio
import functools
import socket
from typing import Any, Iterable
import structlog
import orjson
from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError
from .base import BrokerAdapter, MessageHandler
from ..config import get_settings
from ..errors import TransportClosedError, TransportError
from ..event_models import BrokerMessage

log = structlog.get_logger()


class RedisStreamAdapter(BrokerAdapter):
    """Redis Streams implementation of the broker adapter.

    Every topic maps to one stream. Each adapter reads through its own
    consumer group, so every connection sees every message of the topics
    it subscribes to, and acknowledges a message only after its handler
    returned.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        group: str = "helpdesk",
        consumer: str | None = None,
        stream_prefix: str | None = None,
        maxlen: int | None = None,
        block_ms: int = 1000,
    ):
        """
        Initialize Redis stream adapter.

        Args:
            redis_url: Redis connection URL (defaults to settings.REDIS_URL)
            group: Consumer group name for this connection
            consumer: Consumer name inside the group (defaults to hostname)
            stream_prefix: Prefix for stream keys
            maxlen: Approximate maximum length of each stream
            block_ms: XREADGROUP blocking timeout
        """
        settings = get_settings()
        self.redis_url = redis_url or str(settings.REDIS_URL)
        self.group = group
        self.consumer = consumer or socket.gethostname()
        self.stream_prefix = stream_prefix or settings.REDIS_STREAM_PREFIX
        self.maxlen = maxlen or settings.REDIS_STREAM_MAXLEN
        self.block_ms = block_ms
        self._client: Redis | None = None
        self._handlers: dict[str, MessageHandler] = {}
        self._reader: asyncio.Task | None = None
        self._replay_pending = False

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def stream_key(self, topic: str) -> str:
        return f"{self.stream_prefix}:{topic}"

    def topic_from_key(self, stream_key: str) -> str:
        return stream_key[len(self.stream_prefix) + 1:]

    async def connect(self) -> None:
        if self._client is not None:
            return
        client = Redis.from_url(
            self.redis_url,
            decode_responses=False,
            socket_connect_timeout=5,
            socket_timeout=10,
        )
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            await client.aclose()
            raise TransportError(f"Redis unreachable: {e}") from e
        self._client = client
        log.info("broker.connected", adapter="redis_stream", group=self.group)

    async def close(self) -> None:
        if self._client is None:
            return
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        client, self._client = self._client, None
        self._handlers.clear()
        await client.aclose()
        log.info("broker.closed", adapter="redis_stream", group=self.group)

    async def publish(self, topic: str, key: str | None, data: dict[str, Any]) -> str:
        """
        Publish a message to the topic's stream.

        Raises:
            TransportClosedError: If the adapter is not connected
            TransportError: If Redis rejects the write
        """
        if self._client is None:
            raise TransportClosedError("Redis connection is closed", topic=topic)
        try:
            fields = {b"data": orjson.dumps(data)}
        except orjson.JSONEncodeError as e:
            raise TransportError(f"Message for '{topic}' is not serializable: {e}", topic=topic) from e
        if key is not None:
            fields[b"key"] = key.encode()
        try:
            entry_id = await self._client.xadd(
                self.stream_key(topic),
                fields,
                id="*",
                maxlen=self.maxlen,
                approximate=True,
            )
        except RedisError as e:
            log.error("redis.publish_failed", error=str(e), topic=topic)
            raise TransportError(f"Publish to '{topic}' failed: {e}", topic=topic) from e
        offset = entry_id.decode() if isinstance(entry_id, bytes) else str(entry_id)
        log.debug("broker.published", topic=topic, key=key, offset=offset, adapter="redis_stream")
        return offset

    async def subscribe(self, topics: Iterable[str], handler: MessageHandler) -> None:
        if self._client is None:
            raise TransportClosedError("Redis connection is closed")
        for topic in topics:
            stream = self.stream_key(topic)
            try:
                await self._client.xgroup_create(stream, self.group, id="$", mkstream=True)
            except ResponseError as e:
                # BUSYGROUP: the group already exists, resume where it left off
                if "BUSYGROUP" not in str(e):
                    raise TransportError(f"Subscribe to '{topic}' failed: {e}", topic=topic) from e
            self._handlers[topic] = handler
            log.debug("broker.subscribed", topic=topic, adapter="redis_stream", group=self.group)
        self._replay_pending = True
        if self._reader is None and self._handlers:
            self._reader = asyncio.create_task(self._read_loop(), name=f"redis-reader-{self.group}")

    async def health_check(self) -> bool:
        """
        Check Redis connection health.

        Returns:
            True if Redis is accessible, False otherwise
        """
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError) as e:
            log.warning("redis.health_check_failed", error=str(e))
            return False

    async def read_once(self, count: int = 100) -> int:
        """
        Read and dispatch one batch of messages.

        The first batch after subscribing replays entries this consumer
        received earlier but never acknowledged. An entry is acknowledged
        once its handler returns, unless the handler deferred the ack; an
        entry whose handler raised stays pending. Entries that cannot be
        decoded are logged and acknowledged so they are not read again.

        Returns:
            Number of messages dispatched
        """
        if self._client is None or not self._handlers:
            return 0
        replay = self._replay_pending
        start_id = "0" if replay else ">"
        streams = {self.stream_key(topic): start_id for topic in self._handlers}
        response = await self._client.xreadgroup(
            self.group,
            self.consumer,
            streams,
            count=count,
            block=None if replay else self.block_ms,
        )
        self._replay_pending = False
        dispatched = 0
        for stream_key, entries in response or []:
            stream = stream_key.decode() if isinstance(stream_key, bytes) else stream_key
            topic = self.topic_from_key(stream)
            handler = self._handlers.get(topic)
            for entry_id, fields in entries:
                try:
                    message = self._decode(topic, entry_id, fields)
                except (KeyError, ValueError) as e:
                    log.error(
                        "redis.malformed_entry",
                        topic=topic,
                        entry_id=entry_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    await self._client.xack(stream, self.group, entry_id)
                    continue
                message.bind_ack(functools.partial(self._ack, stream, entry_id))
                if handler is not None:
                    try:
                        await handler(message)
                    except Exception as e:
                        log.error(
                            "broker.handler_failed",
                            topic=topic,
                            offset=message.offset,
                            error=str(e),
                            error_type=type(e).__name__,
                            adapter="redis_stream",
                        )
                        continue
                if not message.ack_deferred:
                    await message.ack()
                dispatched += 1
        return dispatched

    def _decode(self, topic: str, entry_id, fields: dict) -> BrokerMessage:
        return BrokerMessage(
            topic=topic,
            key=fields[b"key"].decode() if b"key" in fields else None,
            data=orjson.loads(fields[b"data"]),
            offset=entry_id.decode() if isinstance(entry_id, bytes) else str(entry_id),
        )

    async def _ack(self, stream: str, entry_id):
        if self._client is None:
            log.warning("redis.ack_after_close", stream=stream, entry_id=entry_id)
            return
        await self._client.xack(stream, self.group, entry_id)

    async def _read_loop(self):
        backoff = 0.1
        while self._client is not None:
            try:
                await self.read_once()
                backoff = 0.1
            except asyncio.CancelledError:
                raise
            except (RedisError, OSError) as e:
                log.warning("redis.read_failed", error=str(e), retry_in=backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 5.0)
            except Exception as e:
                log.error(
                    "redis.read_crashed",
                    error=str(e),
                    error_type=type(e).__name__,
                    retry_in=backoff,
                    exc_info=True,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 5.0)
