"""Wiring of the messaging core for one service process."""
import asyncio
import uuid
from typing import Any, Callable, Iterable
import structlog
from .broker_client import BrokerClient
from .correlation import CorrelationRegistry
from .endpoint import ServiceEndpoint
from .fanout import EventFanoutPublisher
from .gateway import RequestReplyGateway
from .topics import SERVICE_TOPICS
from ..adapters.base import BrokerAdapter
from ..adapters.memory import InMemoryAdapter, InMemoryBroker
from ..config import Settings, get_settings

log = structlog.get_logger()

# Builds one broker connection; the argument names its consumer group
AdapterFactory = Callable[[str], BrokerAdapter]


def create_adapter_factory(settings: Settings | None = None, broker: InMemoryBroker | None = None) -> AdapterFactory:
    """
    Pick the broker backend from settings.

    Falls back to the in-memory broker when Redis is selected but no
    REDIS_URL is configured.
    """
    settings = settings or get_settings()

    if settings.BROKER_ADAPTER == "redis" and settings.REDIS_URL:
        from ..adapters.redis_stream import RedisStreamAdapter

        log.info("broker.adapter_selected", adapter="redis_stream")
        return lambda group: RedisStreamAdapter(
            redis_url=str(settings.REDIS_URL),
            group=group,
            stream_prefix=settings.REDIS_STREAM_PREFIX,
            maxlen=settings.REDIS_STREAM_MAXLEN,
        )

    if settings.BROKER_ADAPTER == "redis":
        log.warning("broker.redis_url_missing", fallback="memory")
    shared = broker or InMemoryBroker()
    log.info("broker.adapter_selected", adapter="memory")
    return lambda group: InMemoryAdapter(shared, name=group)


class ServiceRuntime:
    """
    Owns the broker connections of one service.

    One endpoint connection serves this service's own topics; one broker
    client per remote service carries outbound requests and events. The
    gateway and fan-out publisher share those clients and one correlation
    registry.
    """

    def __init__(
        self,
        service_name: str,
        adapter_factory: AdapterFactory,
        remote_services: Iterable[str] = (),
        settings: Settings | None = None,
        metrics=None,
    ):
        settings = settings or get_settings()
        self.service_name = service_name
        self.settings = settings
        self.registry = CorrelationRegistry()
        self.instance_id = uuid.uuid4().hex[:8]

        backoff = dict(
            connect_retries=settings.BROKER_CONNECT_RETRIES,
            backoff_initial=settings.BROKER_BACKOFF_INITIAL_MS / 1000,
            backoff_max=settings.BROKER_BACKOFF_MAX_MS / 1000,
        )
        self.clients: dict[str, BrokerClient] = {}
        for remote in dict.fromkeys(remote_services):
            client_id = f"{service_name}-{self.instance_id}"
            self.clients[remote] = BrokerClient(
                remote,
                adapter_factory(f"{client_id}-{remote}"),
                request_topics=SERVICE_TOPICS.get(remote, ()),
                client_id=client_id,
                registry=self.registry,
                metrics=metrics,
                **backoff,
            )

        self.gateway = RequestReplyGateway(
            self.clients,
            registry=self.registry,
            default_timeout=settings.rpc_timeout,
            metrics=metrics,
        )
        self.fanout = EventFanoutPublisher(self.clients, origin_service=service_name, metrics=metrics)
        self.endpoint = ServiceEndpoint(
            service_name,
            adapter_factory(service_name),
            reply_cache_size=settings.REPLY_CACHE_SIZE,
            **backoff,
        )
        # Domain objects built on top of this runtime, by name
        self.components: dict[str, Any] = {}
        self._started = False

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self):
        """
        Start the endpoint and connect every client.

        Raises:
            TransportError: If any connection cannot be established; the
                connections already opened are closed again
        """
        if self._started:
            return
        try:
            await self.endpoint.start()
            await asyncio.gather(*(client.connect() for client in self.clients.values()))
        except Exception:
            await self.stop(force=True)
            raise
        self._started = True
        log.info("runtime.started", service=self.service_name, remotes=sorted(self.clients))

    async def stop(self, force: bool = False):
        if not self._started and not force:
            return
        self._started = False
        for client in self.clients.values():
            await client.close()
        await self.endpoint.stop()
        log.info("runtime.stopped", service=self.service_name)

    async def health(self) -> dict[str, bool]:
        """Connection health of the endpoint and every client."""
        status = {"endpoint": await self.endpoint.adapter.health_check()}
        for name, client in self.clients.items():
            status[name] = await client.health_check()
        return status

    async def __aenter__(self) -> "ServiceRuntime":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
