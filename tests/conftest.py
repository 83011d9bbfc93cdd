"""Shared fixtures: an in-process cluster of every helpdesk service."""
import asyncio
import pytest
import pytest_asyncio
from helpdesk.adapters.memory import InMemoryBroker
from helpdesk.config import Settings
from helpdesk.messaging.runtime import create_adapter_factory
from helpdesk.notifications.email import LogEmailTransport
from helpdesk.services import BUILDERS, build_service
from helpdesk.users.directory import User, UserDirectory


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll ``predicate`` (sync or async) until it returns truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def settings():
    return Settings(
        RPC_TIMEOUT_MS=2000,
        BROKER_CONNECT_RETRIES=0,
        BROKER_ADAPTER="memory",
        EMAIL_TRANSPORT="log",
    )


@pytest.fixture
def directory():
    return UserDirectory([
        User(id=42, email="requester@example.com", firstname="Nok", lastname="Somsri", role_ids=[1]),
        User(id=7, email="support.a@example.com", firstname="Arthit", role_ids=[5]),
        User(id=8, email="support.b@example.com", firstname="Mali", role_ids=[6]),
        User(id=9, email=None, firstname="NoMail", role_ids=[13]),
        User(id=10, email="gone@example.com", role_ids=[5], isenabled=False),
    ])


class Cluster:
    def __init__(self, broker, runtimes, transport):
        self.broker = broker
        self.runtimes = runtimes
        self.transport = transport

    def __getitem__(self, service_name):
        return self.runtimes[service_name]


@pytest_asyncio.fixture
async def cluster(settings, directory):
    broker = InMemoryBroker()
    factory = create_adapter_factory(settings, broker=broker)
    transport = LogEmailTransport()
    runtimes = {
        name: build_service(
            name,
            settings=settings,
            adapter_factory=factory,
            directory=directory,
            email_transport=transport,
        )
        for name in BUILDERS
    }
    for runtime in runtimes.values():
        await runtime.start()
    yield Cluster(broker, runtimes, transport)
    for runtime in runtimes.values():
        await runtime.stop()
