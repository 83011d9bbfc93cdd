"""
Messaging core: broker clients, request/reply, event fan-out and the
inbound service endpoint.
"""
from .broker_client import BrokerClient, connect_with_retry
from .correlation import CorrelationRegistry
from .dispatch import KeyedDispatcher
from .endpoint import ServiceEndpoint
from .fanout import EventFanoutPublisher, FanoutResult
from .gateway import RequestReplyGateway
from .runtime import ServiceRuntime, create_adapter_factory

__all__ = [
    "BrokerClient",
    "connect_with_retry",
    "CorrelationRegistry",
    "KeyedDispatcher",
    "ServiceEndpoint",
    "EventFanoutPublisher",
    "FanoutResult",
    "RequestReplyGateway",
    "ServiceRuntime",
    "create_adapter_factory",
]
