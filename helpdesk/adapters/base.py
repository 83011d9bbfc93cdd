"""Base adapter interface for broker backends."""
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Iterable
from ..event_models import BrokerMessage

MessageHandler = Callable[[BrokerMessage], Awaitable[None]]


class BrokerAdapter(ABC):
    """Abstract interface for one connection to a topic broker."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether the connection is currently usable."""

    @abstractmethod
    async def connect(self) -> None:
        """
        Establish the connection.

        Raises:
            TransportError: If the broker cannot be reached
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the connection and stop delivering to subscribers."""
        pass

    @abstractmethod
    async def publish(self, topic: str, key: str | None, data: dict[str, Any]) -> str:
        """
        Append a message to a topic.

        Args:
            topic: Destination topic
            key: Partition key; ordering is preserved per key
            data: JSON-serializable message body

        Returns:
            Broker-assigned message offset/ID

        Raises:
            TransportClosedError: If the adapter is not connected
            TransportError: If the broker rejects the message
        """
        pass

    @abstractmethod
    async def subscribe(self, topics: Iterable[str], handler: MessageHandler) -> None:
        """
        Deliver every message later published on ``topics`` to ``handler``.

        Must be called after ``connect``.
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check if the backend is healthy and accessible.

        Returns:
            True if backend is healthy, False otherwise
        """
        pass
