"""
Message queue interfaces.
"""

from typing import Any, Awaitable, Callable, Dict, Protocol, runtime_checkable


@runtime_checkable
class IQueueMessage(Protocol):
    """A delivered message; the consumer settles it exactly once."""

    body: bytes

    async def ack(self) -> None:
        """Acknowledge: the broker forgets the message."""

    async def requeue(self) -> None:
        """Reject back to the broker so another delivery can take it."""


MessageHandler = Callable[[IQueueMessage], Awaitable[None]]


@runtime_checkable
class IQueueClient(Protocol):
    """Broker connection with per-queue consumer control."""

    @property
    def is_connected(self) -> bool:
        """Whether the broker connection is open"""

    async def connect(self) -> None:
        """Open the connection and declare the topology."""

    async def close(self) -> None:
        """Cancel consumers and close the connection."""

    async def subscribe(self, queue: str, handler: MessageHandler) -> None:
        """Start consuming ``queue``; no-op if already subscribed."""

    async def unsubscribe(self, queue: str) -> None:
        """Stop consuming ``queue``; queued messages stay in the broker."""

    def is_subscribed(self, queue: str) -> bool:
        """Whether a consumer is active on ``queue``"""

    async def publish(
        self, exchange: str, routing_key: str, payload: Dict[str, Any]
    ) -> None:
        """Publish a persistent JSON message."""
