"""Ports — the narrow broker interface the engines are written against."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class IDelivery(Protocol):
    """A message handed to a consumer, settled exactly once."""

    @property
    def body(self) -> bytes: ...

    @property
    def routing_key(self) -> str: ...

    @property
    def queue(self) -> str: ...

    @property
    def message_id(self) -> str | None: ...

    @property
    def headers(self) -> Mapping[str, Any]: ...

    @property
    def redelivered(self) -> bool: ...

    async def ack(self) -> None:
        """Processing succeeded; remove the message."""
        ...

    async def reject(self) -> None:
        """Negative-acknowledge without requeue; the broker dead-letters it."""
        ...

    async def requeue(self, retry_count: int) -> None:
        """Redeliver the same message with its redelivery counter set to *retry_count*."""
        ...

    async def release(self) -> None:
        """Return the message to its queue untouched (no counter change)."""
        ...


DeliveryCallback = Callable[[IDelivery], Awaitable[None]]


@runtime_checkable
class IBroker(Protocol):
    """Port for the broker: declare, publish, subscribe and settle.

    ``RabbitMQBroker`` talks AMQP through aio-pika; ``InMemoryBroker`` is the
    deterministic fake used by tests.
    """

    async def declare_topology(self) -> None:
        """Idempotently declare every exchange, queue and binding."""
        ...

    async def ensure_ready(self) -> None:
        """Wait until the broker is usable, reconnecting if necessary."""
        ...

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        body: bytes,
        *,
        message_id: str,
        app_id: str | None = None,
        headers: Mapping[str, Any] | None = None,
    ) -> None:
        """Publish a persistent JSON message.

        Raises MessagingConnectionError immediately when no live channel is
        available; callers decide whether to buffer.
        """
        ...

    async def consume(
        self,
        queue: str,
        callback: DeliveryCallback,
        *,
        prefetch: int,
    ) -> str:
        """Start consuming *queue*; returns a consumer tag."""
        ...

    async def cancel(self, consumer_tag: str) -> None:
        """Stop a subscription; in-flight deliveries may still be settled."""
        ...

    async def get(self, queue: str) -> IDelivery | None:
        """Fetch a single message without subscribing (None if empty)."""
        ...

    async def health_check(self) -> bool: ...


@runtime_checkable
class IBackgroundWorker(Protocol):
    """Lifecycle protocol for the long-running engines."""

    async def start(self) -> None:
        """Start the background process."""
        ...

    async def stop(self) -> None:
        """Stop the background process gracefully."""
        ...
