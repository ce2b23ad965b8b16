"""RabbitMQBroker — IBroker over aio-pika and the ConnectionManager."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import aio_pika

from ..exceptions import MessagingConnectionError
from ..ports import IBroker, IDelivery
from ..retry import with_retry_count
from ..serialization import CONTENT_ENCODING, CONTENT_TYPE
from ..topology import Topology, declare_topology, default_topology
from .connection import CONNECTIVITY_ERRORS

if TYPE_CHECKING:
    from collections.abc import Mapping

    from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue

    from ..ports import DeliveryCallback
    from .connection import ConnectionManager

logger = logging.getLogger("feedbus.rabbitmq")

PUBLISH_ROLE = "publish"
TOPOLOGY_ROLE = "topology"
INSPECT_ROLE = "inspect"


class RabbitMQDelivery(IDelivery):
    """IDelivery backed by an aio-pika incoming message."""

    def __init__(
        self,
        message: AbstractIncomingMessage,
        queue: str,
        channel: AbstractChannel,
    ) -> None:
        self._message = message
        self._queue = queue
        self._channel = channel

    @property
    def body(self) -> bytes:
        return self._message.body

    @property
    def routing_key(self) -> str:
        return self._message.routing_key or ""

    @property
    def queue(self) -> str:
        return self._queue

    @property
    def message_id(self) -> str | None:
        return self._message.message_id

    @property
    def headers(self) -> Mapping[str, Any]:
        return dict(self._message.headers or {})

    @property
    def redelivered(self) -> bool:
        return bool(self._message.redelivered)

    async def ack(self) -> None:
        await self._message.ack()

    async def reject(self) -> None:
        await self._message.reject(requeue=False)

    async def release(self) -> None:
        await self._message.reject(requeue=True)

    async def requeue(self, retry_count: int) -> None:
        """Republish to the originating queue with the new counter, then ack.

        A plain ``basic.nack(requeue=True)`` cannot change headers, so the
        copy keeps body, message id and properties and only the counter moves.
        """
        original = self._message
        copy = aio_pika.Message(
            body=original.body,
            headers=with_retry_count(original.headers, retry_count),
            content_type=original.content_type or CONTENT_TYPE,
            content_encoding=original.content_encoding or CONTENT_ENCODING,
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=original.message_id,
            timestamp=original.timestamp,
            app_id=original.app_id,
        )
        await self._channel.default_exchange.publish(copy, routing_key=self._queue)
        await original.ack()


@dataclass
class _Subscription:
    tag: str
    queue: str
    callback: DeliveryCallback
    prefetch: int
    channel: AbstractChannel | None = None
    amqp_queue: AbstractQueue | None = None
    amqp_tag: str | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def is_live(self) -> bool:
        return (
            self.amqp_tag is not None
            and self.channel is not None
            and not self.channel.is_closed
        )


class RabbitMQBroker(IBroker):
    """RabbitMQ adapter implementing IBroker.

    Publishes persistent JSON messages, consumes with manual ack and a
    per-subscription prefetch, and restores subscriptions (after
    re-declaring the topology) whenever the connection manager reconnects or a
    consumer channel is closed under a live connection.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        *,
        topology: Topology | None = None,
    ) -> None:
        """Configure broker.

        Args:
            connection: Shared connection manager.
            topology: Topology to declare; default is the feed topology.
        """
        self._connection = connection
        self._topology = topology or default_topology()
        self._subscriptions: dict[str, _Subscription] = {}
        self._tags = itertools.count(1)
        self._background: set[asyncio.Task[None]] = set()
        connection.add_reconnect_listener(self._on_reconnect)

    @property
    def topology(self) -> Topology:
        return self._topology

    async def declare_topology(self) -> None:
        channel = await self._connection.acquire_channel(TOPOLOGY_ROLE)
        await declare_topology(channel, self._topology)

    async def ensure_ready(self) -> None:
        await self._connection.acquire_channel(PUBLISH_ROLE)

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
        channel = await self._connection.acquire_channel(PUBLISH_ROLE, wait=False)
        message = aio_pika.Message(
            body=body,
            content_type=CONTENT_TYPE,
            content_encoding=CONTENT_ENCODING,
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=message_id,
            timestamp=datetime.now(timezone.utc),
            app_id=app_id,
            headers=dict(headers or {}),
        )
        try:
            target = await channel.get_exchange(exchange, ensure=False)
            await target.publish(message, routing_key=routing_key)
        except CONNECTIVITY_ERRORS as exc:
            raise MessagingConnectionError(
                f"Publish to {exchange!r} with key {routing_key!r} failed: {exc}"
            ) from exc

    async def consume(
        self,
        queue: str,
        callback: DeliveryCallback,
        *,
        prefetch: int,
    ) -> str:
        subscription = _Subscription(
            tag=f"feedbus-{queue}-{next(self._tags)}",
            queue=queue,
            callback=callback,
            prefetch=prefetch,
        )
        await self._subscribe(subscription)
        self._subscriptions[subscription.tag] = subscription
        return subscription.tag

    async def _subscribe(self, subscription: _Subscription) -> None:
        role = f"consume:{subscription.tag}"
        channel = await self._connection.acquire_channel(role)
        await channel.set_qos(prefetch_count=subscription.prefetch)
        amqp_queue = await channel.get_queue(subscription.queue, ensure=False)

        async def on_message(message: AbstractIncomingMessage) -> None:
            await subscription.callback(
                RabbitMQDelivery(message, subscription.queue, channel)
            )

        subscription.amqp_tag = await amqp_queue.consume(on_message, no_ack=False)
        subscription.amqp_queue = amqp_queue
        subscription.channel = channel
        channel.close_callbacks.add(
            lambda sender, exc=None: self._on_consumer_channel_closed(
                subscription, channel
            )
        )
        logger.info(
            "Consuming %s (prefetch=%d, tag=%s)",
            subscription.queue,
            subscription.prefetch,
            subscription.tag,
        )

    def _on_consumer_channel_closed(
        self, subscription: _Subscription, channel: AbstractChannel
    ) -> None:
        # Ignore close events from a channel the subscription already left.
        if subscription.tag not in self._subscriptions:
            return
        if subscription.channel is not channel:
            return
        subscription.channel = None
        subscription.amqp_queue = None
        subscription.amqp_tag = None
        # Connection-level losses are handled by _on_reconnect.
        if self._connection.is_connected:
            logger.warning(
                "Consumer channel for %s closed; resubscribing", subscription.queue
            )
            task = asyncio.create_task(self._restore(subscription))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _resubscribe(self, subscription: _Subscription) -> None:
        async with subscription.lock:
            if subscription.is_live or subscription.tag not in self._subscriptions:
                return
            await self._subscribe(subscription)

    async def _restore(self, subscription: _Subscription) -> None:
        try:
            await self._resubscribe(subscription)
        except MessagingConnectionError as exc:
            logger.error("Could not resubscribe to %s: %s", subscription.queue, exc)

    async def _on_reconnect(self) -> None:
        if not self._subscriptions:
            return
        await self.declare_topology()
        for subscription in list(self._subscriptions.values()):
            await self._resubscribe(subscription)

    async def cancel(self, consumer_tag: str) -> None:
        subscription = self._subscriptions.pop(consumer_tag, None)
        if subscription is None or subscription.amqp_queue is None:
            return
        if subscription.amqp_tag is not None:
            try:
                await subscription.amqp_queue.cancel(subscription.amqp_tag)
            except CONNECTIVITY_ERRORS as exc:
                logger.debug(
                    "Ignoring error while cancelling %s: %s", consumer_tag, exc
                )
        logger.info("Cancelled consumer %s", consumer_tag)

    async def get(self, queue: str) -> IDelivery | None:
        channel = await self._connection.acquire_channel(INSPECT_ROLE)
        amqp_queue = await channel.get_queue(queue, ensure=False)
        message = await amqp_queue.get(no_ack=False, fail=False)
        if message is None:
            return None
        return RabbitMQDelivery(message, queue, channel)

    async def health_check(self) -> bool:
        """Return True if the connection is healthy."""
        return await self._connection.health_check()
