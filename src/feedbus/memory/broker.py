"""InMemoryBroker — IBroker fake with topic routing, dead-lettering and prefetch."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from aio_pika import ExchangeType

from ..exceptions import MessagingConnectionError, MessagingError
from ..ports import IBroker, IDelivery
from ..retry import with_retry_count
from ..topology import (
    BindingSpec,
    ExchangeSpec,
    QueueSpec,
    Topology,
    default_topology,
    routing_key_matches,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from ..ports import DeliveryCallback

logger = logging.getLogger("feedbus.memory")

DEFAULT_EXCHANGE = ""


@dataclass(frozen=True)
class StoredMessage:
    """A message as the fake broker holds it."""

    body: bytes
    exchange: str
    routing_key: str
    message_id: str | None
    app_id: str | None = None
    headers: dict[str, Any] = field(default_factory=dict)
    redelivered: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class _Consumer:
    tag: str
    queue: str
    callback: DeliveryCallback
    prefetch: int
    unacked: int = 0

    @property
    def has_capacity(self) -> bool:
        return self.prefetch <= 0 or self.unacked < self.prefetch


@dataclass
class _Queue:
    spec: QueueSpec
    ready: deque[StoredMessage] = field(default_factory=deque)
    consumers: list[_Consumer] = field(default_factory=list)
    cursor: int = 0

    def next_consumer(self) -> _Consumer | None:
        """Round-robin over consumers that still have prefetch capacity."""
        count = len(self.consumers)
        for offset in range(count):
            index = (self.cursor + offset) % count
            consumer = self.consumers[index]
            if consumer.has_capacity:
                self.cursor = (index + 1) % count
                return consumer
        return None


class InMemoryDelivery(IDelivery):
    """A delivery from the fake broker; settling twice raises MessagingError."""

    def __init__(
        self,
        broker: InMemoryBroker,
        queue: str,
        message: StoredMessage,
        consumer: _Consumer | None,
    ) -> None:
        self._broker = broker
        self._queue = queue
        self._message = message
        self._consumer = consumer
        self.outcome: str | None = None

    @property
    def body(self) -> bytes:
        return self._message.body

    @property
    def routing_key(self) -> str:
        return self._message.routing_key

    @property
    def queue(self) -> str:
        return self._queue

    @property
    def message_id(self) -> str | None:
        return self._message.message_id

    @property
    def headers(self) -> Mapping[str, Any]:
        return dict(self._message.headers)

    @property
    def redelivered(self) -> bool:
        return self._message.redelivered

    def _settle(self, outcome: str) -> None:
        if self.outcome is not None:
            raise MessagingError(
                f"Delivery {self.message_id!r} already settled ({self.outcome})"
            )
        self.outcome = outcome
        self._broker._settled(self._queue, self._consumer)

    async def ack(self) -> None:
        self._settle("ack")

    async def reject(self) -> None:
        self._settle("reject")
        self._broker._dead_letter(self._queue, self._message, reason="rejected")

    async def requeue(self, retry_count: int) -> None:
        self._settle("requeue")
        copy = replace(
            self._message,
            headers=with_retry_count(self._message.headers, retry_count),
            exchange=DEFAULT_EXCHANGE,
            routing_key=self._queue,
            redelivered=False,
        )
        self._broker._enqueue(self._queue, copy)

    async def release(self) -> None:
        self._settle("release")
        self._broker._enqueue(
            self._queue, replace(self._message, redelivered=True), front=True
        )


class InMemoryBroker(IBroker):
    """Deterministic broker fake for tests and local runs.

    Implements topic (``*``/``#``) and fanout routing, the default exchange,
    dead-letter exchanges (adding an ``x-death`` header like RabbitMQ does),
    per-consumer prefetch and round-robin dispatch between competing
    consumers. :meth:`disconnect` / :meth:`reconnect` simulate a broker
    outage for publishers.
    """

    def __init__(self, *, topology: Topology | None = None) -> None:
        self._topology = topology or default_topology()
        self._exchanges: dict[str, ExchangeSpec] = {}
        self._queues: dict[str, _Queue] = {}
        self._bindings: list[BindingSpec] = []
        self._consumers: dict[str, _Consumer] = {}
        self._tags = itertools.count(1)
        self._tasks: set[asyncio.Task[None]] = set()
        self._available = asyncio.Event()
        self._available.set()
        self.published: list[StoredMessage] = []

    # ── Test controls ────────────────────────────────────────────────

    def disconnect(self) -> None:
        """Make publish fail and ensure_ready block until :meth:`reconnect`."""
        self._available.clear()

    def reconnect(self) -> None:
        self._available.set()

    @property
    def is_connected(self) -> bool:
        return self._available.is_set()

    def messages(self, queue: str) -> list[StoredMessage]:
        """Ready (undelivered) messages in *queue*, head first."""
        return list(self._queue(queue).ready)

    def depth(self, queue: str) -> int:
        return len(self._queue(queue).ready)

    async def join(self) -> None:
        """Wait until every spawned delivery callback has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── IBroker ──────────────────────────────────────────────────────

    async def declare_topology(self) -> None:
        for exchange in self._topology.exchanges:
            existing = self._exchanges.get(exchange.name)
            if existing is not None and existing.type != exchange.type:
                raise MessagingError(
                    f"Exchange {exchange.name!r} already declared as "
                    f"{existing.type.value}"
                )
            self._exchanges[exchange.name] = exchange
        for queue in self._topology.queues:
            if queue.name not in self._queues:
                self._queues[queue.name] = _Queue(queue)
        for binding in self._topology.bindings:
            if binding not in self._bindings:
                self._bindings.append(binding)

    async def ensure_ready(self) -> None:
        await self._available.wait()

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
        if not self.is_connected:
            raise MessagingConnectionError("Broker connection is not available")
        message = StoredMessage(
            body=body,
            exchange=exchange,
            routing_key=routing_key,
            message_id=message_id,
            app_id=app_id,
            headers=dict(headers or {}),
        )
        self.published.append(message)
        self._route(message)

    async def consume(
        self,
        queue: str,
        callback: DeliveryCallback,
        *,
        prefetch: int,
    ) -> str:
        target = self._queue(queue)
        consumer = _Consumer(
            tag=f"memory-{queue}-{next(self._tags)}",
            queue=queue,
            callback=callback,
            prefetch=prefetch,
        )
        target.consumers.append(consumer)
        self._consumers[consumer.tag] = consumer
        self._dispatch(target)
        return consumer.tag

    async def cancel(self, consumer_tag: str) -> None:
        consumer = self._consumers.pop(consumer_tag, None)
        if consumer is None:
            return
        target = self._queues[consumer.queue]
        target.consumers.remove(consumer)
        target.cursor = 0

    async def get(self, queue: str) -> IDelivery | None:
        target = self._queue(queue)
        if not target.ready:
            return None
        return InMemoryDelivery(self, queue, target.ready.popleft(), None)

    async def health_check(self) -> bool:
        return self.is_connected

    # ── Internals ────────────────────────────────────────────────────

    def _queue(self, name: str) -> _Queue:
        try:
            return self._queues[name]
        except KeyError:
            raise MessagingError(f"NOT_FOUND - no queue {name!r}") from None

    def _route(self, message: StoredMessage) -> None:
        if message.exchange == DEFAULT_EXCHANGE:
            if message.routing_key in self._queues:
                self._enqueue(message.routing_key, message)
            return
        spec = self._exchanges.get(message.exchange)
        if spec is None:
            raise MessagingError(f"NOT_FOUND - no exchange {message.exchange!r}")
        for binding in self._bindings:
            if binding.exchange != spec.name:
                continue
            if spec.type is ExchangeType.FANOUT or routing_key_matches(
                binding.pattern, message.routing_key
            ):
                self._enqueue(binding.queue, message)

    def _enqueue(self, queue: str, message: StoredMessage, *, front: bool = False) -> None:
        target = self._queue(queue)
        if front:
            target.ready.appendleft(message)
        else:
            target.ready.append(message)
        self._dispatch(target)

    def _dispatch(self, target: _Queue) -> None:
        while target.ready:
            consumer = target.next_consumer()
            if consumer is None:
                return
            message = target.ready.popleft()
            consumer.unacked += 1
            delivery = InMemoryDelivery(self, target.spec.name, message, consumer)
            task = asyncio.get_running_loop().create_task(
                self._deliver(consumer, delivery)
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, consumer: _Consumer, delivery: InMemoryDelivery) -> None:
        try:
            await consumer.callback(delivery)
        except Exception:
            logger.exception("Consumer %s raised; delivery left unsettled", consumer.tag)

    def _settled(self, queue: str, consumer: _Consumer | None) -> None:
        if consumer is not None:
            consumer.unacked -= 1
        self._dispatch(self._queue(queue))

    def _dead_letter(self, queue: str, message: StoredMessage, *, reason: str) -> None:
        spec = self._queue(queue).spec
        if spec.dead_letter_exchange is None:
            logger.debug("Dropping rejected message from %s (no DLX)", queue)
            return
        headers = dict(message.headers)
        headers["x-death"] = _add_death(
            headers.get("x-death"), queue=queue, reason=reason, message=message
        )
        self._route(
            replace(
                message,
                exchange=spec.dead_letter_exchange,
                headers=headers,
                redelivered=False,
            )
        )


def _add_death(
    existing: Any,
    *,
    queue: str,
    reason: str,
    message: StoredMessage,
) -> list[dict[str, Any]]:
    """Mimic RabbitMQ's x-death bookkeeping: newest entry first, counted per queue+reason."""
    deaths = [dict(entry) for entry in existing or []]
    for entry in deaths:
        if entry.get("queue") == queue and entry.get("reason") == reason:
            entry["count"] = int(entry.get("count", 0)) + 1
            entry["time"] = datetime.now(timezone.utc)
            deaths.remove(entry)
            deaths.insert(0, entry)
            return deaths
    deaths.insert(
        0,
        {
            "count": 1,
            "reason": reason,
            "queue": queue,
            "time": datetime.now(timezone.utc),
            "exchange": message.exchange,
            "routing-keys": [message.routing_key],
        },
    )
    return deaths
