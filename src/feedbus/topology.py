"""Broker topology — exchanges, queues, bindings and dead-letter routing.

Declared idempotently at startup by every process that touches the broker
and never torn down by the application.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

from aio_pika import ExchangeType

from .envelope import MessageType

if TYPE_CHECKING:
    from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractQueue

logger = logging.getLogger("feedbus.topology")

DEAD_LETTER_EXCHANGE_ARG = "x-dead-letter-exchange"


class Exchanges:
    TOPIC: Final = "feeds.topic"
    DLX: Final = "feeds.dlx"


class Queues:
    ALL: Final = "feeds.all"
    CARBON: Final = "feeds.carbon"
    WEATHER: Final = "feeds.weather"
    DLQ: Final = "feeds.dlq"


ROUTING_KEYS: Final = (
    MessageType.CARBON_INTENSITY,
    MessageType.CARBON_GENERATION,
    MessageType.WEATHER_CURRENT,
    MessageType.WEATHER_FORECAST,
)


@dataclass(frozen=True)
class ExchangeSpec:
    name: str
    type: ExchangeType
    durable: bool = True
    auto_delete: bool = False


@dataclass(frozen=True)
class QueueSpec:
    name: str
    durable: bool = True
    dead_letter_exchange: str | None = None

    @property
    def arguments(self) -> dict[str, Any]:
        if self.dead_letter_exchange is None:
            return {}
        return {DEAD_LETTER_EXCHANGE_ARG: self.dead_letter_exchange}


@dataclass(frozen=True)
class BindingSpec:
    exchange: str
    queue: str
    pattern: str = ""


@dataclass(frozen=True)
class Topology:
    """A complete, declarative description of the broker objects we rely on."""

    exchanges: tuple[ExchangeSpec, ...]
    queues: tuple[QueueSpec, ...]
    bindings: tuple[BindingSpec, ...]
    topic_exchange: str = Exchanges.TOPIC
    dead_letter_queue: str = Queues.DLQ

    def exchange(self, name: str) -> ExchangeSpec:
        for spec in self.exchanges:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def queues_for(self, routing_key: str) -> list[str]:
        """Names of queues bound to the topic exchange that would receive *routing_key*."""
        return [
            b.queue
            for b in self.bindings
            if b.exchange == self.topic_exchange
            and routing_key_matches(b.pattern, routing_key)
        ]


def default_topology() -> Topology:
    """The feed topology: one topic exchange, one fanout DLX, four durable queues."""
    return Topology(
        exchanges=(
            ExchangeSpec(Exchanges.TOPIC, ExchangeType.TOPIC),
            ExchangeSpec(Exchanges.DLX, ExchangeType.FANOUT),
        ),
        queues=(
            QueueSpec(Queues.ALL, dead_letter_exchange=Exchanges.DLX),
            QueueSpec(Queues.CARBON, dead_letter_exchange=Exchanges.DLX),
            QueueSpec(Queues.WEATHER, dead_letter_exchange=Exchanges.DLX),
            # The DLQ itself has no dead-letter target.
            QueueSpec(Queues.DLQ),
        ),
        bindings=(
            BindingSpec(Exchanges.TOPIC, Queues.ALL, "feed.#"),
            BindingSpec(Exchanges.TOPIC, Queues.CARBON, "feed.carbon.*"),
            BindingSpec(Exchanges.TOPIC, Queues.WEATHER, "feed.weather.*"),
            BindingSpec(Exchanges.DLX, Queues.DLQ, ""),
        ),
    )


def routing_key_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic matching: ``*`` is exactly one segment, ``#`` zero or more."""
    return _match(tuple(pattern.split(".")), tuple(routing_key.split(".")))


def _match(pattern: tuple[str, ...], words: tuple[str, ...]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head in ("*", words[0]):
        return _match(rest, words[1:])
    return False


async def declare_topology(
    channel: AbstractChannel,
    topology: Topology | None = None,
) -> None:
    """Declare exchanges, queues and bindings on an aio-pika channel.

    Safe to call repeatedly and concurrently: every declaration is idempotent
    on the broker side. Must complete before publishing or consuming.
    """
    topology = topology or default_topology()
    logger.info("Declaring broker topology")

    exchanges: dict[str, AbstractExchange] = {}
    for spec in topology.exchanges:
        exchanges[spec.name] = await channel.declare_exchange(
            spec.name,
            spec.type,
            durable=spec.durable,
            auto_delete=spec.auto_delete,
        )
        logger.debug("Declared exchange %s (%s)", spec.name, spec.type.value)

    queues: dict[str, AbstractQueue] = {}
    for qspec in topology.queues:
        queues[qspec.name] = await channel.declare_queue(
            qspec.name,
            durable=qspec.durable,
            arguments=qspec.arguments or None,
        )
        logger.debug("Declared queue %s", qspec.name)

    for binding in topology.bindings:
        await queues[binding.queue].bind(
            exchanges[binding.exchange],
            routing_key=binding.pattern,
        )
        logger.debug(
            "Bound %s to %s with pattern %r",
            binding.queue,
            binding.exchange,
            binding.pattern,
        )

    logger.info(
        "Topology ready (%d exchanges, %d queues, %d bindings)",
        len(topology.exchanges),
        len(topology.queues),
        len(topology.bindings),
    )
