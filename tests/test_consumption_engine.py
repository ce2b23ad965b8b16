"""Tests for ConsumptionEngine delivery handling against the in-memory broker."""

from __future__ import annotations

import asyncio

import pytest
from conftest import make_generation, make_intensity

from feedbus.consumption import (
    CarbonAggregator,
    ConsumptionEngine,
    HandlerRegistry,
    LogSummaryHandler,
)
from feedbus.envelope import MessageEnvelope, MessageType
from feedbus.exceptions import TransientProcessingError
from feedbus.memory import InMemoryBroker
from feedbus.retry import RETRY_COUNT_HEADER, Disposition, RetryPolicy
from feedbus.serialization import EnvelopeSerializer
from feedbus.topology import Exchanges, Queues


async def send(
    broker: InMemoryBroker,
    serializer: EnvelopeSerializer,
    envelope: MessageEnvelope,
) -> None:
    await broker.publish(
        Exchanges.TOPIC,
        envelope.routing_key,
        serializer.serialize(envelope),
        message_id=envelope.message_id,
        app_id=envelope.source,
    )


class FlakyHandler:
    """Fails transiently the first ``failures`` calls."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0
        self.side_effects = 0

    async def __call__(self, envelope: MessageEnvelope) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientProcessingError("downstream unavailable")
        self.side_effects += 1


def intensity_registry(handler: FlakyHandler) -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register(MessageType.CARBON_INTENSITY, handler)
    return registry


@pytest.mark.asyncio
async def test_success_acks_once(
    broker: InMemoryBroker, serializer: EnvelopeSerializer
) -> None:
    handler = FlakyHandler(failures=0)
    engine = ConsumptionEngine(broker, Queues.CARBON, intensity_registry(handler))
    await engine.start()
    await send(broker, serializer, make_intensity())
    await broker.join()

    assert handler.side_effects == 1
    assert engine.stats.acked == 1
    assert broker.depth(Queues.CARBON) == 0
    assert broker.depth(Queues.DLQ) == 0
    await engine.stop()


@pytest.mark.asyncio
async def test_transient_failure_recovers_after_requeue(
    broker: InMemoryBroker, serializer: EnvelopeSerializer
) -> None:
    handler = FlakyHandler(failures=2)
    engine = ConsumptionEngine(broker, Queues.CARBON, intensity_registry(handler))
    await engine.start()
    await send(broker, serializer, make_intensity())
    await broker.join()

    assert handler.calls == 3
    assert handler.side_effects == 1
    assert engine.stats.requeued == 2
    assert engine.stats.acked == 1
    assert broker.depth(Queues.DLQ) == 0
    await engine.stop()


@pytest.mark.asyncio
async def test_retry_ceiling_then_dead_letter(
    broker: InMemoryBroker, serializer: EnvelopeSerializer
) -> None:
    handler = FlakyHandler(failures=100)
    engine = ConsumptionEngine(
        broker,
        Queues.CARBON,
        intensity_registry(handler),
        retry_policy=RetryPolicy(max_attempts=3),
    )
    await engine.start()
    envelope = make_intensity()
    await send(broker, serializer, envelope)
    await broker.join()

    assert handler.calls == 4
    assert engine.stats.requeued == 3
    assert engine.stats.dead_lettered == 1
    [dead] = broker.messages(Queues.DLQ)
    assert dead.message_id == envelope.message_id
    assert dead.headers[RETRY_COUNT_HEADER] == 3
    assert dead.headers["x-death"][0]["reason"] == "rejected"
    assert dead.headers["x-death"][0]["queue"] == Queues.CARBON
    await engine.stop()


@pytest.mark.asyncio
async def test_duplicate_delivery_has_single_side_effect(
    broker: InMemoryBroker, serializer: EnvelopeSerializer
) -> None:
    handler = FlakyHandler(failures=0)
    engine = ConsumptionEngine(broker, Queues.CARBON, intensity_registry(handler))
    await engine.start()
    envelope = make_intensity()
    await send(broker, serializer, envelope)
    await send(broker, serializer, envelope)
    await broker.join()

    assert handler.side_effects == 1
    assert engine.stats.duplicates == 1
    assert engine.stats.acked == 1
    assert broker.depth(Queues.CARBON) == 0
    await engine.stop()


@pytest.mark.asyncio
async def test_malformed_message_goes_to_dead_letter(broker: InMemoryBroker) -> None:
    handler = FlakyHandler(failures=0)
    engine = ConsumptionEngine(broker, Queues.CARBON, intensity_registry(handler))
    await engine.start()
    await broker.publish(
        Exchanges.TOPIC, "feed.carbon.intensity", b"not json", message_id="bad-1"
    )
    await broker.join()

    assert handler.calls == 0
    assert engine.stats.malformed == 1
    [dead] = broker.messages(Queues.DLQ)
    assert dead.message_id == "bad-1"
    assert dead.headers["x-death"][0]["reason"] == "rejected"
    await engine.stop()


@pytest.mark.asyncio
async def test_unknown_type_without_fallback_dead_letters(
    broker: InMemoryBroker, serializer: EnvelopeSerializer
) -> None:
    engine = ConsumptionEngine(
        broker, Queues.ALL, intensity_registry(FlakyHandler(failures=0))
    )
    await engine.start()
    envelope = MessageEnvelope.model_validate(
        {"source": "test", "type": "feed.carbon.forecast", "data": {"x": 1}}
    )
    await send(broker, serializer, envelope)
    await broker.join()

    assert engine.stats.requeued == 0
    assert [m.message_id for m in broker.messages(Queues.DLQ)] == [
        envelope.message_id
    ]
    await engine.stop()


@pytest.mark.asyncio
async def test_logger_role_accepts_unknown_types(
    broker: InMemoryBroker, serializer: EnvelopeSerializer
) -> None:
    handler = LogSummaryHandler()
    engine = ConsumptionEngine(
        broker, Queues.ALL, handler.register(HandlerRegistry()), prefetch=10
    )
    await engine.start()
    envelope = MessageEnvelope.model_validate(
        {"source": "test", "type": "feed.carbon.forecast", "data": {"x": 1}}
    )
    await send(broker, serializer, envelope)
    await send(broker, serializer, make_intensity())
    await broker.join()

    assert engine.stats.acked == 2
    assert handler.seen["feed.carbon.forecast"] == 1
    assert broker.depth(Queues.DLQ) == 0
    await engine.stop()


@pytest.mark.asyncio
async def test_invalid_generation_mix_dead_lettered_without_retry(
    broker: InMemoryBroker, serializer: EnvelopeSerializer
) -> None:
    aggregator = CarbonAggregator()
    engine = ConsumptionEngine(
        broker, Queues.CARBON, aggregator.register(HandlerRegistry())
    )
    await engine.start()
    await send(broker, serializer, make_generation(10, 10))
    await send(broker, serializer, make_generation(40, 30, 20, 10))
    await broker.join()

    assert engine.stats.requeued == 0
    assert engine.stats.dead_lettered == 1
    assert aggregator.latest_mix is not None
    assert broker.depth(Queues.DLQ) == 1
    await engine.stop()


@pytest.mark.asyncio
async def test_competing_consumers_share_the_queue(
    broker: InMemoryBroker, serializer: EnvelopeSerializer
) -> None:
    def slow_registry(counter: list[int]) -> HandlerRegistry:
        async def handle(envelope: MessageEnvelope) -> None:
            counter.append(1)
            await asyncio.sleep(0.001)

        registry = HandlerRegistry()
        registry.register(MessageType.CARBON_INTENSITY, handle)
        return registry

    first: list[int] = []
    second: list[int] = []
    engines = [
        ConsumptionEngine(broker, Queues.CARBON, slow_registry(first)),
        ConsumptionEngine(broker, Queues.CARBON, slow_registry(second)),
    ]
    for engine in engines:
        await engine.start()
    for n in range(10):
        await send(broker, serializer, make_intensity(forecast=n))
    await broker.join()

    assert len(first) + len(second) == 10
    assert 3 <= len(first) <= 7
    for engine in engines:
        await engine.stop()


@pytest.mark.asyncio
async def test_stop_drains_in_flight(
    broker: InMemoryBroker, serializer: EnvelopeSerializer
) -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    async def blocking(envelope: MessageEnvelope) -> None:
        started.set()
        await release.wait()

    registry = HandlerRegistry()
    registry.register(MessageType.CARBON_INTENSITY, blocking)
    engine = ConsumptionEngine(broker, Queues.CARBON, registry)
    await engine.start()
    await send(broker, serializer, make_intensity())
    await send(broker, serializer, make_intensity())
    await asyncio.wait_for(started.wait(), timeout=1.0)

    stopping = asyncio.create_task(engine.stop())
    await asyncio.sleep(0.01)
    assert not stopping.done()
    assert not engine.is_consuming
    release.set()
    await asyncio.wait_for(stopping, timeout=1.0)

    assert engine.stats.acked == 1
    assert broker.depth(Queues.CARBON) == 1


@pytest.mark.asyncio
async def test_process_returns_disposition(
    broker: InMemoryBroker, serializer: EnvelopeSerializer
) -> None:
    engine = ConsumptionEngine(
        broker, Queues.CARBON, intensity_registry(FlakyHandler(failures=1))
    )
    await send(broker, serializer, make_intensity())
    delivery = await broker.get(Queues.CARBON)
    assert delivery is not None
    assert await engine.process(delivery) is Disposition.REQUEUE

    redelivery = await broker.get(Queues.CARBON)
    assert redelivery is not None
    assert await engine.process(redelivery) is Disposition.ACK
