"""Tests for the InMemoryBroker fake."""

from __future__ import annotations

import asyncio

import pytest

from feedbus.exceptions import MessagingConnectionError, MessagingError
from feedbus.memory import InMemoryBroker
from feedbus.ports import DeliveryCallback, IBroker, IDelivery
from feedbus.retry import RETRY_COUNT_HEADER, read_retry_count
from feedbus.topology import Exchanges, Queues


async def publish(broker: InMemoryBroker, key: str, message_id: str = "m1") -> None:
    await broker.publish(Exchanges.TOPIC, key, b"{}", message_id=message_id)


def test_protocol_compliance() -> None:
    assert isinstance(InMemoryBroker(), IBroker)


@pytest.mark.asyncio
async def test_topic_routing(broker: InMemoryBroker) -> None:
    await publish(broker, "feed.carbon.intensity", "c1")
    await publish(broker, "feed.weather.current", "w1")
    await publish(broker, "unrelated.key", "x1")

    assert [m.message_id for m in broker.messages(Queues.CARBON)] == ["c1"]
    assert [m.message_id for m in broker.messages(Queues.WEATHER)] == ["w1"]
    assert [m.message_id for m in broker.messages(Queues.ALL)] == ["c1", "w1"]
    assert broker.depth(Queues.DLQ) == 0
    assert len(broker.published) == 3


@pytest.mark.asyncio
async def test_declare_topology_is_idempotent(broker: InMemoryBroker) -> None:
    await publish(broker, "feed.carbon.intensity")
    await broker.declare_topology()
    await publish(broker, "feed.carbon.intensity", "m2")
    assert broker.depth(Queues.CARBON) == 2


@pytest.mark.asyncio
async def test_unknown_queue_and_exchange(broker: InMemoryBroker) -> None:
    with pytest.raises(MessagingError):
        broker.messages("missing")
    with pytest.raises(MessagingError):
        await broker.publish("missing.exchange", "k", b"{}", message_id="m1")


@pytest.mark.asyncio
async def test_reject_dead_letters_with_x_death(broker: InMemoryBroker) -> None:
    await publish(broker, "feed.carbon.intensity")
    delivery = await broker.get(Queues.CARBON)
    assert isinstance(delivery, IDelivery)
    await delivery.reject()

    [dead] = broker.messages(Queues.DLQ)
    [death] = dead.headers["x-death"]
    assert death["reason"] == "rejected"
    assert death["queue"] == Queues.CARBON
    assert death["count"] == 1
    assert death["routing-keys"] == ["feed.carbon.intensity"]
    assert dead.message_id == "m1"
    assert dead.routing_key == "feed.carbon.intensity"


@pytest.mark.asyncio
async def test_requeue_appends_with_counter(broker: InMemoryBroker) -> None:
    await publish(broker, "feed.carbon.intensity", "first")
    await publish(broker, "feed.carbon.intensity", "second")
    delivery = await broker.get(Queues.CARBON)
    assert delivery is not None
    await delivery.requeue(1)

    ids = [m.message_id for m in broker.messages(Queues.CARBON)]
    assert ids == ["second", "first"]
    requeued = broker.messages(Queues.CARBON)[1]
    assert read_retry_count(requeued.headers) == 1
    assert requeued.headers[RETRY_COUNT_HEADER] == 1
    assert broker.depth(Queues.ALL) == 2


@pytest.mark.asyncio
async def test_release_returns_to_head(broker: InMemoryBroker) -> None:
    await publish(broker, "feed.carbon.intensity", "first")
    await publish(broker, "feed.carbon.intensity", "second")
    delivery = await broker.get(Queues.CARBON)
    assert delivery is not None
    await delivery.release()

    head = broker.messages(Queues.CARBON)[0]
    assert head.message_id == "first"
    assert head.redelivered is True


@pytest.mark.asyncio
async def test_settling_twice_raises(broker: InMemoryBroker) -> None:
    await publish(broker, "feed.carbon.intensity")
    delivery = await broker.get(Queues.CARBON)
    assert delivery is not None
    await delivery.ack()
    with pytest.raises(MessagingError, match="already settled"):
        await delivery.reject()


@pytest.mark.asyncio
async def test_prefetch_limits_unacked(broker: InMemoryBroker) -> None:
    received: list[IDelivery] = []

    async def hold(delivery: IDelivery) -> None:
        received.append(delivery)

    await broker.consume(Queues.CARBON, hold, prefetch=1)
    for n in range(3):
        await publish(broker, "feed.carbon.intensity", f"m{n}")
    await broker.join()
    assert len(received) == 1
    assert broker.depth(Queues.CARBON) == 2

    await received[0].ack()
    await broker.join()
    assert len(received) == 2


@pytest.mark.asyncio
async def test_round_robin_between_consumers(broker: InMemoryBroker) -> None:
    seen: dict[str, list[str]] = {"a": [], "b": []}

    def recorder(name: str) -> DeliveryCallback:
        async def on_delivery(delivery: IDelivery) -> None:
            seen[name].append(delivery.message_id or "")
            await asyncio.sleep(0)
            await delivery.ack()

        return on_delivery

    await broker.consume(Queues.CARBON, recorder("a"), prefetch=1)
    await broker.consume(Queues.CARBON, recorder("b"), prefetch=1)
    for n in range(10):
        await publish(broker, "feed.carbon.intensity", f"m{n}")
    await broker.join()

    assert len(seen["a"]) + len(seen["b"]) == 10
    assert abs(len(seen["a"]) - len(seen["b"])) <= 2
    assert broker.depth(Queues.CARBON) == 0


@pytest.mark.asyncio
async def test_cancel_stops_delivery(broker: InMemoryBroker) -> None:
    received: list[IDelivery] = []

    async def on_delivery(delivery: IDelivery) -> None:
        received.append(delivery)
        await delivery.ack()

    tag = await broker.consume(Queues.WEATHER, on_delivery, prefetch=1)
    await broker.cancel(tag)
    await broker.cancel(tag)
    await publish(broker, "feed.weather.current")
    await broker.join()
    assert received == []
    assert broker.depth(Queues.WEATHER) == 1


@pytest.mark.asyncio
async def test_disconnect_fails_publish_and_blocks_ready(broker: InMemoryBroker) -> None:
    broker.disconnect()
    assert await broker.health_check() is False
    with pytest.raises(MessagingConnectionError):
        await publish(broker, "feed.carbon.intensity")

    waiter = asyncio.create_task(broker.ensure_ready())
    await asyncio.sleep(0)
    assert not waiter.done()
    broker.reconnect()
    await asyncio.wait_for(waiter, timeout=1.0)
    assert await broker.health_check() is True
