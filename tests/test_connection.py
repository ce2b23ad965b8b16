"""Tests for ConnectionManager with a fake aio-pika connection factory."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from feedbus.exceptions import MessagingConnectionError
from feedbus.rabbitmq import ConnectionManager, ConnectionState
from feedbus.retry import RetryPolicy


class FakeCallbacks:
    def __init__(self) -> None:
        self._callbacks: list[Any] = []

    def add(self, callback: Any) -> None:
        self._callbacks.append(callback)

    def fire(self, sender: Any, exc: BaseException | None) -> None:
        for callback in list(self._callbacks):
            callback(sender, exc)


class FakeChannel:
    def __init__(self) -> None:
        self.is_closed = False
        self.close_callbacks = FakeCallbacks()

    async def close(self) -> None:
        self.is_closed = True

    def drop(self, exc: BaseException | None = None) -> None:
        self.is_closed = True
        self.close_callbacks.fire(self, exc)


class FakeConnection:
    def __init__(self, *, close_error: Exception | None = None) -> None:
        self.is_closed = False
        self.close_callbacks = FakeCallbacks()
        self.channels: list[FakeChannel] = []
        self._close_error = close_error

    async def channel(self, publisher_confirms: bool = True) -> FakeChannel:
        channel = FakeChannel()
        self.channels.append(channel)
        return channel

    async def close(self) -> None:
        self.is_closed = True
        if self._close_error is not None:
            raise self._close_error

    def drop(self, exc: BaseException | None = None) -> None:
        self.is_closed = True
        self.close_callbacks.fire(self, exc)


class FakeConnector:
    """Connection factory failing the first ``failures`` calls."""

    def __init__(self, failures: int = 0, **connection_kwargs: Any) -> None:
        self.failures = failures
        self.calls = 0
        self.connections: list[FakeConnection] = []
        self._connection_kwargs = connection_kwargs

    async def __call__(self, url: str, **kwargs: Any) -> FakeConnection:
        self.calls += 1
        await asyncio.sleep(0)
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("connection refused")
        connection = FakeConnection(**self._connection_kwargs)
        self.connections.append(connection)
        return connection


def make_manager(connector: FakeConnector, attempts: int = 3) -> ConnectionManager:
    return ConnectionManager(
        "amqp://test/",
        retry_policy=RetryPolicy(max_attempts=attempts, base_delay=0.0, max_delay=0.0),
        connect=connector,
    )


@pytest.mark.asyncio
async def test_connect_once_and_reuse() -> None:
    connector = FakeConnector()
    manager = make_manager(connector)
    first = await manager.acquire_connection()
    second = await manager.acquire_connection()
    assert first is second
    assert connector.calls == 1
    assert manager.state is ConnectionState.CONNECTED
    assert await manager.health_check() is True
    await manager.close()


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_attempt() -> None:
    connector = FakeConnector(failures=1)
    manager = make_manager(connector)
    results = await asyncio.gather(*(manager.acquire_connection() for _ in range(5)))
    assert all(result is results[0] for result in results)
    assert connector.calls == 2
    await manager.close()


@pytest.mark.asyncio
async def test_exhaustion_fails_every_waiter_then_resets() -> None:
    connector = FakeConnector(failures=10)
    manager = make_manager(connector, attempts=3)
    results = await asyncio.gather(
        manager.acquire_connection(),
        manager.acquire_connection(),
        return_exceptions=True,
    )
    assert all(isinstance(r, MessagingConnectionError) for r in results)
    assert connector.calls == 3
    assert manager.state is ConnectionState.DISCONNECTED

    connector.failures = 0
    await manager.acquire_connection()
    assert manager.is_connected
    await manager.close()


@pytest.mark.asyncio
async def test_channel_cached_per_role_and_recreated_after_close() -> None:
    connector = FakeConnector()
    manager = make_manager(connector)
    publish = await manager.acquire_channel("publish")
    assert await manager.acquire_channel("publish") is publish
    other = await manager.acquire_channel("consume")
    assert other is not publish

    publish.drop(RuntimeError("PRECONDITION_FAILED"))
    replacement = await manager.acquire_channel("publish")
    assert replacement is not publish
    assert connector.calls == 1
    assert manager.is_connected
    await manager.close()


@pytest.mark.asyncio
async def test_unsolicited_close_reconnects_in_background() -> None:
    connector = FakeConnector()
    manager = make_manager(connector)
    reconnected = asyncio.Event()

    async def on_reconnect() -> None:
        reconnected.set()

    manager.add_reconnect_listener(on_reconnect)
    await manager.acquire_channel()

    connector.connections[0].drop(ConnectionResetError("broker restarted"))
    assert manager.state is not ConnectionState.CONNECTED

    await asyncio.wait_for(reconnected.wait(), timeout=1.0)
    assert manager.is_connected
    assert manager.reconnects == 1
    assert connector.calls == 2
    channel = await manager.acquire_channel()
    assert channel in connector.connections[1].channels
    await manager.close()


@pytest.mark.asyncio
async def test_failed_recovery_notifies_failure_listeners() -> None:
    connector = FakeConnector()
    manager = make_manager(connector, attempts=2)
    failed: asyncio.Future[BaseException] = asyncio.get_running_loop().create_future()
    manager.add_failure_listener(failed.set_result)
    await manager.acquire_connection()

    connector.failures = 5
    connector.connections[0].drop()
    error = await asyncio.wait_for(failed, timeout=1.0)
    assert isinstance(error, MessagingConnectionError)
    assert not manager.is_connected
    await manager.close()


@pytest.mark.asyncio
async def test_no_wait_channel_raises_when_disconnected() -> None:
    manager = make_manager(FakeConnector())
    with pytest.raises(MessagingConnectionError):
        await manager.acquire_channel("publish", wait=False)
    assert manager.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_close_is_terminal_and_idempotent() -> None:
    connector = FakeConnector(close_error=RuntimeError("already closed"))
    manager = make_manager(connector)
    channel = await manager.acquire_channel()
    await manager.close()
    await manager.close()

    assert channel.is_closed
    assert connector.connections[0].is_closed
    assert manager.state is ConnectionState.CLOSED
    with pytest.raises(MessagingConnectionError):
        await manager.acquire_connection()


@pytest.mark.asyncio
async def test_close_cancels_in_flight_connect() -> None:
    connector = FakeConnector(failures=100)
    manager = ConnectionManager(
        "amqp://test/",
        retry_policy=RetryPolicy(max_attempts=100, base_delay=10.0, max_delay=10.0),
        connect=connector,
    )
    waiter = asyncio.create_task(manager.acquire_connection())
    await asyncio.sleep(0.01)
    await manager.close()
    with pytest.raises(MessagingConnectionError):
        await waiter
    assert connector.calls == 1


@pytest.mark.asyncio
async def test_context_manager() -> None:
    connector = FakeConnector()
    async with make_manager(connector) as manager:
        assert manager.is_connected
    assert manager.state is ConnectionState.CLOSED
