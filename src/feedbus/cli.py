"""feedbus command line — run ingesters and consumers, manage topology and the DLQ.

Usage::

    feedbus topology
    feedbus ingest carbon|weather
    feedbus consume aggregator|logger
    feedbus dlq list [--limit N]
    feedbus dlq replay [--limit N] [--message-id ID ...]

Exit status is 0 after a signal-initiated shutdown and 1 when the broker
cannot be reached, a source rejects its credentials, or configuration is
invalid.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError

from .consumption import (
    CarbonAggregator,
    ConsumptionEngine,
    HandlerRegistry,
    LogSummaryHandler,
)
from .dead_letter import DeadLetterInspector
from .exceptions import (
    ConfigurationError,
    DeadLetterError,
    MessagingConnectionError,
    SourceAuthenticationError,
)
from .idempotency import IdempotencyFilter
from .ingestion import (
    BufferedPublisher,
    CarbonGenerationSource,
    CarbonIntensitySource,
    IngestionEngine,
    WeatherCurrentSource,
)
from .rabbitmq import ConnectionManager, RabbitMQBroker
from .retry import RetryPolicy
from .settings import FeedbusSettings
from .topology import Queues

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from .dead_letter import DeadLetterRecord
    from .ingestion import FeedSource
    from .ports import IBroker

logger = logging.getLogger("feedbus.cli")

EXIT_OK = 0
EXIT_FAILURE = 1

#: Consumer role -> (queue, prefetch).
CONSUMER_ROLES: dict[str, tuple[str, int]] = {
    "aggregator": (Queues.CARBON, 1),
    "logger": (Queues.ALL, 10),
}

FEEDS = ("carbon", "weather")

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feedbus",
        description="Feed ingesters and consumers over RabbitMQ.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("topology", help="Declare exchanges, queues and bindings")

    ingest = sub.add_parser("ingest", help="Run a polling ingester")
    ingest.add_argument("feed", choices=FEEDS)

    consume = sub.add_parser("consume", help="Run a consumer role")
    consume.add_argument("role", choices=sorted(CONSUMER_ROLES))

    dlq = sub.add_parser("dlq", help="Inspect or replay dead-lettered messages")
    dlq_sub = dlq.add_subparsers(dest="dlq_command", required=True)
    dlq_list = dlq_sub.add_parser("list", help="Show messages without removing them")
    dlq_list.add_argument("--limit", type=int, default=20)
    replay = dlq_sub.add_parser("replay", help="Republish messages to the topic exchange")
    replay.add_argument("--limit", type=int, default=None)
    replay.add_argument(
        "--message-id",
        dest="message_ids",
        action="append",
        default=None,
        help="Only replay this envelope id (repeatable)",
    )
    return parser


# ── Builders ─────────────────────────────────────────────────────────


def build_sources(
    settings: FeedbusSettings,
    feed: str,
    client: httpx.AsyncClient,
) -> list[FeedSource[Any]]:
    """Sources for one ingester process; raises ConfigurationError when unusable."""
    if feed == "carbon":
        return [
            CarbonIntensitySource(
                client,
                base_url=settings.CARBON_API_BASE_URL,
                poll_interval=settings.carbon_intensity_poll_interval,
            ),
            CarbonGenerationSource(
                client,
                base_url=settings.CARBON_API_BASE_URL,
                poll_interval=settings.carbon_generation_poll_interval,
            ),
        ]
    if feed == "weather":
        return [
            WeatherCurrentSource(
                client,
                api_key=settings.OPENWEATHER_API_KEY,
                city=settings.WEATHER_CITY,
                base_url=settings.OPENWEATHER_API_BASE_URL,
                poll_interval=settings.weather_poll_interval,
            )
        ]
    raise ConfigurationError(f"Unknown feed {feed!r}")


def build_consumer(
    settings: FeedbusSettings,
    role: str,
    broker: IBroker,
) -> ConsumptionEngine:
    try:
        queue, prefetch = CONSUMER_ROLES[role]
    except KeyError:
        raise ConfigurationError(f"Unknown consumer role {role!r}") from None
    consumer_id = settings.consumer_id(role)
    registry = HandlerRegistry()
    if role == "aggregator":
        CarbonAggregator(consumer_id=consumer_id).register(registry)
    else:
        LogSummaryHandler(consumer_id=consumer_id).register(registry)
    return ConsumptionEngine(
        broker,
        queue,
        registry,
        prefetch=prefetch,
        retry_policy=RetryPolicy(max_attempts=settings.CONSUMER_MAX_ATTEMPTS),
        idempotency=IdempotencyFilter(
            window_seconds=settings.DEDUP_WINDOW_SECONDS,
            max_entries=settings.DEDUP_MAX_ENTRIES,
        ),
        consumer_id=consumer_id,
    )


def connect(settings: FeedbusSettings) -> ConnectionManager:
    return ConnectionManager(
        settings.RABBITMQ_URL, retry_policy=settings.connection_retry_policy()
    )


# ── Supervision ──────────────────────────────────────────────────────


def install_signal_handlers(callback: Callable[[], None]) -> None:
    """Call *callback* on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, callback)
    except NotImplementedError:

        def _handler(signum: int, frame: Any) -> None:  # noqa: ARG001
            loop.call_soon_threadsafe(callback)

        signal.signal(signal.SIGTERM, _handler)
        signal.signal(signal.SIGINT, _handler)


async def supervise(
    stop: asyncio.Event,
    failure: asyncio.Future[BaseException],
    *watch: Awaitable[Any],
) -> int:
    """Wait for a shutdown signal, a broker failure, or a watched task ending.

    Returns the process exit status.
    """
    stop_task = asyncio.ensure_future(stop.wait())
    watched = [asyncio.ensure_future(w) for w in watch]
    done, pending = await asyncio.wait(
        [stop_task, failure, *watched], return_when=asyncio.FIRST_COMPLETED
    )
    for task in pending:
        task.cancel()

    if failure in done and not failure.cancelled():
        logger.critical("Broker connection lost for good: %s", failure.result())
        return EXIT_FAILURE
    for task in watched:
        if task in done and not task.cancelled() and task.exception() is not None:
            logger.critical("Stopping: %s", task.exception())
            return EXIT_FAILURE
    logger.info("Shutdown requested")
    return EXIT_OK


def _failure_future(connection: ConnectionManager) -> asyncio.Future[BaseException]:
    failure: asyncio.Future[BaseException] = asyncio.get_running_loop().create_future()

    def on_failure(exc: BaseException) -> None:
        if not failure.done():
            failure.set_result(exc)

    connection.add_failure_listener(on_failure)
    return failure


# ── Commands ─────────────────────────────────────────────────────────


async def run_topology(settings: FeedbusSettings) -> int:
    async with connect(settings) as connection:
        await RabbitMQBroker(connection).declare_topology()
    print("Topology declared")
    return EXIT_OK


async def run_ingest(settings: FeedbusSettings, feed: str) -> int:
    stop = asyncio.Event()
    async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT) as client:
        sources = build_sources(settings, feed, client)
        connection = connect(settings)
        failure = _failure_future(connection)
        broker = RabbitMQBroker(connection)
        publisher = BufferedPublisher(
            broker,
            capacity=settings.PUBLISH_BUFFER_SIZE,
            publish_timeout=settings.PUBLISH_TIMEOUT,
        )
        engine = IngestionEngine(sources, publisher)
        try:
            await broker.declare_topology()
            install_signal_handlers(stop.set)
            await publisher.start()
            await engine.start()
            return await supervise(stop, failure, engine.wait())
        finally:
            await engine.stop()
            await publisher.stop()
            await connection.close()


async def run_consume(settings: FeedbusSettings, role: str) -> int:
    stop = asyncio.Event()
    connection = connect(settings)
    failure = _failure_future(connection)
    broker = RabbitMQBroker(connection)
    engine = build_consumer(settings, role, broker)
    try:
        await broker.declare_topology()
        install_signal_handlers(stop.set)
        await engine.start()
        return await supervise(stop, failure)
    finally:
        # Cancel the subscription before the connection goes away.
        if connection.is_connected:
            await engine.stop()
        await connection.close()


def format_record(record: DeadLetterRecord) -> str:
    died = record.died_at.isoformat() if record.died_at else "-"
    kind = record.event_type or f"<unparseable: {record.error}>"
    return (
        f"{record.message_id or '-'}  {kind}  queue={record.queue or '-'}  "
        f"reason={record.reason or '-'}  count={record.count}  at={died}"
    )


async def run_dlq(settings: FeedbusSettings, args: argparse.Namespace) -> int:
    async with connect(settings) as connection:
        broker = RabbitMQBroker(connection)
        await broker.declare_topology()
        inspector = DeadLetterInspector(broker)
        if args.dlq_command == "list":
            records = await inspector.peek(limit=args.limit)
            for record in records:
                print(format_record(record))
            print(f"{len(records)} message(s) shown")
            return EXIT_OK
        result = await inspector.replay(limit=args.limit, message_ids=args.message_ids)
        print(
            f"Replayed {len(result.replayed)}, skipped {result.skipped}, "
            f"left {result.unparseable} unparseable"
        )
        return EXIT_OK


async def dispatch(settings: FeedbusSettings, args: argparse.Namespace) -> int:
    try:
        if args.command == "topology":
            return await run_topology(settings)
        if args.command == "ingest":
            return await run_ingest(settings, args.feed)
        if args.command == "consume":
            return await run_consume(settings, args.role)
        return await run_dlq(settings, args)
    except (ConfigurationError, SourceAuthenticationError) as exc:
        logger.critical("%s", exc)
    except MessagingConnectionError as exc:
        logger.critical("Cannot reach the broker: %s", exc)
    except DeadLetterError as exc:
        logger.critical("Dead-letter operation failed: %s", exc)
    return EXIT_FAILURE


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = FeedbusSettings()
    except ValidationError as exc:
        logging.basicConfig(level=logging.ERROR, format=LOG_FORMAT)
        logger.critical("Invalid configuration: %s", exc)
        return EXIT_FAILURE
    logging.basicConfig(level=settings.FEEDBUS_LOG_LEVEL, format=LOG_FORMAT)
    return asyncio.run(dispatch(settings, args))


if __name__ == "__main__":
    sys.exit(main())
