"""Dead-letter inspection and replay for the ``feeds.dlq`` queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from .exceptions import DeadLetterError, MessagingSerializationError
from .retry import with_retry_count
from .serialization import EnvelopeSerializer
from .topology import Exchanges, Queues

if TYPE_CHECKING:
    from collections.abc import Collection, Mapping

    from .envelope import MessageEnvelope
    from .ports import IBroker, IDelivery

logger = logging.getLogger("feedbus.dlq")

DEATH_HEADER = "x-death"
PREVIEW_BYTES = 120


@dataclass(frozen=True)
class DeadLetterRecord:
    """One dead-lettered message, described from its body and ``x-death`` header."""

    message_id: str | None
    event_type: str | None
    routing_key: str
    queue: str | None
    reason: str | None
    died_at: datetime | None
    count: int
    body_preview: str
    error: str | None = None

    @property
    def parseable(self) -> bool:
        return self.error is None

    @classmethod
    def from_delivery(
        cls,
        delivery: IDelivery,
        envelope: MessageEnvelope | None,
        error: str | None = None,
    ) -> DeadLetterRecord:
        death = _latest_death(delivery.headers)
        routing_keys = death.get("routing-keys") or [delivery.routing_key]
        return cls(
            message_id=envelope.message_id if envelope else delivery.message_id,
            event_type=envelope.event_type if envelope else None,
            routing_key=str(_text(routing_keys[0])),
            queue=_text(death.get("queue")),
            reason=_text(death.get("reason")),
            died_at=_as_datetime(death.get("time")),
            count=int(death.get("count") or 0),
            body_preview=delivery.body[:PREVIEW_BYTES].decode("utf-8", "replace"),
            error=error,
        )


@dataclass
class ReplayResult:
    replayed: list[str] = field(default_factory=list)
    skipped: int = 0
    unparseable: int = 0


class DeadLetterInspector:
    """List and replay messages parked in the dead-letter queue.

    Inspection takes messages with ``get`` and returns every one of them
    untouched, so listing never changes queue contents. Replay republishes
    the original envelope to the topic exchange using its ``type`` as the
    routing key and a fresh retry counter, then acks it out of the DLQ.
    Records that cannot be parsed are never replayed.
    """

    def __init__(
        self,
        broker: IBroker,
        *,
        serializer: EnvelopeSerializer | None = None,
        queue: str = Queues.DLQ,
        exchange: str = Exchanges.TOPIC,
    ) -> None:
        self._broker = broker
        self._serializer = serializer or EnvelopeSerializer()
        self._queue = queue
        self._exchange = exchange

    async def peek(self, limit: int = 20) -> list[DeadLetterRecord]:
        """Describe up to *limit* dead-lettered messages without removing them."""
        held: list[IDelivery] = []
        records: list[DeadLetterRecord] = []
        try:
            while len(held) < limit:
                delivery = await self._broker.get(self._queue)
                if delivery is None:
                    break
                held.append(delivery)
                records.append(self._describe(delivery))
        finally:
            await self._release_all(held)
        return records

    async def replay(
        self,
        limit: int | None = None,
        message_ids: Collection[str] | None = None,
    ) -> ReplayResult:
        """Republish dead-lettered envelopes back onto the topic exchange.

        Args:
            limit: Stop after this many replays (None = drain the queue).
            message_ids: Only replay these envelope ids; everything else
                stays in the dead-letter queue.
        """
        wanted = set(message_ids) if message_ids else None
        result = ReplayResult()
        held: list[IDelivery] = []
        try:
            while limit is None or len(result.replayed) < limit:
                delivery = await self._broker.get(self._queue)
                if delivery is None:
                    break
                try:
                    envelope = self._serializer.deserialize(delivery.body)
                except MessagingSerializationError as exc:
                    logger.warning(
                        "Leaving unparseable message %s in %s: %s",
                        delivery.message_id,
                        self._queue,
                        exc,
                    )
                    result.unparseable += 1
                    held.append(delivery)
                    continue
                if wanted is not None and envelope.message_id not in wanted:
                    result.skipped += 1
                    held.append(delivery)
                    continue

                await self._republish(envelope, delivery)
                result.replayed.append(envelope.message_id)
                logger.info(
                    "Replayed %s (%s) to %s",
                    envelope.message_id,
                    envelope.event_type,
                    self._exchange,
                )
        finally:
            await self._release_all(held)

        logger.info(
            "Replay finished: %d replayed, %d skipped, %d unparseable",
            len(result.replayed),
            result.skipped,
            result.unparseable,
        )
        return result

    async def _republish(self, envelope: MessageEnvelope, delivery: IDelivery) -> None:
        try:
            await self._broker.publish(
                self._exchange,
                envelope.routing_key,
                delivery.body,
                message_id=envelope.message_id,
                app_id=envelope.source,
                headers=with_retry_count(None, 0),
            )
        except Exception as exc:
            await delivery.release()
            raise DeadLetterError(
                f"Could not replay {envelope.message_id}: {exc}", envelope.message_id
            ) from exc
        await delivery.ack()

    def _describe(self, delivery: IDelivery) -> DeadLetterRecord:
        try:
            envelope = self._serializer.deserialize(delivery.body)
        except MessagingSerializationError as exc:
            return DeadLetterRecord.from_delivery(delivery, None, str(exc))
        return DeadLetterRecord.from_delivery(delivery, envelope)

    @staticmethod
    async def _release_all(held: list[IDelivery]) -> None:
        # Reverse order so head-inserting brokers keep the original sequence.
        for delivery in reversed(held):
            await delivery.release()
        held.clear()


def _latest_death(headers: Mapping[str, Any]) -> dict[str, Any]:
    deaths = headers.get(DEATH_HEADER)
    if isinstance(deaths, (list, tuple)) and deaths and isinstance(deaths[0], dict):
        return dict(deaths[0])
    return {}


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return str(value)


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None
