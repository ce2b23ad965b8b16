"""ConsumptionEngine — subscribe, deduplicate, dispatch and settle each delivery."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..exceptions import MessagingSerializationError, ProcessingError
from ..idempotency import IdempotencyFilter
from ..ports import IBackgroundWorker
from ..retry import Disposition, RetryPolicy, read_retry_count
from ..serialization import EnvelopeSerializer

if TYPE_CHECKING:
    from ..ports import IBroker, IDelivery
    from .handlers import HandlerRegistry

logger = logging.getLogger("feedbus.consumption")


def default_consumer_policy() -> RetryPolicy:
    """Three requeues before a transiently failing message is dead-lettered."""
    return RetryPolicy(max_attempts=3)


@dataclass
class ConsumerStats:
    received: int = 0
    acked: int = 0
    duplicates: int = 0
    requeued: int = 0
    dead_lettered: int = 0
    malformed: int = 0


class ConsumptionEngine(IBackgroundWorker):
    """Consumes one queue and turns every delivery into exactly one settlement.

    For each delivery: parse the envelope (malformed -> reject to
    dead-letter); skip ids already processed within the idempotency window
    (ack, no side effects); dispatch by type; ack on success. A handler
    failure is requeued with an incremented ``x-retry-count`` while it is
    transient and under the policy ceiling, and dead-lettered otherwise.
    Any exception escaping a handler is contained here.
    """

    def __init__(
        self,
        broker: IBroker,
        queue: str,
        handlers: HandlerRegistry,
        *,
        prefetch: int = 1,
        retry_policy: RetryPolicy | None = None,
        idempotency: IdempotencyFilter | None = None,
        serializer: EnvelopeSerializer | None = None,
        consumer_id: str = "consumer",
        drain_timeout: float = 10.0,
    ) -> None:
        """Configure consumer.

        Args:
            broker: Broker port to consume from.
            queue: Queue name.
            handlers: Type -> handler registry.
            prefetch: Unacknowledged-message ceiling for this consumer.
            retry_policy: Requeue ceiling; default three requeues.
            idempotency: Dedup window; default one hour, process-local.
            serializer: Envelope decoder; default EnvelopeSerializer().
            consumer_id: Identity used in logs.
            drain_timeout: How long :meth:`stop` waits for in-flight messages.
        """
        self._broker = broker
        self.queue = queue
        self._handlers = handlers
        self.prefetch = prefetch
        self._retry_policy = retry_policy or default_consumer_policy()
        self._idempotency = idempotency or IdempotencyFilter()
        self._serializer = serializer or EnvelopeSerializer()
        self.consumer_id = consumer_id
        self._drain_timeout = drain_timeout

        self._consumer_tag: str | None = None
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self.stats = ConsumerStats()

    @property
    def is_consuming(self) -> bool:
        return self._consumer_tag is not None

    async def start(self) -> None:
        if self._consumer_tag is not None:
            return
        self._consumer_tag = await self._broker.consume(
            self.queue, self._on_delivery, prefetch=self.prefetch
        )
        logger.info(
            "[%s] Listening on %s (prefetch=%d)",
            self.consumer_id,
            self.queue,
            self.prefetch,
        )

    async def stop(self) -> None:
        """Cancel the subscription, then let in-flight deliveries settle."""
        tag, self._consumer_tag = self._consumer_tag, None
        if tag is not None:
            await self._broker.cancel(tag)
            logger.info("[%s] Consumer cancelled", self.consumer_id)
        if self._in_flight:
            logger.info(
                "[%s] Waiting for %d in-flight messages",
                self.consumer_id,
                self._in_flight,
            )
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._idle.wait(), timeout=self._drain_timeout)
        logger.info("[%s] Consumer stopped (%s)", self.consumer_id, self.stats)

    async def _on_delivery(self, delivery: IDelivery) -> None:
        self._in_flight += 1
        self._idle.clear()
        try:
            await self.process(delivery)
        except Exception:
            # Settling failed (e.g. channel lost); the broker redelivers.
            logger.exception(
                "[%s] Could not settle message %s", self.consumer_id, delivery.message_id
            )
        finally:
            self._in_flight -= 1
            if not self._in_flight:
                self._idle.set()

    async def process(self, delivery: IDelivery) -> Disposition:
        """Run the decision tree for one delivery and settle it."""
        self.stats.received += 1
        try:
            envelope = self._serializer.deserialize(delivery.body)
        except MessagingSerializationError as exc:
            logger.error(
                "[%s] Rejecting malformed message %s from %s: %s",
                self.consumer_id,
                delivery.message_id,
                delivery.queue,
                exc,
            )
            await delivery.reject()
            self.stats.malformed += 1
            self.stats.dead_lettered += 1
            return Disposition.DEAD_LETTER

        message_id = envelope.message_id
        if not await self._idempotency.claim(message_id):
            logger.info(
                "[%s] Duplicate %s (%s); acknowledging without processing",
                self.consumer_id,
                message_id,
                envelope.event_type,
            )
            await delivery.ack()
            self.stats.duplicates += 1
            return Disposition.DUPLICATE

        retry_count = read_retry_count(delivery.headers)
        logger.debug(
            "[%s] Processing %s | %s (retry %d)",
            self.consumer_id,
            envelope.event_type,
            message_id,
            retry_count,
        )
        try:
            await self._handlers.dispatch(envelope)
        except Exception as exc:  # noqa: BLE001
            await self._idempotency.release(message_id)
            return await self._settle_failure(delivery, message_id, retry_count, exc)

        await self._idempotency.mark_processed(message_id)
        await delivery.ack()
        self.stats.acked += 1
        return Disposition.ACK

    async def _settle_failure(
        self,
        delivery: IDelivery,
        message_id: str,
        retry_count: int,
        error: Exception,
    ) -> Disposition:
        disposition = self._retry_policy.decide(retry_count, error)
        if disposition is Disposition.REQUEUE:
            logger.warning(
                "[%s] Transient failure on %s (retry %d/%d): %s; requeueing",
                self.consumer_id,
                message_id,
                retry_count + 1,
                self._retry_policy.max_attempts,
                error,
            )
            await delivery.requeue(retry_count + 1)
            self.stats.requeued += 1
            return disposition

        if isinstance(error, ProcessingError):
            logger.error(
                "[%s] Dead-lettering %s after %d retries: %s",
                self.consumer_id,
                message_id,
                retry_count,
                error,
            )
        else:
            logger.error(
                "[%s] Unhandled error processing %s; dead-lettering",
                self.consumer_id,
                message_id,
                exc_info=error,
            )
        await delivery.reject()
        self.stats.dead_lettered += 1
        return Disposition.DEAD_LETTER
