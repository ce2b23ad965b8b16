"""BufferedPublisher — publish envelopes, holding them locally while the broker is down."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from typing import TYPE_CHECKING

from ..exceptions import MessagingConnectionError
from ..ports import IBackgroundWorker
from ..serialization import EnvelopeSerializer
from ..topology import Exchanges

if TYPE_CHECKING:
    from ..envelope import MessageEnvelope
    from ..ports import IBroker

logger = logging.getLogger("feedbus.publisher")


class BufferedPublisher(IBackgroundWorker):
    """Publisher with a bounded local buffer and a background flush loop.

    Roles:
    1. **Publisher**: :meth:`publish` sends straight to the topic exchange
       when nothing is pending or in flight. If the broker is unavailable,
       does not accept the envelope within ``publish_timeout``, or another
       send is under way, the envelope is appended to the buffer instead;
       nothing is raised for connectivity problems.
    2. **Worker**: a background loop waits for the broker to become ready
       (``IBroker.ensure_ready``) and flushes the buffer in original order.

    When the buffer is full the oldest envelope is discarded and counted in
    :attr:`dropped`.

    Usage::

        publisher = BufferedPublisher(broker, capacity=1000)
        await publisher.start()
        await publisher.publish(envelope)
    """

    def __init__(
        self,
        broker: IBroker,
        *,
        serializer: EnvelopeSerializer | None = None,
        exchange: str = Exchanges.TOPIC,
        capacity: int = 1000,
        retry_interval: float = 1.0,
        publish_timeout: float = 10.0,
    ) -> None:
        """Configure publisher.

        Args:
            broker: Broker port to publish through.
            serializer: Envelope encoder; default EnvelopeSerializer().
            exchange: Exchange every envelope is published to.
            capacity: Maximum number of buffered envelopes.
            retry_interval: Pause after a failed flush before trying again.
            publish_timeout: Seconds to wait for the broker to accept one
                envelope; a send that takes longer counts as an outage.
        """
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if publish_timeout <= 0:
            raise ValueError("publish_timeout must be > 0")
        self._broker = broker
        self._serializer = serializer or EnvelopeSerializer()
        self._exchange = exchange
        self.capacity = capacity
        self.retry_interval = retry_interval
        self.publish_timeout = publish_timeout

        self._buffer: deque[MessageEnvelope] = deque()
        self._slot = asyncio.Lock()
        self._pending = asyncio.Event()
        self._running = False
        self._task: asyncio.Task[None] | None = None

        self.published = 0
        self.dropped = 0

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    # ── Publisher API ────────────────────────────────────────────────

    async def publish(self, envelope: MessageEnvelope) -> bool:
        """Publish *envelope* now, or buffer it.

        Only one send is in flight at a time. A publish that arrives while
        another send is in flight, or while envelopes are pending, is
        buffered without waiting. Returns True if it reached the broker,
        False if it was buffered.
        """
        if self._buffer or self._slot.locked():
            self._append(envelope)
            self._pending.set()
            return False
        async with self._slot:
            try:
                await self._send(envelope)
            except MessagingConnectionError as exc:
                logger.warning(
                    "Broker unavailable, buffering %s: %s", envelope.message_id, exc
                )
                # Anything buffered meanwhile is newer than this envelope.
                self._append(envelope, front=True)
                self._pending.set()
                return False
        return True

    async def flush(self) -> bool:
        """Send buffered envelopes in order; True once the buffer is empty."""
        async with self._slot:
            while self._buffer:
                envelope = self._buffer[0]
                try:
                    await self._send(envelope)
                except MessagingConnectionError as exc:
                    logger.warning(
                        "Flush interrupted with %d envelopes pending: %s",
                        len(self._buffer),
                        exc,
                    )
                    return False
                self._buffer.popleft()
            self._pending.clear()
            return True

    def _append(self, envelope: MessageEnvelope, *, front: bool = False) -> None:
        if front:
            self._buffer.appendleft(envelope)
        else:
            self._buffer.append(envelope)
        while len(self._buffer) > self.capacity:
            oldest = self._buffer.popleft()
            self.dropped += 1
            logger.error(
                "Publish buffer full (%d); dropped oldest envelope %s (%s), "
                "%d dropped so far",
                self.capacity,
                oldest.message_id,
                oldest.event_type,
                self.dropped,
            )

    async def _send(self, envelope: MessageEnvelope) -> None:
        try:
            await asyncio.wait_for(
                self._broker.publish(
                    self._exchange,
                    envelope.routing_key,
                    self._serializer.serialize(envelope),
                    message_id=envelope.message_id,
                    app_id=envelope.source,
                ),
                timeout=self.publish_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise MessagingConnectionError(
                f"publish not confirmed within {self.publish_timeout:g}s"
            ) from exc
        self.published += 1
        logger.debug("Published %s to %s", envelope.message_id, envelope.routing_key)

    # ── Worker Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("BufferedPublisher started (capacity=%d)", self.capacity)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._buffer:
            logger.warning(
                "BufferedPublisher stopped with %d unsent envelopes", len(self._buffer)
            )
        else:
            logger.info("BufferedPublisher stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await self._pending.wait()
            try:
                await self._broker.ensure_ready()
                if await self.flush():
                    logger.info("Publish buffer flushed")
                    continue
            except MessagingConnectionError as exc:
                logger.warning("Broker still unavailable: %s", exc)
            except Exception:
                logger.exception("BufferedPublisher flush error")
            await asyncio.sleep(self.retry_interval)
