"""IdempotencyFilter — deduplicate by message_id within a bounded recent-history window."""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable


class IdempotencyFilter:
    """Deduplicate messages by message_id to prevent double-execution on redelivery.

    Process-local and non-durable. An id is remembered for ``window_seconds``
    after it was marked processed, and at most ``max_entries`` ids are kept
    (oldest evicted first). Ids currently being processed are tracked
    separately, so two concurrent deliveries of the same id cannot both run.
    """

    def __init__(
        self,
        *,
        window_seconds: float = 3600.0,
        max_entries: int = 100_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._window = window_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()
        self._in_flight: set[str] = set()

    def __len__(self) -> int:
        return len(self._seen)

    def _evict(self) -> None:
        cutoff = self._clock() - self._window
        while self._seen:
            message_id, marked_at = next(iter(self._seen.items()))
            if marked_at > cutoff and len(self._seen) <= self._max_entries:
                break
            del self._seen[message_id]

    async def is_duplicate(self, message_id: str) -> bool:
        """Return True if this message_id was processed within the window."""
        self._evict()
        return message_id in self._seen

    async def claim(self, message_id: str) -> bool:
        """Reserve *message_id* for processing.

        Returns False when the id was already processed within the window or
        is being processed by another in-flight delivery.
        """
        if await self.is_duplicate(message_id) or message_id in self._in_flight:
            return False
        self._in_flight.add(message_id)
        return True

    async def release(self, message_id: str) -> None:
        """Drop a claim without marking the id processed (processing failed)."""
        self._in_flight.discard(message_id)

    async def mark_processed(self, message_id: str) -> None:
        """Record that this message_id has been processed."""
        self._in_flight.discard(message_id)
        self._seen.pop(message_id, None)
        self._seen[message_id] = self._clock()
        self._evict()

    def clear_memory(self) -> None:
        """Forget everything (for testing; equivalent to a process restart)."""
        self._seen.clear()
        self._in_flight.clear()
