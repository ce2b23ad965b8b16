"""RetryPolicy — exponential backoff, attempt ceilings and the ack/requeue/DLQ decision."""

from __future__ import annotations

import enum
import random
from collections.abc import Mapping
from typing import Any

from .exceptions import PermanentProcessingError, TransientProcessingError

RETRY_COUNT_HEADER = "x-retry-count"


class Disposition(str, enum.Enum):
    """What happens to a delivered message once processing has finished."""

    ACK = "ack"
    DUPLICATE = "duplicate"
    REQUEUE = "requeue"
    DEAD_LETTER = "dead_letter"


class RetryPolicy:
    """Configurable retry with exponential backoff and optional jitter.

    The same policy type drives three ladders with different constants:
    broker reconnects, per-source fetch failures and consumer redeliveries.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: bool = False,
    ) -> None:
        """Configure retry behavior.

        Args:
            max_attempts: Attempt ceiling. For connects this is the number of
                connect attempts; for consumers it is the number of requeues
                allowed before a message is dead-lettered.
            base_delay: Base of the exponential ladder in seconds.
            max_delay: Cap on delay in seconds.
            jitter: If True, spread delays by a random factor in [0.5, 1.5].
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("base_delay and max_delay must be >= 0")
        if base_delay > max_delay:
            raise ValueError("base_delay must be <= max_delay")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, "
            f"base_delay={self.base_delay}, max_delay={self.max_delay}, "
            f"jitter={self.jitter})"
        )

    def should_retry(self, attempt: int) -> bool:
        """Return True if another attempt is allowed (attempt is 1-based)."""
        return 1 <= attempt < self.max_attempts

    def delay_for_attempt(self, attempt: int) -> float:
        """Return delay in seconds after the given 1-based failed attempt.

        ``min(base_delay * 2^(attempt-1), max_delay)``, so the first failure
        waits ``base_delay``. Used for the connect ladder.
        """
        if attempt < 1:
            return 0.0
        return self._capped(attempt - 1)

    def delay_after_failures(self, failures: int) -> float:
        """Return the fetch backoff after *failures* consecutive failures.

        ``min(base_delay * 2^failures, max_delay)``; the counter is already
        incremented, so the first failure waits ``2 * base_delay``.
        """
        if failures < 1:
            return 0.0
        return self._capped(failures)

    def _capped(self, exponent: int) -> float:
        # Clamp the exponent so huge failure streaks cannot overflow a float.
        delay = min(self.base_delay * (2 ** min(exponent, 62)), self.max_delay)
        if self.jitter:
            delay = min(delay * (0.5 + random.random()), self.max_delay)  # noqa: S311
        return float(max(0.0, delay))

    def decide(self, retry_count: int, error: BaseException) -> Disposition:
        """Map a handler failure plus the redelivery counter to a disposition.

        Transient errors are requeued while ``retry_count < max_attempts``;
        permanent errors, unclassified exceptions and exhausted messages go
        to dead-letter.
        """
        if isinstance(error, PermanentProcessingError):
            return Disposition.DEAD_LETTER
        if isinstance(error, TransientProcessingError):
            if retry_count < self.max_attempts:
                return Disposition.REQUEUE
            return Disposition.DEAD_LETTER
        return Disposition.DEAD_LETTER


def read_retry_count(headers: Mapping[str, Any] | None) -> int:
    """Return the redelivery counter carried in *headers* (0 when absent/garbled)."""
    if not headers:
        return 0
    raw = headers.get(RETRY_COUNT_HEADER)
    if isinstance(raw, bytes):
        raw = raw.decode("ascii", "replace")
    try:
        count = int(raw) if raw is not None else 0
    except (TypeError, ValueError):
        return 0
    return max(count, 0)


def with_retry_count(headers: Mapping[str, Any] | None, count: int) -> dict[str, Any]:
    """Copy *headers* with the redelivery counter set to *count*."""
    updated = dict(headers or {})
    updated[RETRY_COUNT_HEADER] = count
    return updated
