"""IngestionEngine — one independent polling cycle per feed source."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..exceptions import (
    SourceAuthenticationError,
    SourceFetchError,
    SourceRateLimitedError,
)
from ..ports import IBackgroundWorker

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .publisher import BufferedPublisher
    from .sources import FeedSource

logger = logging.getLogger("feedbus.ingestion")


class CyclePhase(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PUBLISHING = "publishing"
    BACKOFF = "backoff"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass
class SourceState:
    """Per-source cycle state and counters."""

    name: str
    phase: CyclePhase = CyclePhase.IDLE
    failures: int = 0
    fetches: int = 0
    published: int = 0
    rate_limited: int = 0
    last_error: str | None = None
    next_delay: float = 0.0


class IngestionEngine(IBackgroundWorker):
    """Polls every source on its own schedule and hands envelopes to the publisher.

    Per source, a cycle is ``fetching -> publishing -> idle`` on success and
    then waits ``poll_interval``. A generic fetch failure increments the
    failure counter and retries the same fetch after the source's backoff
    delay; the fixed schedule resumes only after a success. A rate-limit
    response waits the source's cooldown without touching the counter.
    An authentication failure stops that source and is re-raised from
    :meth:`wait`, since it needs an operator.

    Sources never block each other: each runs in its own task, and all waits
    end as soon as :meth:`stop` is called.
    """

    def __init__(
        self,
        sources: Sequence[FeedSource[Any]],
        publisher: BufferedPublisher,
    ) -> None:
        if not sources:
            raise ValueError("at least one source is required")
        names = [source.name for source in sources]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate source names: {names}")
        self._sources = list(sources)
        self._publisher = publisher
        self._states = {source.name: SourceState(source.name) for source in sources}
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()
        self._finished = asyncio.Event()
        self._fatal: BaseException | None = None

    @property
    def states(self) -> dict[str, SourceState]:
        return dict(self._states)

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        self._finished.clear()
        for source in self._sources:
            task = asyncio.create_task(
                self._run_source(source), name=f"ingest:{source.name}"
            )
            self._tasks.append(task)
        logger.info(
            "IngestionEngine started (%s)",
            ", ".join(f"{s.name} every {s.poll_interval:g}s" for s in self._sources),
        )

    async def stop(self) -> None:
        self._stopping.set()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._finished.set()
        logger.info("IngestionEngine stopped")

    async def wait(self) -> None:
        """Block until the engine stops; raise the fatal error if one stopped it."""
        await self._finished.wait()
        if self._fatal is not None:
            raise self._fatal

    async def run_once(self, source: FeedSource[Any]) -> float:
        """Run one fetch/publish step for *source*; return the delay before the next.

        Raises SourceAuthenticationError, which ends the source's cycle.
        """
        state = self._states[source.name]
        state.phase = CyclePhase.FETCHING
        state.fetches += 1
        try:
            envelope = await source.fetch_envelope()
        except SourceAuthenticationError as exc:
            state.phase = CyclePhase.FAILED
            state.last_error = str(exc)
            raise
        except SourceRateLimitedError as exc:
            state.phase = CyclePhase.RATE_LIMITED
            state.rate_limited += 1
            state.last_error = str(exc)
            state.next_delay = source.rate_limit_cooldown
            logger.warning(
                "[%s] Rate limited, waiting %.1fs", source.name, state.next_delay
            )
            return state.next_delay
        except SourceFetchError as exc:
            return self._back_off(source, state, str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("[%s] Unexpected fetch error", source.name)
            return self._back_off(source, state, repr(exc))

        state.phase = CyclePhase.PUBLISHING
        sent = await self._publisher.publish(envelope)
        state.published += 1
        state.failures = 0
        state.last_error = None
        state.phase = CyclePhase.IDLE
        state.next_delay = source.poll_interval
        logger.info(
            "[%s] %s (%s %s)",
            source.name,
            source.describe(envelope.data),
            "published" if sent else "buffered",
            envelope.message_id,
        )
        return state.next_delay

    def _back_off(
        self, source: FeedSource[Any], state: SourceState, error: str
    ) -> float:
        state.failures += 1
        state.phase = CyclePhase.BACKOFF
        state.last_error = error
        state.next_delay = source.backoff.delay_after_failures(state.failures)
        logger.error(
            "[%s] Fetch failed (attempt %d): %s; retrying in %.1fs",
            source.name,
            state.failures,
            error,
            state.next_delay,
        )
        return state.next_delay

    async def _run_source(self, source: FeedSource[Any]) -> None:
        while not self._stopping.is_set():
            try:
                delay = await self.run_once(source)
            except SourceAuthenticationError as exc:
                logger.error(
                    "[%s] Authentication failed: %s. Check the API key; "
                    "this source will not be retried.",
                    source.name,
                    exc,
                )
                self._fatal = exc
                self._finished.set()
                return
            except Exception as exc:  # noqa: BLE001
                logger.exception("[%s] Cycle error", source.name)
                delay = self._back_off(source, self._states[source.name], repr(exc))
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
