"""Envelope handlers — dispatch by type, plus the aggregator and logger roles."""

from __future__ import annotations

import logging
from collections import Counter, deque
from typing import TYPE_CHECKING

from ..envelope import (
    CarbonGenerationData,
    CarbonIntensityData,
    MessageType,
    WeatherCurrentData,
)
from ..exceptions import PermanentProcessingError, UnhandledMessageTypeError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..envelope import MessageEnvelope

    EnvelopeHandler = Callable[[MessageEnvelope], Awaitable[None]]

logger = logging.getLogger("feedbus.handlers")


class HandlerRegistry:
    """Maps envelope types to async handlers, with an optional fallback.

    Without a fallback, an unregistered type raises
    ``UnhandledMessageTypeError`` (a permanent failure).
    """

    def __init__(self, *, fallback: EnvelopeHandler | None = None) -> None:
        self._handlers: dict[str, EnvelopeHandler] = {}
        self._fallback = fallback

    @property
    def event_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    def register(self, event_type: str, handler: EnvelopeHandler) -> None:
        if event_type in self._handlers:
            raise ValueError(f"handler already registered for {event_type!r}")
        self._handlers[event_type] = handler

    def set_fallback(self, handler: EnvelopeHandler | None) -> None:
        self._fallback = handler

    def resolve(self, event_type: str) -> EnvelopeHandler:
        handler = self._handlers.get(event_type, self._fallback)
        if handler is None:
            raise UnhandledMessageTypeError(event_type)
        return handler

    async def dispatch(self, envelope: MessageEnvelope) -> None:
        await self.resolve(envelope.event_type)(envelope)


def summarize(envelope: MessageEnvelope) -> str:
    """One-line description of an envelope's payload."""
    data = envelope.data
    if isinstance(data, CarbonIntensityData):
        actual = "pending" if data.actual is None else f"{data.actual:g}"
        return (
            f"Intensity: {data.forecast:g} gCO2/kWh ({data.index.value}), "
            f"actual: {actual}"
        )
    if isinstance(data, CarbonGenerationData):
        top = ", ".join(
            f"{entry.fuel.value}: {entry.percentage:.1f}%" for entry in data.top(3)
        )
        return f"Generation: {top}"
    if isinstance(data, WeatherCurrentData):
        return (
            f"{data.location.city}: {data.temperature.current:g}°C, "
            f"{data.condition.description}"
        )
    return f"Unknown message type: {envelope.event_type}"


class CarbonAggregator:
    """Aggregator role over ``feeds.carbon``.

    Keeps the latest intensity reading with a rolling average of recent
    forecasts, and the latest generation mix. A mix whose percentages sum
    outside ``100 +/- tolerance`` violates a business rule and is rejected
    permanently.
    """

    def __init__(
        self,
        *,
        consumer_id: str = "aggregator",
        window: int = 48,
        tolerance: float = 5.0,
    ) -> None:
        self.consumer_id = consumer_id
        self.tolerance = tolerance
        self.latest_intensity: CarbonIntensityData | None = None
        self.latest_mix: CarbonGenerationData | None = None
        self._forecasts: deque[float] = deque(maxlen=window)
        self.processed = 0

    @property
    def average_forecast(self) -> float | None:
        if not self._forecasts:
            return None
        return sum(self._forecasts) / len(self._forecasts)

    def register(self, registry: HandlerRegistry) -> HandlerRegistry:
        registry.register(MessageType.CARBON_INTENSITY, self.on_intensity)
        registry.register(MessageType.CARBON_GENERATION, self.on_generation)
        return registry

    async def on_intensity(self, envelope: MessageEnvelope) -> None:
        data = envelope.data
        if not isinstance(data, CarbonIntensityData):
            raise PermanentProcessingError(
                f"{envelope.message_id} does not carry a carbon intensity payload"
            )
        self.latest_intensity = data
        self._forecasts.append(data.forecast)
        self.processed += 1
        logger.info(
            "[%s] Forecast: %g gCO2/kWh | Actual: %s | Index: %s | Period: %s -> %s "
            "| Avg forecast: %.1f",
            self.consumer_id,
            data.forecast,
            "pending" if data.actual is None else f"{data.actual:g}",
            data.index.value,
            data.period_start,
            data.period_end,
            self.average_forecast or 0.0,
        )

    async def on_generation(self, envelope: MessageEnvelope) -> None:
        data = envelope.data
        if not isinstance(data, CarbonGenerationData):
            raise PermanentProcessingError(
                f"{envelope.message_id} does not carry a generation mix payload"
            )
        total = data.total_percentage
        if abs(total - 100.0) > self.tolerance:
            raise PermanentProcessingError(
                f"Generation mix in {envelope.message_id} sums to {total:.1f}%"
            )
        self.latest_mix = data
        self.processed += 1
        logger.info(
            "[%s] %s",
            self.consumer_id,
            " | ".join(f"{e.fuel.value}: {e.percentage:.1f}%" for e in data.top()),
        )


class LogSummaryHandler:
    """Logger role over ``feeds.all``: one summary line per message, any type."""

    def __init__(self, *, consumer_id: str = "logger") -> None:
        self.consumer_id = consumer_id
        self.seen: Counter[str] = Counter()

    def register(self, registry: HandlerRegistry) -> HandlerRegistry:
        for event_type in (
            MessageType.CARBON_INTENSITY,
            MessageType.CARBON_GENERATION,
            MessageType.WEATHER_CURRENT,
        ):
            registry.register(event_type, self)
        registry.set_fallback(self)
        return registry

    async def __call__(self, envelope: MessageEnvelope) -> None:
        self.seen[envelope.event_type] += 1
        logger.info(
            "[%s] %s | %s | %s",
            self.consumer_id,
            envelope.event_type,
            envelope.message_id,
            summarize(envelope),
        )
