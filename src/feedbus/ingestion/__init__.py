"""Ingestion: feed sources, buffered publishing and the polling engine."""

from .engine import CyclePhase, IngestionEngine, SourceState
from .publisher import BufferedPublisher
from .sources import (
    CarbonGenerationSource,
    CarbonIntensitySource,
    FeedSource,
    WeatherCurrentSource,
)

__all__ = [
    "BufferedPublisher",
    "CarbonGenerationSource",
    "CarbonIntensitySource",
    "CyclePhase",
    "FeedSource",
    "IngestionEngine",
    "SourceState",
    "WeatherCurrentSource",
]
