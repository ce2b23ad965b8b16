"""Pytest fixtures for feedbus tests."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any

import pytest
import pytest_asyncio

from feedbus.envelope import (
    CarbonGenerationData,
    CarbonIntensityData,
    MessageEnvelope,
    MessageSource,
    MessageType,
)
from feedbus.memory import InMemoryBroker
from feedbus.serialization import EnvelopeSerializer

INTENSITY_RESPONSE: dict[str, Any] = {
    "data": [
        {
            "from": "2024-01-15T12:00Z",
            "to": "2024-01-15T12:30Z",
            "intensity": {"forecast": 195, "actual": 192, "index": "moderate"},
        }
    ]
}

GENERATION_RESPONSE: dict[str, Any] = {
    "data": {
        "from": "2024-01-15T12:00Z",
        "to": "2024-01-15T12:30Z",
        "generationmix": [
            {"fuel": "biomass", "perc": 5.1},
            {"fuel": "coal", "perc": 0.0},
            {"fuel": "imports", "perc": 12.4},
            {"fuel": "gas", "perc": 30.2},
            {"fuel": "nuclear", "perc": 14.3},
            {"fuel": "other", "perc": 0.1},
            {"fuel": "hydro", "perc": 1.6},
            {"fuel": "solar", "perc": 3.0},
            {"fuel": "wind", "perc": 33.3},
        ],
    }
}

WEATHER_RESPONSE: dict[str, Any] = {
    "coord": {"lon": -0.1257, "lat": 51.5085},
    "weather": [{"id": 803, "main": "Clouds", "description": "broken clouds"}],
    "main": {
        "temp": 11.4,
        "feels_like": 10.6,
        "temp_min": 9.9,
        "temp_max": 12.6,
        "pressure": 1012,
        "humidity": 81,
    },
    "wind": {"speed": 4.6, "deg": 240},
    "dt": 1705320000,
    "sys": {"country": "GB"},
    "name": "London",
}


def make_intensity(forecast: float = 195, **overrides: Any) -> MessageEnvelope:
    data = CarbonIntensityData(
        period_start="2024-01-15T12:00Z",
        period_end="2024-01-15T12:30Z",
        forecast=forecast,
        actual=overrides.pop("actual", 192),
        index=overrides.pop("index", "moderate"),
    )
    return MessageEnvelope.create(
        MessageSource.CARBON_INGESTER, MessageType.CARBON_INTENSITY, data
    )


def make_generation(*percentages: float) -> MessageEnvelope:
    fuels = ("gas", "wind", "nuclear", "imports", "solar", "other")
    data = CarbonGenerationData(
        timestamp=datetime(2024, 1, 15, 12, tzinfo=timezone.utc),
        mix=tuple(
            {"fuel": fuel, "percentage": p} for fuel, p in zip(fuels, percentages)
        ),
    )
    return MessageEnvelope.create(
        MessageSource.CARBON_INGESTER, MessageType.CARBON_GENERATION, data
    )


@pytest.fixture
def serializer() -> EnvelopeSerializer:
    return EnvelopeSerializer()


@pytest_asyncio.fixture
async def broker() -> AsyncIterator[InMemoryBroker]:
    """An InMemoryBroker with the feed topology declared."""
    memory = InMemoryBroker()
    await memory.declare_topology()
    yield memory
    await memory.join()
