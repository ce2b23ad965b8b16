"""MessageEnvelope — uniform immutable wrapper for feed messages, plus payloads."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Final, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class MessageSource:
    """Known producer identifiers (the envelope ``source`` / AMQP ``app_id``)."""

    CARBON_INGESTER: Final = "carbon-ingester"
    WEATHER_INGESTER: Final = "weather-ingester"


class MessageType:
    """Known envelope types; each one is also the routing key it is published with."""

    CARBON_INTENSITY: Final = "feed.carbon.intensity"
    CARBON_GENERATION: Final = "feed.carbon.generation"
    WEATHER_CURRENT: Final = "feed.weather.current"
    WEATHER_FORECAST: Final = "feed.weather.forecast"


class IntensityIndex(str, Enum):
    """Carbon intensity severity, declared from least to most severe."""

    VERY_LOW = "very low"
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    VERY_HIGH = "very high"

    @property
    def severity(self) -> int:
        """0 for ``very low`` up to 4 for ``very high``."""
        return list(IntensityIndex).index(self)


class FuelType(str, Enum):
    GAS = "gas"
    COAL = "coal"
    NUCLEAR = "nuclear"
    WIND = "wind"
    SOLAR = "solar"
    HYDRO = "hydro"
    IMPORTS = "imports"
    BIOMASS = "biomass"
    OTHER = "other"


class _Payload(BaseModel):
    """Payload base: frozen, camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ── Carbon ───────────────────────────────────────────────────────────


class CarbonIntensityData(_Payload):
    """Payload of ``feed.carbon.intensity`` (gCO2/kWh)."""

    period_start: str
    period_end: str
    forecast: float = Field(..., ge=0)
    actual: float | None = Field(default=None, ge=0)
    index: IntensityIndex


class GenerationMixEntry(_Payload):
    fuel: FuelType
    percentage: float = Field(..., ge=0, le=100)


class CarbonGenerationData(_Payload):
    """Payload of ``feed.carbon.generation``.

    Percentages are as reported by the source and need not sum to exactly 100.
    """

    timestamp: datetime
    mix: tuple[GenerationMixEntry, ...]

    @property
    def total_percentage(self) -> float:
        return sum(entry.percentage for entry in self.mix)

    def top(self, n: int | None = None) -> list[GenerationMixEntry]:
        """Entries sorted by descending share, optionally truncated to *n*."""
        ranked = sorted(self.mix, key=lambda entry: entry.percentage, reverse=True)
        return ranked if n is None else ranked[:n]


# ── Weather ──────────────────────────────────────────────────────────


class Coordinates(_Payload):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class WeatherLocation(_Payload):
    city: str
    country: str
    coordinates: Coordinates


class Temperature(_Payload):
    """Celsius."""

    current: float
    feels_like: float


class Wind(_Payload):
    speed: float = Field(..., ge=0)
    direction: float = Field(..., ge=0, le=360)


class WeatherCondition(_Payload):
    main: str
    description: str


class WeatherCurrentData(_Payload):
    """Payload of ``feed.weather.current``."""

    location: WeatherLocation
    observed_at: datetime
    temperature: Temperature
    humidity: float = Field(..., ge=0, le=100)
    pressure: float
    wind: Wind
    condition: WeatherCondition


class UnknownPayload(BaseModel):
    """Payload of a type this build does not know; fields are kept verbatim."""

    model_config = ConfigDict(frozen=True, extra="allow")

    @property
    def fields(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


FeedPayload = Union[
    CarbonIntensityData,
    CarbonGenerationData,
    WeatherCurrentData,
    UnknownPayload,
]

PAYLOAD_TYPES: dict[str, type[BaseModel]] = {
    MessageType.CARBON_INTENSITY: CarbonIntensityData,
    MessageType.CARBON_GENERATION: CarbonGenerationData,
    MessageType.WEATHER_CURRENT: WeatherCurrentData,
}


def payload_model_for(event_type: str) -> type[BaseModel]:
    """Return the payload model for *event_type* (``UnknownPayload`` if unknown)."""
    return PAYLOAD_TYPES.get(event_type, UnknownPayload)


class MessageEnvelope(BaseModel):
    """Immutable wrapper for messages over the wire.

    ``message_id`` identifies one logical event and is never regenerated on
    redelivery. ``event_type`` doubles as the routing key. On the wire the
    fields are named ``id``, ``source``, ``type``, ``timestamp`` and ``data``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()), alias="id")
    source: str = Field(..., min_length=1)
    event_type: str = Field(..., alias="type", min_length=1)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: FeedPayload

    @model_validator(mode="before")
    @classmethod
    def _hydrate_payload(cls, values: Any) -> Any:
        """Pick the payload model from the type tag before field validation."""
        if not isinstance(values, dict):
            return values
        event_type = values.get("type", values.get("event_type"))
        data = values.get("data")
        if not isinstance(event_type, str) or isinstance(data, BaseModel):
            return values
        model = payload_model_for(event_type)
        return {**values, "data": model.model_validate(data)}

    @model_validator(mode="after")
    def _check_payload_matches_type(self) -> MessageEnvelope:
        expected = payload_model_for(self.event_type)
        if type(self.data) is not expected:
            raise ValueError(
                f"payload {type(self.data).__name__} does not match type "
                f"{self.event_type!r} (expected {expected.__name__})"
            )
        return self

    @classmethod
    def create(cls, source: str, event_type: str, data: Any) -> MessageEnvelope:
        """Build a fresh envelope with a new id and the current UTC timestamp."""
        return cls(source=source, event_type=event_type, data=data)

    @property
    def routing_key(self) -> str:
        return self.event_type

    @property
    def is_known_type(self) -> bool:
        return not isinstance(self.data, UnknownPayload)
