"""Feed sources — HTTP fetch, response classification and mapping to payloads."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from ..envelope import (
    CarbonGenerationData,
    CarbonIntensityData,
    Coordinates,
    FuelType,
    GenerationMixEntry,
    IntensityIndex,
    MessageEnvelope,
    MessageSource,
    MessageType,
    Temperature,
    WeatherCondition,
    WeatherCurrentData,
    WeatherLocation,
    Wind,
)
from ..exceptions import (
    ConfigurationError,
    SourceAuthenticationError,
    SourceFetchError,
    SourceRateLimitedError,
)
from ..retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger("feedbus.sources")

CARBON_API_BASE_URL = "https://api.carbonintensity.org.uk"
OPENWEATHER_API_BASE_URL = "https://api.openweathermap.org/data/2.5"

AUTH_FAILURE_STATUSES = frozenset({401, 403})
RATE_LIMIT_STATUS = 429

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class FeedSource(ABC, Generic[PayloadT]):
    """One polled HTTP JSON endpoint mapped to one envelope type.

    :meth:`fetch` classifies every outcome into a payload or one of
    ``SourceRateLimitedError``, ``SourceAuthenticationError`` or a plain
    ``SourceFetchError``. The ingestion engine decides what to do with each.
    """

    #: Stable name used in logs and state (e.g. ``carbon-intensity``).
    name: str
    #: Producer id placed in the envelope ``source`` and AMQP ``app_id``.
    source_id: str
    #: Envelope type, also the routing key.
    event_type: str

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        poll_interval: float,
        backoff: RetryPolicy,
        rate_limit_cooldown: float = 60.0,
    ) -> None:
        """Configure the source.

        Args:
            client: Shared HTTP client (timeouts are configured on it).
            poll_interval: Seconds between successful fetches.
            backoff: Delay ladder for consecutive generic failures; only
                ``delay_after_failures`` is used, fetch retries are unbounded.
            rate_limit_cooldown: Fixed wait after the source reports 429.
        """
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        self._client = client
        self.poll_interval = poll_interval
        self.backoff = backoff
        self.rate_limit_cooldown = rate_limit_cooldown

    def __repr__(self) -> str:
        return f"{type(self).__name__}(poll_interval={self.poll_interval})"

    @abstractmethod
    def request(self) -> tuple[str, Mapping[str, str]]:
        """Return the URL and query parameters to GET."""

    @abstractmethod
    def parse(self, body: Any) -> PayloadT:
        """Map a decoded JSON body to the payload model."""

    def describe(self, payload: PayloadT) -> str:
        """One-line human summary of a published payload."""
        return self.event_type

    async def fetch(self) -> PayloadT:
        """GET the endpoint and return the parsed payload."""
        url, params = self.request()
        logger.debug("[%s] GET %s", self.name, url)
        try:
            response = await self._client.get(url, params=params)
        except httpx.TimeoutException as exc:
            raise SourceFetchError(self.name, f"request timed out: {exc!r}") from exc
        except httpx.HTTPError as exc:
            raise SourceFetchError(self.name, f"request failed: {exc!r}") from exc

        status = response.status_code
        if status == RATE_LIMIT_STATUS:
            raise SourceRateLimitedError(self.name, "rate limit exceeded (429)")
        if status in AUTH_FAILURE_STATUSES:
            raise SourceAuthenticationError(
                self.name, f"credentials rejected ({status})"
            )
        if not response.is_success:
            raise SourceFetchError(
                self.name, f"HTTP {status}: {response.reason_phrase}"
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise SourceFetchError(self.name, f"invalid JSON: {exc}") from exc
        try:
            return self.parse(body)
        except (KeyError, IndexError, TypeError, ValueError, ValidationError) as exc:
            raise SourceFetchError(
                self.name, f"unexpected response shape: {exc}"
            ) from exc

    async def fetch_envelope(self) -> MessageEnvelope:
        """Fetch and wrap the payload in a fresh envelope."""
        payload = await self.fetch()
        return MessageEnvelope.create(self.source_id, self.event_type, payload)


# ── Carbon ───────────────────────────────────────────────────────────


def carbon_backoff() -> RetryPolicy:
    return RetryPolicy(base_delay=5.0, max_delay=300.0)


class CarbonIntensitySource(FeedSource[CarbonIntensityData]):
    """Current half-hour national carbon intensity."""

    name = "carbon-intensity"
    source_id = MessageSource.CARBON_INGESTER
    event_type = MessageType.CARBON_INTENSITY

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        base_url: str = CARBON_API_BASE_URL,
        poll_interval: float = 120.0,
        backoff: RetryPolicy | None = None,
    ) -> None:
        super().__init__(
            client, poll_interval=poll_interval, backoff=backoff or carbon_backoff()
        )
        self._base_url = base_url.rstrip("/")

    def request(self) -> tuple[str, Mapping[str, str]]:
        return f"{self._base_url}/intensity", {}

    def parse(self, body: Any) -> CarbonIntensityData:
        entry = body["data"][0]
        intensity = entry["intensity"]
        return CarbonIntensityData(
            period_start=entry["from"],
            period_end=entry["to"],
            forecast=intensity["forecast"],
            actual=intensity.get("actual"),
            index=IntensityIndex(intensity["index"]),
        )

    def describe(self, payload: CarbonIntensityData) -> str:
        actual = "pending" if payload.actual is None else f"{payload.actual:g}"
        return (
            f"Intensity: {payload.forecast:g} gCO2/kWh ({payload.index.value}), "
            f"actual: {actual}"
        )


class CarbonGenerationSource(FeedSource[CarbonGenerationData]):
    """National generation mix; the snapshot is stamped with the fetch time."""

    name = "carbon-generation"
    source_id = MessageSource.CARBON_INGESTER
    event_type = MessageType.CARBON_GENERATION

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        base_url: str = CARBON_API_BASE_URL,
        poll_interval: float = 300.0,
        backoff: RetryPolicy | None = None,
    ) -> None:
        super().__init__(
            client, poll_interval=poll_interval, backoff=backoff or carbon_backoff()
        )
        self._base_url = base_url.rstrip("/")

    def request(self) -> tuple[str, Mapping[str, str]]:
        return f"{self._base_url}/generation", {}

    def parse(self, body: Any) -> CarbonGenerationData:
        mix = body["data"]["generationmix"]
        return CarbonGenerationData(
            timestamp=datetime.now(timezone.utc),
            mix=tuple(
                GenerationMixEntry(
                    fuel=self._fuel(item["fuel"]), percentage=item["perc"]
                )
                for item in mix
            ),
        )

    def _fuel(self, value: str) -> FuelType:
        try:
            return FuelType(value)
        except ValueError:
            logger.warning("[%s] Unknown fuel %r counted as other", self.name, value)
            return FuelType.OTHER

    def describe(self, payload: CarbonGenerationData) -> str:
        top = ", ".join(
            f"{entry.fuel.value}: {entry.percentage:.1f}%" for entry in payload.top(3)
        )
        return f"Generation mix - Top 3: {top}"


# ── Weather ──────────────────────────────────────────────────────────


class WeatherCurrentSource(FeedSource[WeatherCurrentData]):
    """Current conditions for one city from OpenWeatherMap (metric units)."""

    name = "weather-current"
    source_id = MessageSource.WEATHER_INGESTER
    event_type = MessageType.WEATHER_CURRENT

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_key: str | None,
        city: str = "London,UK",
        base_url: str = OPENWEATHER_API_BASE_URL,
        poll_interval: float = 600.0,
        backoff: RetryPolicy | None = None,
        rate_limit_cooldown: float = 60.0,
    ) -> None:
        if not api_key:
            raise ConfigurationError("OPENWEATHER_API_KEY is required")
        super().__init__(
            client,
            poll_interval=poll_interval,
            backoff=backoff or RetryPolicy(base_delay=10.0, max_delay=600.0),
            rate_limit_cooldown=rate_limit_cooldown,
        )
        self._api_key = api_key
        self.city = city
        self._base_url = base_url.rstrip("/")

    def request(self) -> tuple[str, Mapping[str, str]]:
        params = {"q": self.city, "appid": self._api_key, "units": "metric"}
        return f"{self._base_url}/weather", params

    def parse(self, body: Any) -> WeatherCurrentData:
        main = body["main"]
        condition = body["weather"][0]
        return WeatherCurrentData(
            location=WeatherLocation(
                city=body["name"],
                country=body["sys"]["country"],
                coordinates=Coordinates(lat=body["coord"]["lat"], lon=body["coord"]["lon"]),
            ),
            observed_at=datetime.fromtimestamp(body["dt"], tz=timezone.utc),
            temperature=Temperature(current=main["temp"], feels_like=main["feels_like"]),
            humidity=main["humidity"],
            pressure=main["pressure"],
            wind=Wind(speed=body["wind"]["speed"], direction=body["wind"].get("deg", 0)),
            condition=WeatherCondition(
                main=condition["main"], description=condition["description"]
            ),
        )

    def describe(self, payload: WeatherCurrentData) -> str:
        return (
            f"{payload.location.city}: {payload.temperature.current:g}°C, "
            f"{payload.condition.description}"
        )
