"""Client for an AccuWeather-compatible current-conditions API.

Two endpoints feed the monitors:

- ``/currentconditions/v1/{key}``: the latest observation, whose
  ``PrecipitationSummary.PastHour`` becomes the current hour's bucket.
- ``/currentconditions/v1/{key}/historical/24``: one observation per hour for
  the past 24 hours; used to pre-populate new monitors and for backfill.

Docs: https://developer.accuweather.com/accuweather-current-conditions-api/apis
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

import h3
import httpx

from rainwatch.core.config import settings
from rainwatch.core.errors import UpstreamError
from rainwatch.core.timeutil import parse_observation_time

logger = logging.getLogger(__name__)

MICRODEGREES = 1_000_000

class LocationKeyCache:
    """H3 cell to provider location key, least recently used evicted first.

    Contracts in the same cell share a key, so the geoposition lookup runs
    once per neighbourhood rather than per contract.  Cleared together with
    the rest of the stored state when the ledger is reset.
    """

    def __init__(self, max_entries: int):
        self.max_entries = max_entries
        self._keys: OrderedDict[str, str] = OrderedDict()

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, cell: str) -> bool:
        return cell in self._keys

    def get(self, cell: str) -> str | None:
        key = self._keys.get(cell)
        if key is not None:
            self._keys.move_to_end(cell)
        return key

    def put(self, cell: str, key: str) -> None:
        self._keys[cell] = key
        self._keys.move_to_end(cell)
        while len(self._keys) > self.max_entries:
            self._keys.popitem(last=False)

    def clear(self) -> None:
        self._keys.clear()


location_keys = LocationKeyCache(settings.location_key_cache_max)


class WeatherProviderError(UpstreamError):
    """The weather provider was unreachable, rate-limited, or returned garbage."""

    code = "WEATHER_PROVIDER_ERROR"


@dataclass
class PrecipitationRecord:
    """Rainfall observed during the hour ending at ``observed_at``."""

    observed_at: int
    precipitation_mm: float
    raw_data: dict[str, Any] = field(default_factory=dict)

    @property
    def tenths_mm(self) -> int:
        return int(round(self.precipitation_mm * 10))


def _metric_value(summary: dict[str, Any] | None, key: str) -> float:
    """Read ``summary[key].Metric.Value``, treating anything missing as 0mm."""
    try:
        value = (summary or {})[key]["Metric"]["Value"]
    except (KeyError, TypeError):
        return 0.0
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


def _observation_time(obs: dict[str, Any]) -> int:
    epoch = obs.get("EpochTime")
    if isinstance(epoch, (int, float)):
        return int(epoch)
    try:
        return parse_observation_time(obs["LocalObservationDateTime"])
    except (KeyError, TypeError, ValueError) as exc:
        raise WeatherProviderError(f"Observation without a usable timestamp: {exc}") from exc


def _raw_subset(obs: dict[str, Any], location_key: str, source: str) -> dict[str, Any]:
    keep = (
        "LocalObservationDateTime",
        "EpochTime",
        "WeatherText",
        "HasPrecipitation",
        "PrecipitationType",
        "PrecipitationSummary",
    )
    raw = {k: obs.get(k) for k in keep if k in obs}
    raw["_extracted"] = {"location_key": location_key, "source": source}
    return raw


def _require_api_key() -> None:
    if not settings.weather_api_key:
        raise WeatherProviderError("Weather API key not configured")


async def _get_json(
    path: str,
    params: dict[str, Any] | None = None,
    client: httpx.AsyncClient | None = None,
) -> Any:
    _require_api_key()
    url = f"{settings.weather_base_url.rstrip('/')}{path}"
    query = {"apikey": settings.weather_api_key, **(params or {})}
    try:
        if client is not None:
            resp = await client.get(url, params=query)
        else:
            async with httpx.AsyncClient(timeout=settings.weather_timeout_seconds) as owned:
                resp = await owned.get(url, params=query)
        resp.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise WeatherProviderError(
            f"Weather API error: {exc.response.status_code} - {exc.response.text[:200]}"
        ) from exc
    except httpx.HTTPError as exc:
        raise WeatherProviderError(f"Weather API unreachable: {exc}") from exc

    try:
        return resp.json()
    except ValueError as exc:
        raise WeatherProviderError("Weather API returned a non-JSON body") from exc


async def fetch_precipitation(
    location_key: str,
    start: int,
    end: int,
    client: httpx.AsyncClient | None = None,
) -> list[PrecipitationRecord]:
    """Fetch the latest past-hour rainfall, kept only if it falls in ``[start, end]``."""
    data = await _get_json(
        f"/currentconditions/v1/{location_key}", {"details": "true"}, client
    )
    records: list[PrecipitationRecord] = []
    if not isinstance(data, list) or not data:
        logger.warning("Unexpected current-conditions payload for %s", location_key)
        return records

    current = data[0]
    if "PrecipitationSummary" not in current:
        logger.info("No precipitation summary for %s", location_key)
        return records

    observed_at = _observation_time(current)
    if start <= observed_at <= end:
        records.append(
            PrecipitationRecord(
                observed_at=observed_at,
                precipitation_mm=_metric_value(current["PrecipitationSummary"], "PastHour"),
                raw_data=_raw_subset(current, location_key, "current"),
            )
        )
    else:
        logger.debug(
            "Observation at %d for %s outside window [%d, %d]",
            observed_at, location_key, start, end,
        )

    logger.info("Fetched %d precipitation record(s) for location %s", len(records), location_key)
    return records


async def fetch_historical_24h(
    location_key: str, client: httpx.AsyncClient | None = None
) -> list[PrecipitationRecord]:
    """Fetch one past-hour rainfall record per hour for the previous 24 hours."""
    data = await _get_json(
        f"/currentconditions/v1/{location_key}/historical/24", {"details": "true"}, client
    )
    if not isinstance(data, list):
        raise WeatherProviderError(f"Unexpected historical payload type: {type(data).__name__}")

    records = [
        PrecipitationRecord(
            observed_at=_observation_time(obs),
            precipitation_mm=_metric_value(obs.get("PrecipitationSummary"), "PastHour"),
            raw_data=_raw_subset(obs, location_key, "historical/24"),
        )
        for obs in data
    ]
    total = sum(r.precipitation_mm for r in records)
    logger.info(
        "Fetched %d historical hours for %s (%.1fmm total)", len(records), location_key, total
    )
    return records


async def resolve_location_key(
    lat: int, lon: int, client: httpx.AsyncClient | None = None
) -> str:
    """Resolve a provider location key from microdegree coordinates."""
    data = await _get_json(
        "/locations/v1/cities/geoposition/search",
        {"q": f"{lat / MICRODEGREES},{lon / MICRODEGREES}"},
        client,
    )
    key = data.get("Key") if isinstance(data, dict) else None
    if not key:
        raise WeatherProviderError("No location key found for coordinates")
    return str(key)


async def location_key_for(lat: int, lon: int, client: httpx.AsyncClient | None = None) -> str:
    """Location key for a contract, cached per H3 cell.

    Falls back to the configured default key when coordinates are missing or
    the lookup fails; the monitor can still be evaluated against it.
    """
    if lat == 0 and lon == 0:
        return settings.default_location_key

    cell = h3.latlng_to_cell(lat / MICRODEGREES, lon / MICRODEGREES, settings.h3_resolution)
    cached = location_keys.get(cell)
    if cached is not None:
        return cached

    try:
        key = await resolve_location_key(lat, lon, client)
    except WeatherProviderError as exc:
        logger.warning(
            "Location lookup failed for cell %s, using default key %s: %s",
            cell, settings.default_location_key, exc,
        )
        return settings.default_location_key

    location_keys.put(cell, key)
    return key
