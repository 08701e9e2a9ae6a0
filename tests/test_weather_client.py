"""Tests for the weather provider client.

HTTP is served by ``httpx.MockTransport`` so the parsing and error mapping run
against realistic payloads without network access.
"""

from unittest.mock import patch

import httpx
import pytest

from rainwatch.core.config import settings
from rainwatch.services import weather_client
from rainwatch.services.weather_client import WeatherProviderError
from tests.conftest import BASE_TS, DAY, HOUR

MANILA = (14_599_500, 120_984_200)


def _observation(epoch, past_hour_mm, **extra):
    return {
        "LocalObservationDateTime": "2025-12-21T08:30:00+08:00",
        "EpochTime": epoch,
        "WeatherText": "Rain",
        "HasPrecipitation": True,
        "PrecipitationSummary": {
            "PastHour": {"Metric": {"Value": past_hour_mm, "Unit": "mm"}},
            "Past24Hours": {"Metric": {"Value": 30.5, "Unit": "mm"}},
        },
        **extra,
    }


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture(autouse=True)
def configured():
    weather_client.location_keys.clear()
    with patch.object(settings, "weather_api_key", "test-key"):
        yield
    weather_client.location_keys.clear()


class TestFetchPrecipitation:
    @pytest.mark.asyncio
    async def test_current_observation_inside_window(self):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            return httpx.Response(200, json=[_observation(BASE_TS + 600, 2.4)])

        async with _client(handler) as client:
            records = await weather_client.fetch_precipitation("264885", BASE_TS, BASE_TS + HOUR, client)

        assert len(records) == 1
        assert records[0].observed_at == BASE_TS + 600
        assert records[0].tenths_mm == 24
        assert records[0].raw_data["_extracted"] == {"location_key": "264885", "source": "current"}
        assert seen["url"].path == "/currentconditions/v1/264885"
        assert seen["url"].params["apikey"] == "test-key"

    @pytest.mark.asyncio
    async def test_observation_outside_window_dropped(self):
        def handler(request):
            return httpx.Response(200, json=[_observation(BASE_TS + 2 * HOUR, 5.0)])

        async with _client(handler) as client:
            records = await weather_client.fetch_precipitation("264885", BASE_TS, BASE_TS + HOUR, client)
        assert records == []

    @pytest.mark.asyncio
    async def test_missing_summary_yields_nothing(self):
        def handler(request):
            return httpx.Response(200, json=[{"EpochTime": BASE_TS}])

        async with _client(handler) as client:
            assert await weather_client.fetch_precipitation("264885", BASE_TS, BASE_TS + HOUR, client) == []

    @pytest.mark.asyncio
    async def test_null_metric_reads_as_zero(self):
        def handler(request):
            return httpx.Response(200, json=[_observation(BASE_TS, None)])

        async with _client(handler) as client:
            records = await weather_client.fetch_precipitation("264885", BASE_TS, BASE_TS + HOUR, client)
        assert records[0].tenths_mm == 0

    @pytest.mark.asyncio
    async def test_falls_back_to_local_observation_time(self):
        obs = _observation(None, 1.0)
        del obs["EpochTime"]

        def handler(request):
            return httpx.Response(200, json=[obs])

        async with _client(handler) as client:
            records = await weather_client.fetch_precipitation(
                "264885", BASE_TS, BASE_TS + DAY, client
            )
        # 08:30 at +08:00 is 00:30 UTC
        assert records[0].observed_at == BASE_TS + 1800


class TestHistorical:
    @pytest.mark.asyncio
    async def test_one_record_per_hour(self):
        payload = [_observation(BASE_TS - h * HOUR, float(h)) for h in range(24)]

        def handler(request):
            assert request.url.path.endswith("/historical/24")
            return httpx.Response(200, json=payload)

        async with _client(handler) as client:
            records = await weather_client.fetch_historical_24h("264885", client)

        assert len(records) == 24
        assert records[3].tenths_mm == 30
        assert records[3].raw_data["_extracted"]["source"] == "historical/24"

    @pytest.mark.asyncio
    async def test_unexpected_payload_raises(self):
        def handler(request):
            return httpx.Response(200, json={"Code": "Unauthorized"})

        async with _client(handler) as client:
            with pytest.raises(WeatherProviderError):
                await weather_client.fetch_historical_24h("264885", client)


class TestErrors:
    @pytest.mark.asyncio
    async def test_http_error_wrapped(self):
        def handler(request):
            return httpx.Response(503, text="ServiceUnavailable")

        async with _client(handler) as client:
            with pytest.raises(WeatherProviderError) as exc:
                await weather_client.fetch_historical_24h("264885", client)
        assert "503" in exc.value.message
        assert exc.value.code == "WEATHER_PROVIDER_ERROR"

    @pytest.mark.asyncio
    async def test_connection_error_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(WeatherProviderError):
                await weather_client.fetch_precipitation("264885", BASE_TS, BASE_TS + HOUR, client)

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        with patch.object(settings, "weather_api_key", ""):
            with pytest.raises(WeatherProviderError):
                await weather_client.fetch_historical_24h("264885")


class TestLocationKeys:
    @pytest.mark.asyncio
    async def test_resolves_and_caches_per_cell(self):
        calls = []

        def handler(request):
            calls.append(request.url.params["q"])
            return httpx.Response(200, json={"Key": "3423441", "LocalizedName": "Manila"})

        async with _client(handler) as client:
            first = await weather_client.location_key_for(*MANILA, client=client)
            # A few metres away: same H3 cell
            second = await weather_client.location_key_for(MANILA[0] + 10, MANILA[1] + 10, client=client)

        assert first == second == "3423441"
        assert calls == ["14.5995,120.9842"]

    @pytest.mark.asyncio
    async def test_zero_coordinates_use_default(self):
        assert await weather_client.location_key_for(0, 0) == settings.default_location_key

    @pytest.mark.asyncio
    async def test_lookup_failure_falls_back_to_default(self):
        def handler(request):
            return httpx.Response(200, json=[])

        async with _client(handler) as client:
            key = await weather_client.location_key_for(*MANILA, client=client)
        assert key == settings.default_location_key
        assert len(weather_client.location_keys) == 0


class TestLocationKeyCache:
    def test_least_recently_used_evicted(self):
        cache = weather_client.LocationKeyCache(max_entries=2)
        cache.put("cell-a", "1")
        cache.put("cell-b", "2")
        assert cache.get("cell-a") == "1"

        cache.put("cell-c", "3")

        assert "cell-b" not in cache
        assert cache.get("cell-a") == "1"
        assert cache.get("cell-c") == "3"
        assert len(cache) == 2

    def test_clear(self):
        cache = weather_client.LocationKeyCache(max_entries=4)
        cache.put("cell-a", "1")
        cache.clear()
        assert cache.get("cell-a") is None
