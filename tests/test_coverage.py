"""Tests for coverage-window threshold evaluation."""

import pytest

from rainwatch.core.errors import RainfallValidationError
from rainwatch.services import coverage
from rainwatch.services.aggregator import bucket_index_for, submit_sample
from tests.conftest import BASE_TS, DAY, HOUR


def _hours(values: dict[int, int]) -> dict[int, int]:
    """Map hour offsets from BASE_TS onto absolute bucket indices."""
    return {bucket_index_for(BASE_TS + h * HOUR): v for h, v in values.items()}


class TestRollingSumAt:
    def test_includes_bucket_starting_exactly_24h_before(self):
        buckets = _hours({0: 10, 24: 5})
        assert coverage.rolling_sum_at(buckets, BASE_TS + DAY) == 15

    def test_excludes_bucket_starting_before_window(self):
        buckets = _hours({0: 10, 24: 5})
        assert coverage.rolling_sum_at(buckets, BASE_TS + DAY + 1) == 5

    def test_includes_bucket_starting_at_t(self):
        buckets = _hours({3: 7})
        assert coverage.rolling_sum_at(buckets, BASE_TS + 3 * HOUR) == 7

    def test_empty_buckets(self):
        assert coverage.rolling_sum_at({}, BASE_TS) == 0


class TestThresholdCrossed:
    def test_exactly_strike_counts_as_crossed(self):
        buckets = _hours({h: 25 for h in range(20)})  # 500
        assert coverage.threshold_crossed(buckets, 500, BASE_TS, BASE_TS + 2 * DAY)

    def test_one_below_strike_not_crossed(self):
        buckets = _hours({h: 25 for h in range(20)})
        buckets[bucket_index_for(BASE_TS)] = 24  # 499
        assert not coverage.threshold_crossed(buckets, 500, BASE_TS, BASE_TS + 2 * DAY)

    def test_rain_spread_over_more_than_24h_not_crossed(self):
        buckets = _hours({h: 10 for h in range(48)})  # 25 buckets per window at most
        assert not coverage.threshold_crossed(buckets, 300, BASE_TS, BASE_TS + 3 * DAY)
        assert coverage.max_rolling_sum(buckets, BASE_TS, BASE_TS + 3 * DAY) == 250

    def test_first_crossing_hour(self):
        values = {h: 20 for h in range(24)}
        values.update({24: 30, 25: 15, 26: 40})
        buckets = _hours(values)
        start = BASE_TS + HOUR // 2
        end = BASE_TS + 3 * DAY + HOUR // 2

        assert coverage.rolling_sum_at(buckets, BASE_TS + 25 * HOUR + HOUR // 2) == 485
        assert coverage.first_crossing_time(buckets, 500, start, end) == BASE_TS + 26 * HOUR + HOUR // 2

    def test_rain_before_coverage_counts_toward_first_instant(self):
        buckets = _hours({-5: 600})
        assert coverage.first_crossing_time(buckets, 500, BASE_TS, BASE_TS + DAY) == BASE_TS

    def test_coverage_end_is_evaluated(self):
        buckets = _hours({48: 500})
        assert coverage.first_crossing_time(buckets, 500, BASE_TS, BASE_TS + 2 * DAY) == BASE_TS + 2 * DAY

    def test_rain_after_coverage_ignored(self):
        buckets = _hours({49: 900})
        assert not coverage.threshold_crossed(buckets, 500, BASE_TS, BASE_TS + 2 * DAY)


class TestInvalidWindow:
    def test_start_equal_to_end_rejected(self):
        with pytest.raises(RainfallValidationError) as exc:
            coverage.threshold_crossed({}, 500, BASE_TS, BASE_TS)
        assert exc.value.code == "INVALID_COVERAGE_WINDOW"

    def test_start_after_end_rejected(self):
        with pytest.raises(RainfallValidationError) as exc:
            coverage.first_crossing_time({}, 500, BASE_TS + DAY, BASE_TS)
        assert exc.value.code == "INVALID_COVERAGE_WINDOW"

    def test_max_rolling_sum_of_invalid_window_is_zero(self):
        assert coverage.max_rolling_sum(_hours({0: 50}), BASE_TS, BASE_TS) == 0


class TestLocationQueries:
    @pytest.mark.asyncio
    async def test_was_threshold_crossed_reads_location_buckets(self, db_session):
        now = BASE_TS + 6 * HOUR
        for h in range(5):
            await submit_sample(db_session, "manila", BASE_TS + h * HOUR, 120, now=now)

        assert await coverage.was_threshold_crossed(db_session, "manila", 480, BASE_TS, BASE_TS + DAY)
        assert not await coverage.was_threshold_crossed(db_session, "manila", 601, BASE_TS, BASE_TS + DAY)
        assert await coverage.find_first_crossing(
            db_session, "manila", 480, BASE_TS, BASE_TS + DAY
        ) == BASE_TS + 3 * HOUR
        assert await coverage.max_rolling_sum_in_window(db_session, "manila", BASE_TS, BASE_TS + DAY) == 600

    @pytest.mark.asyncio
    async def test_other_locations_not_counted(self, db_session):
        await submit_sample(db_session, "cebu", BASE_TS, 900, now=BASE_TS)
        assert not await coverage.was_threshold_crossed(db_session, "manila", 500, BASE_TS, BASE_TS + DAY)

    @pytest.mark.asyncio
    async def test_invalid_window_rejected(self, db_session):
        with pytest.raises(RainfallValidationError):
            await coverage.was_threshold_crossed(db_session, "manila", 500, BASE_TS + DAY, BASE_TS)
        assert await coverage.max_rolling_sum_in_window(db_session, "manila", BASE_TS + DAY, BASE_TS) == 0
