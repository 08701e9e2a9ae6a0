"""Tests for the time-bucketed rolling rainfall aggregator.

Test categories:
1. Validation: drift and magnitude limits.
2. Corrections: overwrite semantics and replay safety.
3. Pruning: buckets leave the window and the table.
4. Rolling-sum invariant against a brute-force recomputation.
5. The 500-strike walk-through (480 → 490 → 485).
"""

import math
import random

import pytest
from sqlalchemy import select

from rainwatch.core.errors import RainfallValidationError
from rainwatch.models.rainfall import RainBucket
from rainwatch.services import aggregator
from rainwatch.services.aggregator import (
    MAX_FUTURE_DRIFT_SECS,
    MAX_PAST_DRIFT_SECS,
    MAX_RAINFALL_TENTHS_MM,
    bucket_index_for,
    submit_sample,
    validate_sample,
)
from tests.conftest import BASE_TS, DAY, HOUR


def _mid_hour(h: int) -> int:
    return BASE_TS + h * HOUR + HOUR // 2


# ═══════════════════════════════════════════════════════════════════════════════
# 1. VALIDATION
# ═══════════════════════════════════════════════════════════════════════════════


class TestValidation:
    def test_accepts_sample_at_now(self):
        validate_sample(BASE_TS, 25, now=BASE_TS)

    def test_rejects_timestamp_older_than_seven_days(self):
        with pytest.raises(RainfallValidationError) as exc:
            validate_sample(BASE_TS - MAX_PAST_DRIFT_SECS - 1, 10, now=BASE_TS)
        assert exc.value.code == "TIMESTAMP_TOO_OLD"

    def test_accepts_timestamp_exactly_seven_days_old(self):
        validate_sample(BASE_TS - MAX_PAST_DRIFT_SECS, 10, now=BASE_TS)

    def test_rejects_timestamp_more_than_two_hours_ahead(self):
        with pytest.raises(RainfallValidationError) as exc:
            validate_sample(BASE_TS + MAX_FUTURE_DRIFT_SECS + 1, 10, now=BASE_TS)
        assert exc.value.code == "TIMESTAMP_IN_FUTURE"

    def test_rejects_oversized_rainfall(self):
        with pytest.raises(RainfallValidationError) as exc:
            validate_sample(BASE_TS, MAX_RAINFALL_TENTHS_MM + 1, now=BASE_TS)
        assert exc.value.code == "INVALID_RAINFALL_VALUE"

    def test_accepts_maximum_rainfall(self):
        validate_sample(BASE_TS, MAX_RAINFALL_TENTHS_MM, now=BASE_TS)

    def test_rejects_negative_rainfall(self):
        with pytest.raises(RainfallValidationError) as exc:
            validate_sample(BASE_TS, -1, now=BASE_TS)
        assert exc.value.code == "INVALID_RAINFALL_VALUE"

    @pytest.mark.asyncio
    async def test_rejected_sample_writes_nothing(self, db_session):
        with pytest.raises(RainfallValidationError):
            await submit_sample(db_session, "manila", BASE_TS + 3 * HOUR, 10, now=BASE_TS)
        assert await aggregator.get_rolling_state(db_session, "manila") is None
        assert await aggregator.load_buckets(db_session, "manila") == {}


# ═══════════════════════════════════════════════════════════════════════════════
# 2. CORRECTIONS
# ═══════════════════════════════════════════════════════════════════════════════


class TestCorrections:
    @pytest.mark.asyncio
    async def test_first_sample_initialises_state(self, db_session):
        state = await submit_sample(db_session, "manila", _mid_hour(0), 20, now=_mid_hour(0))
        assert state.rolling_sum_tenths_mm == 20
        assert state.last_bucket_index == bucket_index_for(_mid_hour(0))

    @pytest.mark.asyncio
    async def test_resubmission_overwrites_not_adds(self, db_session):
        now = _mid_hour(0)
        await submit_sample(db_session, "manila", now, 20, now=now)
        state = await submit_sample(db_session, "manila", now, 35, now=now)
        assert state.rolling_sum_tenths_mm == 35
        buckets = await aggregator.load_buckets(db_session, "manila")
        assert buckets == {bucket_index_for(now): 35}

    @pytest.mark.asyncio
    async def test_downward_correction(self, db_session):
        now = _mid_hour(0)
        await submit_sample(db_session, "manila", now, 50, now=now)
        state = await submit_sample(db_session, "manila", now, 5, now=now)
        assert state.rolling_sum_tenths_mm == 5

    @pytest.mark.asyncio
    async def test_replaying_same_sample_is_harmless(self, db_session):
        now = _mid_hour(3)
        for _ in range(3):
            state = await submit_sample(db_session, "manila", now, 12, now=now)
        assert state.rolling_sum_tenths_mm == 12

    @pytest.mark.asyncio
    async def test_late_sample_inside_window_counts(self, db_session):
        """An earlier hour arriving after a later one is still summed."""
        now = _mid_hour(10)
        await submit_sample(db_session, "manila", _mid_hour(10), 10, now=now)
        state = await submit_sample(db_session, "manila", _mid_hour(2), 7, now=now)
        assert state.rolling_sum_tenths_mm == 17

    @pytest.mark.asyncio
    async def test_locations_are_independent(self, db_session):
        now = _mid_hour(0)
        await submit_sample(db_session, "manila", now, 10, now=now)
        await submit_sample(db_session, "cebu", now, 99, now=now)
        assert await aggregator.current_rolling_sum(db_session, "manila") == 10
        assert await aggregator.current_rolling_sum(db_session, "cebu") == 99

    @pytest.mark.asyncio
    async def test_correction_from_a_later_session(self, session_factory):
        now = _mid_hour(0)
        for value in (40, 15):
            async with session_factory() as session:
                await submit_sample(session, "manila", now, value, now=now)
                await session.commit()

        async with session_factory() as session:
            assert await aggregator.current_rolling_sum(session, "manila") == 15
            assert await aggregator.load_buckets(session, "manila") == {bucket_index_for(now): 15}

    @pytest.mark.asyncio
    async def test_unknown_location_has_zero_sum(self, db_session):
        assert await aggregator.current_rolling_sum(db_session, "nowhere") == 0


# ═══════════════════════════════════════════════════════════════════════════════
# 3. PRUNING
# ═══════════════════════════════════════════════════════════════════════════════


class TestPruning:
    @pytest.mark.asyncio
    async def test_bucket_older_than_window_is_deleted(self, db_session):
        await submit_sample(db_session, "manila", _mid_hour(0), 20, now=_mid_hour(0))
        state = await submit_sample(db_session, "manila", _mid_hour(30), 5, now=_mid_hour(30))

        assert state.rolling_sum_tenths_mm == 5
        rows = (await db_session.execute(select(RainBucket.bucket_index))).scalars().all()
        assert rows == [bucket_index_for(_mid_hour(30))]

    @pytest.mark.asyncio
    async def test_late_sample_outside_window_not_summed(self, db_session):
        now = _mid_hour(40)
        await submit_sample(db_session, "manila", _mid_hour(40), 10, now=now)
        state = await submit_sample(db_session, "manila", _mid_hour(5), 80, now=now)
        assert state.rolling_sum_tenths_mm == 10

    @pytest.mark.asyncio
    async def test_pruning_independent_of_submission_order(self, db_session):
        hours = list(range(0, 36))
        random.Random(7).shuffle(hours)
        now = _mid_hour(35)
        for h in hours:
            await submit_sample(db_session, "manila", _mid_hour(h), 10, now=now)

        first_in_window = math.ceil((now - DAY) / HOUR)
        buckets = await aggregator.load_buckets(db_session, "manila", start_idx=first_in_window)
        assert sorted(buckets) == list(range(first_in_window, first_in_window + 24))
        assert await aggregator.current_rolling_sum(db_session, "manila") == 24 * 10

    @pytest.mark.asyncio
    async def test_window_empty_after_long_gap(self, db_session):
        await submit_sample(db_session, "manila", _mid_hour(0), 40, now=_mid_hour(0))
        # Sample for an old hour arrives long after, with nothing newer in range
        state = await submit_sample(db_session, "manila", _mid_hour(1), 15, now=_mid_hour(100))
        assert state.rolling_sum_tenths_mm == 0


# ═══════════════════════════════════════════════════════════════════════════════
# 4. ROLLING-SUM INVARIANT
# ═══════════════════════════════════════════════════════════════════════════════


class TestRollingSumInvariant:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [1, 2, 3])
    async def test_matches_brute_force_over_random_sequence(self, db_session, seed):
        """Random submissions, corrections and late arrivals, with time moving forward."""
        rng = random.Random(seed)
        truth: dict[int, int] = {}
        now = BASE_TS

        for _ in range(150):
            now += rng.choice([0, 0, 600, 1800, HOUR, 3 * HOUR])
            if truth and rng.random() < 0.3:
                # Correction to a bucket we already sent
                idx = rng.choice(list(truth))
                ts = idx * HOUR + rng.randrange(HOUR)
                if ts < now - 6 * DAY:
                    continue
            else:
                ts = now - rng.randrange(-HOUR, 30 * HOUR)
            value = rng.randrange(0, 120)

            state = await submit_sample(db_session, "manila", ts, value, now=now)
            truth[bucket_index_for(ts)] = value

            last = max(truth)
            first = math.ceil((now - DAY) / HOUR)
            expected = sum(truth.get(idx, 0) for idx in range(first, last + 1))
            assert state.rolling_sum_tenths_mm == expected
            assert state.last_bucket_index == last

    @pytest.mark.asyncio
    async def test_stored_sum_matches_recomputed_window(self, db_session):
        now = _mid_hour(30)
        for h in range(0, 31):
            await submit_sample(db_session, "manila", _mid_hour(h), h, now=now)
        stored = await aggregator.current_rolling_sum(db_session, "manila")
        assert stored == await aggregator.calculate_rolling_sum_at(db_session, "manila", now)
        assert stored == sum(range(7, 31))


# ═══════════════════════════════════════════════════════════════════════════════
# 5. WORKED EXAMPLE
# ═══════════════════════════════════════════════════════════════════════════════


class TestStrikeWalkthrough:
    @pytest.mark.asyncio
    async def test_480_then_490_then_485(self, db_session):
        for h in range(24):
            state = await submit_sample(db_session, "manila", _mid_hour(h), 20, now=_mid_hour(h))
        assert state.rolling_sum_tenths_mm == 480

        state = await submit_sample(db_session, "manila", _mid_hour(24), 30, now=_mid_hour(24))
        assert state.rolling_sum_tenths_mm == 490

        state = await submit_sample(db_session, "manila", _mid_hour(25), 15, now=_mid_hour(25))
        assert state.rolling_sum_tenths_mm == 485

        state = await submit_sample(db_session, "manila", _mid_hour(26), 40, now=_mid_hour(26))
        assert state.rolling_sum_tenths_mm == 505
