"""Coverage-window threshold evaluation over hourly rain buckets.

The question answered here is "did the 24h rolling rainfall total ever meet
the strike while the contract was active?".  Time is stepped at 1-hour
resolution from ``coverage_start`` to ``coverage_end`` inclusive (at most
~169 steps for a 7-day contract); at each instant ``t`` the rolling sum is
the total of buckets whose start time lies in ``[t - 24h, t]``.

Meeting the strike counts as crossing it (``>=``), matching settlement
semantics.

The pure functions take a ``{bucket_index: tenths_mm}`` mapping so the same
logic runs over the location-wide ``RainBucket`` table and over a monitor's
own hourly buckets.
"""

from collections.abc import Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from rainwatch.core.errors import RainfallValidationError
from rainwatch.services import aggregator
from rainwatch.services.aggregator import BUCKET_INTERVAL_SECS, ROLLING_WINDOW_SECS


def rolling_sum_at(buckets: Mapping[int, int], t: int) -> int:
    """Sum of buckets whose start time falls in ``[t - 24h, t]``."""
    return sum(buckets.get(idx, 0) for idx in aggregator.window_indices(t))


def _check_window(coverage_start: int, coverage_end: int) -> None:
    if coverage_start >= coverage_end:
        raise RainfallValidationError(
            f"coverage_start ({coverage_start}) must be before coverage_end ({coverage_end})",
            code="INVALID_COVERAGE_WINDOW",
        )


def _steps(coverage_start: int, coverage_end: int):
    t = coverage_start
    while t <= coverage_end:
        yield t
        t += BUCKET_INTERVAL_SECS


def first_crossing_time(
    buckets: Mapping[int, int],
    strike_tenths_mm: int,
    coverage_start: int,
    coverage_end: int,
) -> int | None:
    """Return the first evaluation instant whose rolling sum meets the strike."""
    _check_window(coverage_start, coverage_end)
    for t in _steps(coverage_start, coverage_end):
        if rolling_sum_at(buckets, t) >= strike_tenths_mm:
            return t
    return None


def threshold_crossed(
    buckets: Mapping[int, int],
    strike_tenths_mm: int,
    coverage_start: int,
    coverage_end: int,
) -> bool:
    return first_crossing_time(buckets, strike_tenths_mm, coverage_start, coverage_end) is not None


def max_rolling_sum(buckets: Mapping[int, int], coverage_start: int, coverage_end: int) -> int:
    """Peak rolling sum across the window; 0 for an empty window."""
    if coverage_start >= coverage_end:
        return 0
    return max(rolling_sum_at(buckets, t) for t in _steps(coverage_start, coverage_end))


async def _location_buckets(
    session: AsyncSession, location_id: str, coverage_start: int, coverage_end: int
) -> dict[int, int]:
    start_idx = (coverage_start - ROLLING_WINDOW_SECS) // BUCKET_INTERVAL_SECS
    end_idx = coverage_end // BUCKET_INTERVAL_SECS
    return await aggregator.load_buckets(session, location_id, start_idx, end_idx)


async def was_threshold_crossed(
    session: AsyncSession,
    location_id: str,
    strike_tenths_mm: int,
    coverage_start: int,
    coverage_end: int,
) -> bool:
    """Check the location-wide buckets for a strike crossing in the window."""
    _check_window(coverage_start, coverage_end)
    buckets = await _location_buckets(session, location_id, coverage_start, coverage_end)
    return threshold_crossed(buckets, strike_tenths_mm, coverage_start, coverage_end)


async def find_first_crossing(
    session: AsyncSession,
    location_id: str,
    strike_tenths_mm: int,
    coverage_start: int,
    coverage_end: int,
) -> int | None:
    _check_window(coverage_start, coverage_end)
    buckets = await _location_buckets(session, location_id, coverage_start, coverage_end)
    return first_crossing_time(buckets, strike_tenths_mm, coverage_start, coverage_end)


async def max_rolling_sum_in_window(
    session: AsyncSession,
    location_id: str,
    coverage_start: int,
    coverage_end: int,
) -> int:
    if coverage_start >= coverage_end:
        return 0
    buckets = await _location_buckets(session, location_id, coverage_start, coverage_end)
    return max_rolling_sum(buckets, coverage_start, coverage_end)
