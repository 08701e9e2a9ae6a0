"""Time-bucketed rolling rainfall aggregator.

Rainfall arrives as sparse hourly samples per location.  Each sample
overwrites its hour bucket, and the per-location ``RollingWindowState``
keeps a running 24h total that is maintained by deltas:

1. Validate drift and magnitude.
2. Compute ``idx = timestamp // 3600`` and load the previous value (0 if absent).
3. Overwrite the bucket; ``delta = new - old``.
4. Apply ``delta`` to the rolling sum when the bucket is inside the retained range.
5. Advance ``last_bucket_index`` when the sample is newer, then prune every
   bucket whose start time has fallen out of the trailing 24h window,
   subtracting it from the sum and deleting it.

Repeated submissions for the same hour are corrections, so replaying a sample
is harmless: the second delta is zero.
"""

import logging

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rainwatch.core.database import upsert_insert
from rainwatch.core.errors import RainfallValidationError
from rainwatch.core.timeutil import HOUR_SECS, now_ts
from rainwatch.models.rainfall import RainBucket, RollingWindowState

logger = logging.getLogger(__name__)

BUCKET_INTERVAL_SECS = HOUR_SECS
ROLLING_WINDOW_SECS = 24 * HOUR_SECS
MAX_PAST_DRIFT_SECS = 7 * 24 * HOUR_SECS
MAX_FUTURE_DRIFT_SECS = 2 * HOUR_SECS
MAX_RAINFALL_TENTHS_MM = 10_000  # 1000mm


def bucket_index_for(timestamp: int) -> int:
    return timestamp // BUCKET_INTERVAL_SECS


def bucket_start_time(idx: int) -> int:
    return idx * BUCKET_INTERVAL_SECS


def _first_index_at_or_after(ts: int) -> int:
    return -(-ts // BUCKET_INTERVAL_SECS)


def window_indices(t: int) -> range:
    """Indices of the buckets whose start time lies in ``[t - 24h, t]``."""
    first = _first_index_at_or_after(t - ROLLING_WINDOW_SECS)
    return range(first, t // BUCKET_INTERVAL_SECS + 1)


def _bucket_id(location_id: str, idx: int) -> str:
    return f"{location_id}:{idx}"


def validate_sample(timestamp: int, rainfall_tenths_mm: int, now: int) -> None:
    """Raise ``RainfallValidationError`` when a sample must be rejected."""
    if now > 0:
        if timestamp < now - MAX_PAST_DRIFT_SECS:
            raise RainfallValidationError(
                f"Timestamp {timestamp} is more than 7 days in the past",
                code="TIMESTAMP_TOO_OLD",
            )
        if timestamp > now + MAX_FUTURE_DRIFT_SECS:
            raise RainfallValidationError(
                f"Timestamp {timestamp} is more than 2 hours in the future",
                code="TIMESTAMP_IN_FUTURE",
            )
    if rainfall_tenths_mm < 0 or rainfall_tenths_mm > MAX_RAINFALL_TENTHS_MM:
        raise RainfallValidationError(
            f"Rainfall value {rainfall_tenths_mm} outside [0, {MAX_RAINFALL_TENTHS_MM}]",
            code="INVALID_RAINFALL_VALUE",
        )


async def submit_sample(
    session: AsyncSession,
    location_id: str,
    timestamp: int,
    rainfall_tenths_mm: int,
    now: int | None = None,
) -> RollingWindowState:
    """Record one hourly sample and return the updated rolling state.

    Raises:
        RainfallValidationError: drift or magnitude checks failed.
    """
    now = now_ts() if now is None else now
    validate_sample(timestamp, rainfall_tenths_mm, now)

    idx = bucket_index_for(timestamp)
    window_start = now - ROLLING_WINDOW_SECS

    # Start the retained range at the window edge so that earlier hours
    # still inside the window count when they arrive after this one.
    await session.execute(
        upsert_insert(session, RollingWindowState)
        .values(
            location_id=location_id,
            last_bucket_index=idx,
            oldest_bucket_index=min(idx, _first_index_at_or_after(window_start)),
            rolling_sum_tenths_mm=0,
        )
        .on_conflict_do_nothing(index_elements=["location_id"])
    )
    # The row lock serializes concurrent samples for one location
    state = (
        await session.execute(
            select(RollingWindowState)
            .where(RollingWindowState.location_id == location_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one()

    bucket_id = _bucket_id(location_id, idx)
    inserted = await session.execute(
        upsert_insert(session, RainBucket)
        .values(
            id=bucket_id,
            location_id=location_id,
            bucket_index=idx,
            bucket_start_time=bucket_start_time(idx),
            rainfall_tenths_mm=rainfall_tenths_mm,
        )
        .on_conflict_do_nothing(index_elements=["id"])
        .returning(RainBucket.id)
    )
    if inserted.scalar_one_or_none() is not None:
        old_value = 0
    else:
        old_value = (
            await session.execute(
                select(RainBucket.rainfall_tenths_mm).where(RainBucket.id == bucket_id)
            )
        ).scalar_one()
        await session.execute(
            update(RainBucket)
            .where(RainBucket.id == bucket_id)
            .values(rainfall_tenths_mm=rainfall_tenths_mm)
        )

    delta = rainfall_tenths_mm - old_value
    if idx >= state.oldest_bucket_index:
        state.rolling_sum_tenths_mm = max(0, state.rolling_sum_tenths_mm + delta)

    if idx > state.last_bucket_index:
        state.last_bucket_index = idx

    await session.flush()
    await _prune(session, state, window_start)

    logger.debug(
        "Rain sample %s#%d = %d (delta %+d) → rolling=%d",
        location_id, idx, rainfall_tenths_mm, delta, state.rolling_sum_tenths_mm,
    )
    return state


async def _prune(session: AsyncSession, state: RollingWindowState, window_start: int) -> None:
    """Drop buckets whose start time is older than ``window_start``.

    The walk stops at ``last_bucket_index``; everything below the new
    ``oldest_bucket_index`` is deleted in one statement, and only buckets that
    were inside the retained range are subtracted from the sum.
    """
    prune_end = min(_first_index_at_or_after(window_start), state.last_bucket_index + 1)
    if prune_end <= state.oldest_bucket_index:
        return

    stmt = select(RainBucket.rainfall_tenths_mm).where(
        RainBucket.location_id == state.location_id,
        RainBucket.bucket_index >= state.oldest_bucket_index,
        RainBucket.bucket_index < prune_end,
    )
    pruned = (await session.execute(stmt)).scalars().all()
    state.rolling_sum_tenths_mm = max(0, state.rolling_sum_tenths_mm - sum(pruned))

    await session.execute(
        delete(RainBucket).where(
            RainBucket.location_id == state.location_id,
            RainBucket.bucket_index < prune_end,
        )
    )
    if pruned:
        logger.debug(
            "Pruned %d bucket(s) for %s below index %d",
            len(pruned), state.location_id, prune_end,
        )
    state.oldest_bucket_index = prune_end
    await session.flush()


async def load_buckets(
    session: AsyncSession,
    location_id: str,
    start_idx: int | None = None,
    end_idx: int | None = None,
) -> dict[int, int]:
    """Return ``{bucket_index: rainfall_tenths_mm}`` for a location."""
    stmt = select(RainBucket.bucket_index, RainBucket.rainfall_tenths_mm).where(
        RainBucket.location_id == location_id
    )
    if start_idx is not None:
        stmt = stmt.where(RainBucket.bucket_index >= start_idx)
    if end_idx is not None:
        stmt = stmt.where(RainBucket.bucket_index <= end_idx)
    rows = (await session.execute(stmt)).all()
    return {idx: value for idx, value in rows}


async def calculate_rolling_sum_at(session: AsyncSession, location_id: str, t: int) -> int:
    """Recompute the 24h sum ending at ``t`` from the stored buckets."""
    window = window_indices(t)
    buckets = await load_buckets(session, location_id, window.start, window.stop - 1)
    return sum(buckets.values())


async def current_rolling_sum(session: AsyncSession, location_id: str) -> int:
    state = await session.get(RollingWindowState, location_id)
    return state.rolling_sum_tenths_mm if state is not None else 0


async def get_rolling_state(session: AsyncSession, location_id: str) -> RollingWindowState | None:
    return await session.get(RollingWindowState, location_id)
