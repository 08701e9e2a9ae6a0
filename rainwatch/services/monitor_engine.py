"""Monitor engine: the per-contract evaluate/backfill/report workflow.

This module:
1. Creates a monitor when the ledger announces a contract and pre-populates
   it from the provider's 24h history.
2. Evaluates monitors: fetches new rainfall, upserts hourly buckets, feeds
   the location-wide aggregator, recomputes the cumulative total and moves
   the monitor through its state machine.
3. Submits a report once a monitor is triggered or matured.
4. Applies ``ContractSettled`` events and operator resets.
5. Backfills gaps in a monitor's hourly buckets.

Every write is an upsert keyed by a deterministic id, so replaying an event
or re-running an evaluation converges to the same state.
"""

import logging
from dataclasses import asdict, dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rainwatch.core.config import settings
from rainwatch.core.database import upsert_insert
from rainwatch.core.errors import MonitorNotFoundError, RainfallValidationError
from rainwatch.core.timeutil import hour_floor, hour_key, now_ts, utcnow
from rainwatch.models.monitor import Monitor, MonitorBucket, MonitorState, make_monitor_id
from rainwatch.services import aggregator, ledger_client, lifecycle, reporter, weather_client
from rainwatch.services.aggregator import BUCKET_INTERVAL_SECS
from rainwatch.services.ledger_client import LedgerError
from rainwatch.services.ledger_events import ContractCreated, ContractSettled, LedgerEvent
from rainwatch.services.weather_client import PrecipitationRecord, WeatherProviderError

logger = logging.getLogger(__name__)

ZERO_FILL_NOTE = "zero-filled: hour outside the provider's 24h history"

_SETTLED_OUTCOMES = {
    "Triggered": MonitorState.TRIGGERED,
    "Matured": MonitorState.MATURED,
    "MaturedNoEvent": MonitorState.MATURED,
    "NoEvent": MonitorState.MATURED,
}


@dataclass
class EvaluationResult:
    monitor_id: str
    state: str
    cumulative_tenths_mm: int
    records_fetched: int = 0
    reported: bool = False
    skipped: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class BackfillResult:
    monitor_id: str
    existing_buckets: int
    backfilled_with_real_data: int
    backfilled_with_zero: int
    total_backfilled: int
    total_buckets: int
    cumulative_tenths_mm: int
    historical_fetch_error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def get_monitor(session: AsyncSession, monitor_id: str) -> Monitor:
    monitor = await session.get(Monitor, monitor_id)
    if monitor is None:
        raise MonitorNotFoundError(f"Monitor {monitor_id} not found")
    return monitor


async def find_by_contract(
    session: AsyncSession, contract_id: int, location_id: str | None = None
) -> Monitor | None:
    stmt = select(Monitor).where(Monitor.contract_id == contract_id)
    if location_id is not None:
        stmt = stmt.where(Monitor.location_id == location_id)
    result = await session.execute(stmt.order_by(Monitor.created_at.desc()).limit(1))
    return result.scalar_one_or_none()


async def list_monitors(
    session: AsyncSession,
    state: MonitorState | None = None,
    location_id: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Monitor]:
    stmt = select(Monitor)
    if state is not None:
        stmt = stmt.where(Monitor.state == state)
    if location_id is not None:
        stmt = stmt.where(Monitor.location_id == location_id)
    stmt = stmt.order_by(Monitor.created_at.desc()).offset(offset).limit(limit)
    return list((await session.execute(stmt)).scalars().all())


async def list_buckets(session: AsyncSession, monitor_id: str) -> list[MonitorBucket]:
    stmt = (
        select(MonitorBucket)
        .where(MonitorBucket.monitor_id == monitor_id)
        .order_by(MonitorBucket.hour_start)
        .execution_options(populate_existing=True)
    )
    return list((await session.execute(stmt)).scalars().all())


async def count_by_state(session: AsyncSession) -> dict[str, int]:
    stmt = select(Monitor.state, func.count()).group_by(Monitor.state)
    counts = {state.value: 0 for state in MonitorState}
    for state, n in (await session.execute(stmt)).all():
        counts[MonitorState(state).value] = n
    return counts


# ---------------------------------------------------------------------------
# Buckets
# ---------------------------------------------------------------------------


def _monitor_bucket_id(monitor_id: str, hour_start: int) -> str:
    return f"{monitor_id}:{hour_key(hour_start)}"


async def _upsert_bucket(
    session: AsyncSession,
    monitor: Monitor,
    hour_start: int,
    rainfall_tenths_mm: int,
    backfilled: bool,
    raw_data: dict | None,
    overwrite: bool = True,
) -> bool:
    """Write one hourly bucket.

    With ``overwrite`` off an existing bucket is left as it is and the call
    returns False.
    """
    stmt = upsert_insert(session, MonitorBucket).values(
        id=_monitor_bucket_id(monitor.id, hour_start),
        monitor_id=monitor.id,
        hour_start=hour_start,
        rainfall_tenths_mm=rainfall_tenths_mm,
        backfilled=backfilled,
        raw_data=raw_data,
        fetched_at=utcnow(),
    )
    if overwrite:
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "rainfall_tenths_mm": stmt.excluded.rainfall_tenths_mm,
                "backfilled": stmt.excluded.backfilled,
                "raw_data": stmt.excluded.raw_data,
                "fetched_at": stmt.excluded.fetched_at,
            },
        )
        await session.execute(stmt)
        return True
    stmt = stmt.on_conflict_do_nothing(index_elements=["id"]).returning(MonitorBucket.id)
    return (await session.execute(stmt)).scalar_one_or_none() is not None


async def _store_records(
    session: AsyncSession,
    monitor: Monitor,
    records: list[PrecipitationRecord],
    now: int,
) -> int:
    """Upsert in-window records as monitor buckets and feed the aggregator."""
    stored = 0
    for record in records:
        if not monitor.coverage_start <= record.observed_at <= monitor.coverage_end:
            continue
        await _upsert_bucket(
            session,
            monitor,
            hour_floor(record.observed_at),
            record.tenths_mm,
            backfilled=False,
            raw_data=record.raw_data,
        )
        try:
            await aggregator.submit_sample(
                session, monitor.location_id, record.observed_at, record.tenths_mm, now=now
            )
        except RainfallValidationError as exc:
            logger.warning(
                "Rolling aggregate rejected sample for %s at %d: %s",
                monitor.location_id, record.observed_at, exc.message,
            )
        stored += 1
    await session.flush()
    return stored


async def recompute_cumulative(session: AsyncSession, monitor: Monitor, now: int) -> int:
    """Sum the monitor's buckets over ``[coverage_start, min(coverage_end, now)]``."""
    upper = min(monitor.coverage_end, now)
    stmt = select(func.coalesce(func.sum(MonitorBucket.rainfall_tenths_mm), 0)).where(
        MonitorBucket.monitor_id == monitor.id,
        MonitorBucket.hour_start >= hour_floor(monitor.coverage_start),
        MonitorBucket.hour_start <= upper,
    )
    total = int((await session.execute(stmt)).scalar_one())
    monitor.cumulative_tenths_mm = total
    return total


# ---------------------------------------------------------------------------
# Ledger events
# ---------------------------------------------------------------------------


async def dispatch_event(
    session: AsyncSession, event: LedgerEvent, now: int | None = None
) -> Monitor | None:
    """Single entry point for inbound ledger events."""
    if isinstance(event, ContractCreated):
        return await handle_contract_created(session, event, now)
    if isinstance(event, ContractSettled):
        return await handle_contract_settled(session, event, now)
    raise TypeError(f"Unsupported ledger event: {type(event).__name__}")


async def handle_contract_created(
    session: AsyncSession, event: ContractCreated, now: int | None = None
) -> Monitor:
    """Create (or return the existing) monitor for a newly created contract."""
    now = now_ts() if now is None else now
    monitor_id = make_monitor_id(event.location_id, event.contract_id)

    existing = await session.get(Monitor, monitor_id)
    if existing is not None:
        logger.info("Monitor %s already exists, skipping creation", monitor_id)
        return existing

    if event.coverage_start >= event.coverage_end:
        raise RainfallValidationError(
            f"Contract {event.contract_id} has an empty coverage window",
            code="INVALID_COVERAGE_WINDOW",
        )

    location_key = await weather_client.location_key_for(event.lat, event.lon)
    monitor = Monitor(
        id=monitor_id,
        location_id=event.location_id,
        contract_id=event.contract_id,
        coverage_start=event.coverage_start,
        coverage_end=event.coverage_end,
        strike_tenths_mm=event.strike_tenths_mm,
        lat=event.lat,
        lon=event.lon,
        state=MonitorState.MONITORING,
        cumulative_tenths_mm=0,
        last_fetch_at=0,
        location_key=location_key,
    )
    session.add(monitor)
    await session.flush()
    logger.info(
        "Created monitor %s (strike=%.1fmm, coverage %d..%d, key=%s)",
        monitor_id, event.strike_tenths_mm / 10, event.coverage_start,
        event.coverage_end, location_key,
    )

    await _prepopulate(session, monitor, now)
    return monitor


async def _prepopulate(session: AsyncSession, monitor: Monitor, now: int) -> None:
    """Best-effort fill from the 24h history; the next tick covers any failure."""
    try:
        records = await weather_client.fetch_historical_24h(monitor.location_key)
    except WeatherProviderError as exc:
        logger.warning("Historical pre-populate failed for %s: %s", monitor.id, exc.message)
        return

    stored = await _store_records(session, monitor, records, now)
    await recompute_cumulative(session, monitor, now)
    await session.flush()
    logger.info(
        "Pre-populated %s with %d/%d historical hour(s), cumulative=%.1fmm",
        monitor.id, stored, len(records), monitor.cumulative_tenths_mm / 10,
    )


async def handle_contract_settled(
    session: AsyncSession, event: ContractSettled, now: int | None = None
) -> Monitor | None:
    """Record a settlement confirmed on the ledger and finish the monitor."""
    now = now_ts() if now is None else now
    monitor = await find_by_contract(session, event.contract_id, event.location_id)
    if monitor is None:
        logger.warning("ContractSettled for unknown contract %d", event.contract_id)
        return None

    monitor.evidence_hash = event.evidence_hash or monitor.evidence_hash
    monitor.cumulative_tenths_mm = event.cumulative_tenths_mm

    if monitor.state == MonitorState.MONITORING:
        target = _SETTLED_OUTCOMES.get(event.outcome)
        if target is None:
            target = (
                MonitorState.TRIGGERED
                if monitor.cumulative_tenths_mm >= monitor.strike_tenths_mm
                else MonitorState.MATURED
            )
        if target == MonitorState.TRIGGERED:
            monitor.trigger_time = monitor.trigger_time or now
        lifecycle.transition(monitor, target)

    if monitor.state != MonitorState.REPORTED:
        lifecycle.transition(monitor, MonitorState.REPORTED)

    await session.flush()
    logger.info(
        "Monitor %s settled on ledger: %s (evidence=%s)",
        monitor.id, event.outcome, (monitor.evidence_hash or "")[:16],
    )
    return monitor


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


async def _mark_reported_from_ledger(session: AsyncSession, monitor: Monitor, now: int) -> None:
    """The ledger already holds a report; walk the legal edges to ``reported``."""
    if monitor.state == MonitorState.MONITORING:
        await recompute_cumulative(session, monitor, now)
        if monitor.cumulative_tenths_mm >= monitor.strike_tenths_mm:
            monitor.trigger_time = monitor.trigger_time or now
            lifecycle.transition(monitor, MonitorState.TRIGGERED)
        else:
            lifecycle.transition(monitor, MonitorState.MATURED)
    lifecycle.transition(monitor, MonitorState.REPORTED)
    await session.flush()


async def evaluate_monitor(
    session: AsyncSession,
    monitor: Monitor,
    now: int | None = None,
    force: bool = False,
) -> EvaluationResult:
    """Fetch new rainfall for one monitor and advance its state.

    ``monitoring`` monitors fetch new rainfall and may move to ``triggered``
    or ``matured``.  ``triggered`` and ``matured`` monitors only retry their
    pending report, which requires ``force`` (manual trigger or trigger-all).  ``reported`` is terminal and always skipped.
    """
    now = now_ts() if now is None else now
    result = EvaluationResult(
        monitor_id=monitor.id,
        state=monitor.state.value,
        cumulative_tenths_mm=monitor.cumulative_tenths_mm,
    )

    if monitor.state == MonitorState.REPORTED:
        result.skipped = "already_reported"
        return result
    if monitor.state != MonitorState.MONITORING and not force:
        result.skipped = "not_monitoring"
        return result
    if now < monitor.coverage_start:
        result.skipped = "coverage_not_started"
        return result

    try:
        if await ledger_client.report_exists(monitor.contract_id):
            logger.info("Ledger already has a report for %s", monitor.id)
            await _mark_reported_from_ledger(session, monitor, now)
            result.state = monitor.state.value
            result.cumulative_tenths_mm = monitor.cumulative_tenths_mm
            result.skipped = "reported_on_ledger"
            return result
    except LedgerError as exc:
        logger.warning("Could not check ledger report for %s: %s", monitor.id, exc)

    if monitor.state == MonitorState.MONITORING:
        await _fetch_and_advance(session, monitor, now, result)

    if monitor.state in (MonitorState.TRIGGERED, MonitorState.MATURED):
        buckets = await list_buckets(session, monitor.id)
        result.reported = await reporter.submit_report(session, monitor, buckets, now)

    result.state = monitor.state.value
    return result


async def _fetch_and_advance(
    session: AsyncSession, monitor: Monitor, now: int, result: EvaluationResult
) -> None:
    window_end = min(monitor.coverage_end, now)
    fetch_start = monitor.coverage_start
    if monitor.last_fetch_at > 0:
        fetch_start = max(
            monitor.coverage_start, monitor.last_fetch_at - settings.fetch_overlap_seconds
        )

    try:
        records = await weather_client.fetch_precipitation(
            monitor.location_key, fetch_start, window_end
        )
    except WeatherProviderError as exc:
        logger.warning("Rainfall fetch failed for %s: %s", monitor.id, exc.message)
        records = None

    if records is not None:
        result.records_fetched = await _store_records(session, monitor, records, now)
        monitor.last_fetch_at = now

    cumulative = await recompute_cumulative(session, monitor, now)
    result.cumulative_tenths_mm = cumulative

    if cumulative >= monitor.strike_tenths_mm:
        monitor.trigger_time = now
        lifecycle.transition(monitor, MonitorState.TRIGGERED)
        logger.info(
            "Monitor %s TRIGGERED: %.1fmm >= %.1fmm",
            monitor.id, cumulative / 10, monitor.strike_tenths_mm / 10,
        )
    elif now >= monitor.coverage_end:
        lifecycle.transition(monitor, MonitorState.MATURED)
        logger.info(
            "Monitor %s MATURED: %.1fmm < %.1fmm",
            monitor.id, cumulative / 10, monitor.strike_tenths_mm / 10,
        )
    await session.flush()


async def evaluate_all(
    session: AsyncSession, now: int | None = None, retry_reports: bool = False
) -> list[EvaluationResult]:
    """Evaluate every ``monitoring`` monitor.

    With ``retry_reports`` the ``triggered`` and ``matured`` monitors whose
    report is still pending are retried too.  Each monitor runs in its own
    savepoint, so one failing monitor is rolled back and the rest carry on.
    """
    now = now_ts() if now is None else now
    states = [MonitorState.MONITORING]
    if retry_reports:
        states += [MonitorState.TRIGGERED, MonitorState.MATURED]
    stmt = select(Monitor).where(Monitor.state.in_(states))
    monitors = list((await session.execute(stmt)).scalars().all())
    logger.info("Evaluating %d monitor(s) (retry_reports=%s)", len(monitors), retry_reports)

    results = []
    for monitor in monitors:
        monitor_id = monitor.id
        try:
            async with session.begin_nested():
                results.append(await evaluate_monitor(session, monitor, now, force=retry_reports))
        except Exception:
            logger.exception("Evaluation of %s failed, rolled back", monitor_id)
    return results


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------


async def reset_monitor(session: AsyncSession, monitor_id: str) -> Monitor:
    monitor = await get_monitor(session, monitor_id)
    lifecycle.reset(monitor)
    await session.flush()
    return monitor


async def backfill_monitor(
    session: AsyncSession, monitor: Monitor, now: int | None = None
) -> BackfillResult:
    """Fill every missing hour of the monitor's elapsed coverage.

    Hours the provider's 24h history still covers get real data; older hours
    get a zero placeholder marked ``backfilled``.  Existing buckets are never
    touched.
    """
    now = now_ts() if now is None else now
    first_hour = hour_floor(monitor.coverage_start)
    last_hour = hour_floor(min(monitor.coverage_end, now))
    slots = list(range(first_hour, last_hour + 1, BUCKET_INTERVAL_SECS))

    existing = {b.hour_start for b in await list_buckets(session, monitor.id)}
    missing = [h for h in slots if h not in existing]

    history: dict[int, PrecipitationRecord] = {}
    fetch_error = None
    if missing:
        try:
            for record in await weather_client.fetch_historical_24h(monitor.location_key):
                history[hour_floor(record.observed_at)] = record
        except WeatherProviderError as exc:
            fetch_error = exc.message
            logger.warning("Backfill history fetch failed for %s: %s", monitor.id, exc.message)

    real = zero = 0
    for hour_start in missing:
        record = history.get(hour_start)
        if record is not None:
            if await _upsert_bucket(
                session, monitor, hour_start, record.tenths_mm,
                backfilled=False, raw_data=record.raw_data, overwrite=False,
            ):
                real += 1
        else:
            if await _upsert_bucket(
                session, monitor, hour_start, 0,
                backfilled=True, raw_data={"note": ZERO_FILL_NOTE}, overwrite=False,
            ):
                zero += 1
    await session.flush()

    cumulative = await recompute_cumulative(session, monitor, now)
    await session.flush()

    logger.info(
        "Backfilled %s: %d real, %d zero-filled, %d already present",
        monitor.id, real, zero, len(existing),
    )
    return BackfillResult(
        monitor_id=monitor.id,
        existing_buckets=len(existing),
        backfilled_with_real_data=real,
        backfilled_with_zero=zero,
        total_backfilled=real + zero,
        total_buckets=len(existing) + real + zero,
        cumulative_tenths_mm=cumulative,
        historical_fetch_error=fetch_error,
    )
