"""REST API routes for monitors, stats and location rainfall."""

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from rainwatch.api.schemas import (
    BackfillResponse,
    CycleResponse,
    EvaluationResponse,
    MonitorBucketListResponse,
    MonitorBucketResponse,
    MonitorListResponse,
    MonitorResponse,
    RainBucketResponse,
    RainfallSampleCreate,
    RollingStateResponse,
    StatsResponse,
    ThresholdCheckResponse,
)
from rainwatch.core.database import get_session
from rainwatch.models.monitor import Monitor, MonitorState
from rainwatch.services import aggregator, coverage, monitor_engine
from rainwatch.services.scheduler import SchedulerLoop

logger = logging.getLogger(__name__)

router = APIRouter()


def get_scheduler(request: Request) -> SchedulerLoop:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=503,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Scheduler is not running."},
        )
    return scheduler


# ── Monitors ──────────────────────────────────────────────────────────────────


@router.get(
    "/monitors",
    response_model=MonitorListResponse,
    tags=["monitors"],
    summary="List monitors",
)
async def list_monitors(
    state: MonitorState | None = Query(default=None),
    location_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_session),
) -> MonitorListResponse:
    monitors = await monitor_engine.list_monitors(session, state, location_id, limit, offset)
    return MonitorListResponse(
        monitors=[MonitorResponse.model_validate(m) for m in monitors],
        count=len(monitors),
    )


@router.post(
    "/monitors/trigger-all",
    response_model=CycleResponse,
    tags=["monitors"],
    summary="Run an evaluation cycle now",
)
async def trigger_all(scheduler: SchedulerLoop = Depends(get_scheduler)) -> CycleResponse:
    result = await scheduler.trigger_all()
    return CycleResponse(**asdict(result))


@router.get(
    "/monitors/{monitor_id}",
    response_model=MonitorResponse,
    tags=["monitors"],
    summary="Get one monitor",
)
async def get_monitor(
    monitor_id: str,
    session: AsyncSession = Depends(get_session),
) -> Monitor:
    return await monitor_engine.get_monitor(session, monitor_id)


@router.get(
    "/monitors/{monitor_id}/buckets",
    response_model=MonitorBucketListResponse,
    tags=["monitors"],
    summary="Hourly rainfall buckets recorded for a monitor",
)
async def get_monitor_buckets(
    monitor_id: str,
    session: AsyncSession = Depends(get_session),
) -> MonitorBucketListResponse:
    await monitor_engine.get_monitor(session, monitor_id)
    buckets = await monitor_engine.list_buckets(session, monitor_id)
    return MonitorBucketListResponse(
        monitor_id=monitor_id,
        buckets=[MonitorBucketResponse.model_validate(b) for b in buckets],
        count=len(buckets),
        total_tenths_mm=sum(b.rainfall_tenths_mm for b in buckets),
    )


@router.post(
    "/monitors/{monitor_id}/backfill",
    response_model=BackfillResponse,
    tags=["monitors"],
    summary="Fill missing hourly buckets for a monitor",
    description=(
        "Hours still inside the provider's 24h history are filled with real data; "
        "older hours get a zero placeholder flagged as backfilled. Existing buckets "
        "are left untouched, so the call is safe to repeat."
    ),
)
async def backfill_monitor(
    monitor_id: str,
    session: AsyncSession = Depends(get_session),
) -> BackfillResponse:
    monitor = await monitor_engine.get_monitor(session, monitor_id)
    result = await monitor_engine.backfill_monitor(session, monitor)
    return BackfillResponse(**result.to_dict())


@router.post(
    "/monitors/{monitor_id}/trigger",
    response_model=EvaluationResponse,
    tags=["monitors"],
    summary="Force evaluation of one monitor",
)
async def trigger_monitor(
    monitor_id: str,
    session: AsyncSession = Depends(get_session),
) -> EvaluationResponse:
    monitor = await monitor_engine.get_monitor(session, monitor_id)
    result = await monitor_engine.evaluate_monitor(session, monitor, force=True)
    return EvaluationResponse(**result.to_dict())


@router.get(
    "/contracts/{contract_id}/monitor",
    response_model=MonitorResponse,
    tags=["monitors"],
    summary="Find the monitor tracking a contract",
)
async def get_contract_monitor(
    contract_id: int,
    session: AsyncSession = Depends(get_session),
) -> Monitor:
    monitor = await monitor_engine.find_by_contract(session, contract_id)
    if monitor is None:
        raise HTTPException(
            status_code=404,
            detail={
                "code": "MONITOR_NOT_FOUND",
                "message": f"No monitor for contract {contract_id}",
            },
        )
    return monitor


@router.get("/stats", response_model=StatsResponse, tags=["monitors"], summary="Monitor counts by state")
async def stats(session: AsyncSession = Depends(get_session)) -> StatsResponse:
    counts = await monitor_engine.count_by_state(session)
    return StatsResponse(
        total=sum(counts.values()),
        monitoring=counts["monitoring"],
        triggered=counts["triggered"],
        matured=counts["matured"],
        reported=counts["reported"],
        active=counts["monitoring"],
    )


# ── Location rainfall ─────────────────────────────────────────────────────────


async def _rolling_state(session: AsyncSession, location_id: str) -> RollingStateResponse:
    state = await aggregator.get_rolling_state(session, location_id)
    buckets = await aggregator.load_buckets(session, location_id)
    return RollingStateResponse(
        location_id=location_id,
        rolling_sum_tenths_mm=state.rolling_sum_tenths_mm if state else 0,
        last_bucket_index=state.last_bucket_index if state else None,
        oldest_bucket_index=state.oldest_bucket_index if state else None,
        buckets=[
            RainBucketResponse(
                bucket_index=idx,
                bucket_start_time=aggregator.bucket_start_time(idx),
                rainfall_tenths_mm=value,
            )
            for idx, value in sorted(buckets.items())
        ],
    )


@router.get(
    "/locations/{location_id}/rainfall",
    response_model=RollingStateResponse,
    tags=["rainfall"],
    summary="Rolling 24h rainfall and retained buckets for a location",
)
async def get_location_rainfall(
    location_id: str,
    session: AsyncSession = Depends(get_session),
) -> RollingStateResponse:
    return await _rolling_state(session, location_id)


@router.post(
    "/locations/{location_id}/rainfall",
    response_model=RollingStateResponse,
    tags=["rainfall"],
    summary="Submit an hourly rainfall sample",
)
async def submit_location_rainfall(
    location_id: str,
    body: RainfallSampleCreate,
    session: AsyncSession = Depends(get_session),
) -> RollingStateResponse:
    await aggregator.submit_sample(session, location_id, body.timestamp, body.rainfall_tenths_mm)
    return await _rolling_state(session, location_id)


@router.get(
    "/locations/{location_id}/threshold-check",
    response_model=ThresholdCheckResponse,
    tags=["rainfall"],
    summary="Did the rolling 24h sum meet a strike during a coverage window?",
)
async def threshold_check(
    location_id: str,
    strike_tenths_mm: int = Query(..., ge=0),
    coverage_start: int = Query(...),
    coverage_end: int = Query(...),
    session: AsyncSession = Depends(get_session),
) -> ThresholdCheckResponse:
    first = await coverage.find_first_crossing(
        session, location_id, strike_tenths_mm, coverage_start, coverage_end
    )
    peak = await coverage.max_rolling_sum_in_window(
        session, location_id, coverage_start, coverage_end
    )
    return ThresholdCheckResponse(
        location_id=location_id,
        strike_tenths_mm=strike_tenths_mm,
        coverage_start=coverage_start,
        coverage_end=coverage_end,
        crossed=first is not None,
        first_crossing_time=first,
        max_rolling_sum_tenths_mm=peak,
    )
