"""Pydantic schemas for the REST API request/response models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from rainwatch.models.monitor import MonitorState


# ── Monitors ──────────────────────────────────────────────────────────────────


class MonitorResponse(BaseModel):
    id: str
    location_id: str
    contract_id: int
    coverage_start: int
    coverage_end: int
    strike_tenths_mm: int
    lat: int
    lon: int
    state: MonitorState
    cumulative_tenths_mm: int
    trigger_time: int | None
    last_fetch_at: int
    location_key: str
    report_tx_hash: str | None
    evidence_hash: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class MonitorListResponse(BaseModel):
    monitors: list[MonitorResponse]
    count: int


class MonitorBucketResponse(BaseModel):
    id: str
    monitor_id: str
    hour_start: int
    rainfall_tenths_mm: int
    backfilled: bool
    raw_data: dict[str, Any] | None
    fetched_at: datetime

    model_config = {"from_attributes": True}


class MonitorBucketListResponse(BaseModel):
    monitor_id: str
    buckets: list[MonitorBucketResponse]
    count: int
    total_tenths_mm: int


class EvaluationResponse(BaseModel):
    monitor_id: str
    state: MonitorState
    cumulative_tenths_mm: int
    records_fetched: int
    reported: bool
    skipped: str | None = None


class BackfillResponse(BaseModel):
    monitor_id: str
    existing_buckets: int
    backfilled_with_real_data: int
    backfilled_with_zero: int
    total_backfilled: int
    total_buckets: int
    cumulative_tenths_mm: int
    historical_fetch_error: str | None = None


class CycleResponse(BaseModel):
    """Summary of one scheduler cycle run on demand."""

    started_at: int
    evaluated: int
    triggered: int
    matured: int
    reported: int
    pruned_observations: int
    pruned_snapshots: int
    duration_ms: float
    monitor_ids: list[str]


class StatsResponse(BaseModel):
    total: int
    monitoring: int
    triggered: int
    matured: int
    reported: int
    active: int = Field(description="Alias of monitoring")


# ── Location rainfall ─────────────────────────────────────────────────────────


class RainfallSampleCreate(BaseModel):
    """One hourly reading. Drift and magnitude are checked by the aggregator."""

    timestamp: int = Field(..., description="Unix seconds inside the hour being reported")
    rainfall_tenths_mm: int = Field(..., description="Rainfall in tenths of a millimetre")


class RainBucketResponse(BaseModel):
    bucket_index: int
    bucket_start_time: int
    rainfall_tenths_mm: int


class RollingStateResponse(BaseModel):
    location_id: str
    rolling_sum_tenths_mm: int
    last_bucket_index: int | None
    oldest_bucket_index: int | None
    buckets: list[RainBucketResponse] = []


class ThresholdCheckResponse(BaseModel):
    location_id: str
    strike_tenths_mm: int
    coverage_start: int
    coverage_end: int
    crossed: bool
    first_crossing_time: int | None
    max_rolling_sum_tenths_mm: int


# ── Ingest ────────────────────────────────────────────────────────────────────


class ObservationBatch(BaseModel):
    contract_id: int
    location_key: str = ""
    commitment_after: str = ""
    # Samples are validated one by one so a bad sample only counts as rejected
    samples: list[Any] = Field(..., max_length=1000)


class ObservationBatchResponse(BaseModel):
    inserted: int
    already_present: int
    rejected_invalid: int
    total_received: int


class SnapshotCreate(BaseModel):
    contract_id: int
    observed_until: int
    commitment: str = Field(..., min_length=1)
    agg_state: dict[str, Any] | str | None = None


class SnapshotCreateResponse(BaseModel):
    id: str
    is_new: bool


class ObservationResponse(BaseModel):
    id: str
    contract_id: int
    epoch_time: int
    location_key: str
    fields: dict[str, Any]
    sample_hash: str
    commitment_after: str
    inserted_at: datetime

    model_config = {"from_attributes": True}


class SnapshotResponse(BaseModel):
    id: str
    contract_id: int
    observed_until: int
    agg_state: dict[str, Any]
    commitment: str
    inserted_at: datetime

    model_config = {"from_attributes": True}


class IngestStatsResponse(BaseModel):
    observations_count: int
    snapshots_count: int
    nonces_cached: int
