"""Persistence for authenticated ingest batches.

Observations are deduplicated by ``(contract_id, epoch_time)`` and snapshots
by ``(contract_id, observed_until)``.  The first copy wins; a replayed batch
only bumps the ``already_present`` counter.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rainwatch.core.config import settings
from rainwatch.core.database import upsert_insert
from rainwatch.core.timeutil import utcnow
from rainwatch.models.ingest import ObservationRecord, SnapshotRecord

logger = logging.getLogger(__name__)

# Fixed-point observation fields: scaled by 1000, plus a precip-type bitmask.
OBSERVATION_FIELDS = (
    "precip_1h_mm_x1000",
    "temp_c_x1000",
    "wind_gust_mps_x1000",
    "precip_type_mask",
)


@dataclass
class BatchResult:
    inserted: int = 0
    already_present: int = 0
    rejected_invalid: int = 0
    total_received: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def observation_id(contract_id: int, epoch_time: int) -> str:
    return f"{contract_id}:{epoch_time}"


def snapshot_id(contract_id: int, observed_until: int) -> str:
    return f"{contract_id}:{observed_until}"


def _extract_fields(sample: dict[str, Any]) -> dict[str, int]:
    fields = {k: int(sample[k]) for k in OBSERVATION_FIELDS if sample.get(k) is not None}
    normalized = sample.get("normalized_fields")
    if isinstance(normalized, dict):
        for key, value in normalized.items():
            if value is not None:
                fields.setdefault(str(key), int(value))
    return fields


async def store_observation_batch(
    session: AsyncSession,
    contract_id: int,
    samples: list[Any],
    location_key: str = "",
    commitment_after: str = "",
) -> BatchResult:
    """Insert new observations; a sample that is not an object or has no
    ``epoch_time`` is rejected.

    Inserts use ``ON CONFLICT DO NOTHING``, so a batch delivered twice at the
    same moment counts its rows as ``already_present`` instead of failing.
    """
    result = BatchResult(total_received=len(samples))
    seen_in_batch: set[str] = set()

    for sample in samples:
        try:
            if not isinstance(sample, dict) or not sample.get("epoch_time"):
                raise ValueError("epoch_time missing")
            epoch_time = int(sample["epoch_time"])
            fields = _extract_fields(sample)
        except (KeyError, TypeError, ValueError):
            result.rejected_invalid += 1
            continue

        record_id = observation_id(contract_id, epoch_time)
        if record_id in seen_in_batch:
            result.already_present += 1
            continue
        seen_in_batch.add(record_id)

        stmt = (
            upsert_insert(session, ObservationRecord)
            .values(
                id=record_id,
                contract_id=contract_id,
                epoch_time=epoch_time,
                location_key=location_key,
                fields=fields,
                sample_hash=str(sample.get("sample_hash") or ""),
                commitment_after=commitment_after,
                inserted_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["id"])
            .returning(ObservationRecord.id)
        )
        if (await session.execute(stmt)).scalar_one_or_none() is None:
            result.already_present += 1
        else:
            result.inserted += 1

    logger.info(
        "Observation batch for contract %d: %d inserted, %d present, %d rejected",
        contract_id, result.inserted, result.already_present, result.rejected_invalid,
    )
    return result


async def store_snapshot(
    session: AsyncSession,
    contract_id: int,
    observed_until: int,
    commitment: str,
    agg_state: Any,
) -> tuple[SnapshotRecord, bool]:
    """Insert a snapshot unless one exists; returns ``(record, is_new)``.

    The first copy wins, including under concurrent delivery.
    """
    record_id = snapshot_id(contract_id, observed_until)
    if isinstance(agg_state, str):
        agg_state = {"encoded": agg_state}

    stmt = (
        upsert_insert(session, SnapshotRecord)
        .values(
            id=record_id,
            contract_id=contract_id,
            observed_until=observed_until,
            agg_state=agg_state or {},
            commitment=commitment,
            inserted_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["id"])
        .returning(SnapshotRecord.id)
    )
    is_new = (await session.execute(stmt)).scalar_one_or_none() is not None

    record = (
        await session.execute(
            select(SnapshotRecord)
            .where(SnapshotRecord.id == record_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    if is_new:
        logger.info("Stored snapshot %s", record_id)
    return record, is_new


async def list_observations(
    session: AsyncSession, contract_id: int, limit: int = 100
) -> list[ObservationRecord]:
    stmt = (
        select(ObservationRecord)
        .where(ObservationRecord.contract_id == contract_id)
        .order_by(ObservationRecord.epoch_time.desc())
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars().all())


async def list_snapshots(
    session: AsyncSession, contract_id: int, limit: int = 20
) -> list[SnapshotRecord]:
    stmt = (
        select(SnapshotRecord)
        .where(SnapshotRecord.contract_id == contract_id)
        .order_by(SnapshotRecord.observed_until.desc())
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars().all())


async def counts(session: AsyncSession) -> dict[str, int]:
    obs = (await session.execute(select(func.count()).select_from(ObservationRecord))).scalar_one()
    snaps = (await session.execute(select(func.count()).select_from(SnapshotRecord))).scalar_one()
    return {"observations_count": obs, "snapshots_count": snaps}


async def freshness(session: AsyncSession) -> dict[str, int]:
    """Records received in the last 24 hours."""
    since = utcnow() - timedelta(hours=24)
    obs = (
        await session.execute(
            select(func.count()).where(ObservationRecord.inserted_at >= since)
        )
    ).scalar_one()
    snaps = (
        await session.execute(
            select(func.count()).where(SnapshotRecord.inserted_at >= since)
        )
    ).scalar_one()
    return {"observations_last_24h": obs, "snapshots_last_24h": snaps}


async def prune_expired(session: AsyncSession) -> tuple[int, int]:
    """Delete records past their retention; returns ``(observations, snapshots)``."""
    now = utcnow()
    obs_cutoff = now - timedelta(days=settings.observation_retention_days)
    snap_cutoff = now - timedelta(days=settings.snapshot_retention_days)

    obs = await session.execute(
        delete(ObservationRecord)
        .where(ObservationRecord.inserted_at < obs_cutoff)
        .execution_options(synchronize_session=False)
    )
    snaps = await session.execute(
        delete(SnapshotRecord)
        .where(SnapshotRecord.inserted_at < snap_cutoff)
        .execution_options(synchronize_session=False)
    )
    removed = (obs.rowcount or 0, snaps.rowcount or 0)
    if any(removed):
        logger.info("Pruned %d observation(s) and %d snapshot(s) past retention", *removed)
    return removed
