"""Settlement reports: evidence construction, hashing and ledger submission.

A report is only considered done once the ledger confirms it.  A failed
submission leaves the monitor in ``triggered``/``matured``; a manual trigger
or trigger-all retries it.
"""

import logging
from collections.abc import Sequence
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from rainwatch.core.database import upsert_insert
from rainwatch.core.hashing import compute_evidence_hash
from rainwatch.core.timeutil import now_ts, to_iso
from rainwatch.models.monitor import EvidenceRecord, Monitor, MonitorBucket, MonitorState
from rainwatch.services import coverage, ledger_client, lifecycle
from rainwatch.services.aggregator import BUCKET_INTERVAL_SECS
from rainwatch.services.ledger_client import LedgerError

logger = logging.getLogger(__name__)

OUTCOME_TRIGGERED = "Triggered"
OUTCOME_MATURED = "MaturedNoEvent"

EVIDENCE_VERSION = 1


def outcome_for(monitor: Monitor) -> str:
    return OUTCOME_TRIGGERED if monitor.state == MonitorState.TRIGGERED else OUTCOME_MATURED


def build_evidence(
    monitor: Monitor, buckets: Sequence[MonitorBucket], now: int
) -> dict[str, Any]:
    """Evidence JSON submitted (by hash) with a report.

    Contains every hourly bucket that contributed to the cumulative total,
    plus the peak 24h rolling sum over the coverage window for auditors who
    want the rolling view.
    """
    ordered = sorted(buckets, key=lambda b: b.hour_start)
    by_index = {b.hour_start // BUCKET_INTERVAL_SECS: b.rainfall_tenths_mm for b in ordered}
    window_end = min(monitor.coverage_end, now)

    peak = 0
    first_crossing = None
    if monitor.coverage_start < window_end:
        peak = coverage.max_rolling_sum(by_index, monitor.coverage_start, window_end)
        first_crossing = coverage.first_crossing_time(
            by_index, monitor.strike_tenths_mm, monitor.coverage_start, window_end
        )

    return {
        "version": EVIDENCE_VERSION,
        "monitor_id": monitor.id,
        "contract_id": monitor.contract_id,
        "location_id": monitor.location_id,
        "location_key": monitor.location_key,
        "coverage_start": monitor.coverage_start,
        "coverage_end": monitor.coverage_end,
        "strike_tenths_mm": monitor.strike_tenths_mm,
        "cumulative_tenths_mm": monitor.cumulative_tenths_mm,
        "outcome": outcome_for(monitor),
        "trigger_time": monitor.trigger_time,
        "max_rolling_24h_tenths_mm": peak,
        "first_rolling_crossing": first_crossing,
        "buckets": [
            {
                "hour_start": b.hour_start,
                "rainfall_tenths_mm": b.rainfall_tenths_mm,
                "backfilled": b.backfilled,
            }
            for b in ordered
        ],
        "generated_at": to_iso(now),
    }


async def submit_report(
    session: AsyncSession,
    monitor: Monitor,
    buckets: Sequence[MonitorBucket],
    now: int | None = None,
) -> bool:
    """Submit a settlement report; return True once the ledger accepted it."""
    now = now_ts() if now is None else now
    if monitor.state not in (MonitorState.TRIGGERED, MonitorState.MATURED):
        logger.debug("Monitor %s is %s, nothing to report", monitor.id, monitor.state.value)
        return False

    evidence = build_evidence(monitor, buckets, now)
    evidence_hash = compute_evidence_hash(evidence)
    observed_at = monitor.trigger_time or min(now, monitor.coverage_end)

    try:
        tx_hash = await ledger_client.submit_report(
            contract_id=monitor.contract_id,
            outcome=outcome_for(monitor),
            observed_at=observed_at,
            cumulative_tenths_mm=monitor.cumulative_tenths_mm,
            evidence_hash=evidence_hash,
        )
    except LedgerError as exc:
        logger.warning(
            "Report submission for %s failed, left pending: %s", monitor.id, exc
        )
        return False

    await session.execute(
        upsert_insert(session, EvidenceRecord)
        .values(evidence_hash=evidence_hash, monitor_id=monitor.id, payload=evidence)
        .on_conflict_do_nothing(index_elements=["evidence_hash"])
    )
    monitor.report_tx_hash = tx_hash
    monitor.evidence_hash = evidence_hash
    lifecycle.transition(monitor, MonitorState.REPORTED)
    await session.flush()

    logger.info(
        "Reported %s for monitor %s (tx=%s, evidence=%s)",
        evidence["outcome"], monitor.id, tx_hash, evidence_hash[:16],
    )
    return True
