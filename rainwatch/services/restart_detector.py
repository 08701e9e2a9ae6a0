"""Ledger reset detection.

Run once per ledger connection.  State recorded against one incarnation of
the ledger must never be evaluated against another, so a changed genesis
hash, or a height that went backwards by more than the tolerance, wipes every
monitor, bucket and evidence record before the service resumes.  Small
regressions (re-orgs, a node replaying a few blocks) are tolerated.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from rainwatch.core.config import settings
from rainwatch.models.chain import CHAIN_META_ID, ChainMeta
from rainwatch.models.monitor import EvidenceRecord, Monitor, MonitorBucket
from rainwatch.models.rainfall import RainBucket, RollingWindowState
from rainwatch.services import weather_client

logger = logging.getLogger(__name__)


@dataclass
class RestartCheck:
    restarted: bool
    reason: str | None = None
    previous_genesis: str | None = None
    previous_height: int | None = None


async def clear_all_data(session: AsyncSession) -> dict[str, int]:
    """Delete monitors, their buckets and evidence, all rolling rainfall state
    and the cached weather location keys."""
    removed = {}
    for name, model in (
        ("monitors", Monitor),
        ("monitor_buckets", MonitorBucket),
        ("evidence_records", EvidenceRecord),
        ("rain_buckets", RainBucket),
        ("rolling_states", RollingWindowState),
    ):
        result = await session.execute(delete(model))
        removed[name] = result.rowcount or 0
    await session.flush()
    weather_client.location_keys.clear()
    logger.warning("Cleared stored state: %s", removed)
    return removed


def _is_restart(meta: ChainMeta, genesis_hash: str, height: int, tolerance: int) -> str | None:
    if meta.genesis_hash != genesis_hash:
        return "genesis_changed"
    if meta.last_block_number > 0 and height < meta.last_block_number - tolerance:
        return "height_regressed"
    return None


async def check_chain_restart(
    session: AsyncSession,
    genesis_hash: str,
    height: int,
    tolerance: int | None = None,
) -> RestartCheck:
    """Compare the ledger identity with what was recorded last run."""
    tolerance = settings.restart_height_tolerance if tolerance is None else tolerance
    meta = await session.get(ChainMeta, CHAIN_META_ID)

    if meta is None:
        session.add(
            ChainMeta(id=CHAIN_META_ID, genesis_hash=genesis_hash, last_block_number=height)
        )
        await session.flush()
        logger.info("First run: recorded ledger genesis %s at height %d", genesis_hash[:16], height)
        return RestartCheck(restarted=False)

    previous_genesis, previous_height = meta.genesis_hash, meta.last_block_number
    reason = _is_restart(meta, genesis_hash, height, tolerance)

    if reason is None:
        meta.last_block_number = height
        await session.flush()
        return RestartCheck(
            restarted=False, previous_genesis=previous_genesis, previous_height=previous_height
        )

    logger.warning(
        "Ledger restart detected (%s): genesis %s→%s, height %d→%d. Clearing stored state.",
        reason, previous_genesis[:16], genesis_hash[:16], previous_height, height,
    )
    await clear_all_data(session)
    meta.genesis_hash = genesis_hash
    meta.last_block_number = height
    meta.last_event_height = 0
    await session.flush()
    return RestartCheck(
        restarted=True,
        reason=reason,
        previous_genesis=previous_genesis,
        previous_height=previous_height,
    )
