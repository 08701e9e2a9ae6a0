"""Authenticated ingest endpoints for the remote reporting process.

Writes require a signed request (see ``services.ingest_auth``).  Reads are
open, like the rest of the monitor API.
"""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from rainwatch.api.schemas import (
    IngestStatsResponse,
    ObservationBatch,
    ObservationBatchResponse,
    ObservationResponse,
    SnapshotCreate,
    SnapshotCreateResponse,
    SnapshotResponse,
)
from rainwatch.core.database import get_session
from rainwatch.services import ingest_store
from rainwatch.services.ingest_auth import (
    AuthResult,
    IngestAuthenticator,
    get_authenticator,
    require_ingest_auth,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ingest", tags=["ingest"])


@router.post(
    "/observations/batch",
    response_model=ObservationBatchResponse,
    summary="Store a signed batch of observations",
)
async def ingest_observations(
    body: ObservationBatch,
    auth: AuthResult = Depends(require_ingest_auth),
    session: AsyncSession = Depends(get_session),
) -> ObservationBatchResponse:
    result = await ingest_store.store_observation_batch(
        session,
        contract_id=body.contract_id,
        samples=body.samples,
        location_key=body.location_key,
        commitment_after=body.commitment_after,
    )
    logger.debug("Batch from %s accepted via %s", auth.client, auth.scheme)
    return ObservationBatchResponse(**result.to_dict())


@router.post(
    "/snapshots",
    response_model=SnapshotCreateResponse,
    summary="Store a signed aggregate snapshot",
)
async def ingest_snapshot(
    body: SnapshotCreate,
    auth: AuthResult = Depends(require_ingest_auth),
    session: AsyncSession = Depends(get_session),
) -> SnapshotCreateResponse:
    record, is_new = await ingest_store.store_snapshot(
        session,
        contract_id=body.contract_id,
        observed_until=body.observed_until,
        commitment=body.commitment,
        agg_state=body.agg_state,
    )
    return SnapshotCreateResponse(id=record.id, is_new=is_new)


@router.get(
    "/observations/{contract_id}",
    response_model=list[ObservationResponse],
    summary="Latest observations for a contract",
)
async def get_observations(
    contract_id: int,
    limit: int = Query(default=100, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
) -> list[ObservationResponse]:
    records = await ingest_store.list_observations(session, contract_id, limit)
    return [ObservationResponse.model_validate(r) for r in records]


@router.get(
    "/snapshots/{contract_id}",
    response_model=list[SnapshotResponse],
    summary="Latest snapshots for a contract",
)
async def get_snapshots(
    contract_id: int,
    limit: int = Query(default=20, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
) -> list[SnapshotResponse]:
    records = await ingest_store.list_snapshots(session, contract_id, limit)
    return [SnapshotResponse.model_validate(r) for r in records]


@router.get("/stats", response_model=IngestStatsResponse, summary="Stored record counts")
async def ingest_stats(
    authenticator: IngestAuthenticator = Depends(get_authenticator),
    session: AsyncSession = Depends(get_session),
) -> IngestStatsResponse:
    counts = await ingest_store.counts(session)
    return IngestStatsResponse(**counts, nonces_cached=len(authenticator.nonces))
