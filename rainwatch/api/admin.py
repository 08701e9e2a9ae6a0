"""Operator endpoints: destructive resets and extended health.

Protected by ADMIN_SECRET, passed as ``Authorization: Bearer <ADMIN_SECRET>``.
"""

from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from rainwatch.api.schemas import MonitorResponse
from rainwatch.core.config import settings
from rainwatch.core.database import get_session
from rainwatch.models.monitor import Monitor
from rainwatch.services import health, monitor_engine, restart_detector

logger = logging.getLogger(__name__)

admin_scheme = HTTPBearer(
    scheme_name="Admin Secret",
    description="Pass the admin secret as: `Authorization: Bearer <ADMIN_SECRET>`",
)


async def require_admin(
    credentials: HTTPAuthorizationCredentials = Security(admin_scheme),
) -> bool:
    if not secrets.compare_digest(credentials.credentials, settings.admin_secret):
        raise HTTPException(
            status_code=403,
            detail={"code": "FORBIDDEN", "message": "Invalid admin secret."},
        )
    return True


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post(
    "/clear-database",
    summary="Delete all monitors, buckets, evidence and rolling rainfall state",
)
async def clear_database(session: AsyncSession = Depends(get_session)) -> dict:
    removed = await restart_detector.clear_all_data(session)
    logger.warning("Database cleared by operator: %s", removed)
    return {"cleared": True, "removed": removed}


@router.post(
    "/monitors/{monitor_id}/reset",
    response_model=MonitorResponse,
    summary="Move a monitor back to monitoring",
    description=(
        "Clears trigger time and report fields so the monitor is evaluated and "
        "reported again. Intended for retrying a failed or disputed report."
    ),
)
async def reset_monitor(
    monitor_id: str,
    session: AsyncSession = Depends(get_session),
) -> Monitor:
    return await monitor_engine.reset_monitor(session, monitor_id)


@router.get("/health", summary="Per-subsystem status and freshness")
async def admin_health(request: Request) -> dict:
    state = request.app.state
    return await health.collect(
        scheduler=getattr(state, "scheduler", None),
        listener=getattr(state, "listener", None),
        authenticator=getattr(state, "ingest_auth", None),
    )
