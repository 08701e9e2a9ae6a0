"""Per-subsystem health for ``/admin/health``."""

import logging
from typing import Any

from rainwatch.core import database
from rainwatch.core.config import settings
from rainwatch.core.timeutil import now_ts, to_iso
from rainwatch.services import ingest_store, ledger_client
from rainwatch.services.ingest_auth import IngestAuthenticator
from rainwatch.services.ledger_listener import LedgerListener
from rainwatch.services.scheduler import SchedulerLoop

logger = logging.getLogger(__name__)


def _status(ok: bool) -> str:
    return "online" if ok else "offline"


async def collect(
    scheduler: SchedulerLoop | None = None,
    listener: LedgerListener | None = None,
    authenticator: IngestAuthenticator | None = None,
) -> dict[str, Any]:
    now = now_ts()
    db_ok = await database.ping()
    ledger_ok = await ledger_client.probe()

    report: dict[str, Any] = {
        "status": "ok" if db_ok and ledger_ok else "degraded",
        "checked_at": to_iso(now),
        "environment": settings.environment,
        "database": _status(db_ok),
        "ledger": _status(ledger_ok),
        "weather_provider": "configured" if settings.weather_api_key else "not_configured",
    }

    if scheduler is not None:
        last = scheduler.last_success_at
        report["scheduler"] = {
            "running": scheduler.running,
            "cycles": scheduler.cycles,
            "last_success_at": to_iso(last) if last else None,
            "seconds_since_last_success": now - last if last else None,
            "last_error": scheduler.last_error,
        }

    if listener is not None:
        report["ledger_listener"] = {
            "connected": listener.connected,
            "events_applied": listener.events_applied,
        }

    if authenticator is not None:
        report["ingest"] = {
            "auth_mode": "dev" if authenticator.disabled else "strict",
            "nonces_cached": len(authenticator.nonces),
        }

    if db_ok:
        async with database.get_session_factory()() as session:
            report.setdefault("ingest", {}).update(await ingest_store.freshness(session))

    return report
