"""Rainwatch: rainfall monitoring and settlement reporting for parametric cover.

Watches insurance contracts announced on the settlement ledger, tracks the
rainfall at each contract's location through its coverage window, and reports
``Triggered`` or ``MaturedNoEvent`` back to the ledger with a hashed evidence
record.

Background work runs inside FastAPI's lifespan:

- the ledger listener (restart check on connect, then event polling)
- the scheduler (evaluation cycle at startup, then every polling interval)
- the ingest nonce sweep
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rainwatch.api.admin import router as admin_router
from rainwatch.api.ingest import router as ingest_router
from rainwatch.api.routes import router as api_router
from rainwatch.core import database
from rainwatch.core.config import settings
from rainwatch.core.errors import register_error_handlers
from rainwatch.core.middleware import RequestLoggingMiddleware
from rainwatch.services.ingest_auth import IngestAuthenticator
from rainwatch.services.ledger_listener import LedgerListener
from rainwatch.services.scheduler import IntervalTicker, SchedulerLoop

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)

logger = logging.getLogger(__name__)


TAGS_METADATA = [
    {"name": "monitors", "description": "Contract monitors, evaluation and backfill."},
    {"name": "rainfall", "description": "Location-wide rolling 24h rainfall."},
    {"name": "ingest", "description": "Signed observation and snapshot ingest."},
    {"name": "admin", "description": "Destructive operations and extended health. Requires admin secret."},
    {"name": "ops", "description": "Health checks."},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Rainwatch (environment=%s)", settings.environment)
    await database.init_models()

    authenticator = IngestAuthenticator.from_settings()
    authenticator.start()
    app.state.ingest_auth = authenticator

    listener = LedgerListener(settings.event_poll_interval_seconds)
    listener.start()
    app.state.listener = listener

    scheduler = SchedulerLoop(IntervalTicker(settings.polling_interval_seconds))
    app.state.scheduler = scheduler
    if settings.scheduler_enabled:
        scheduler.start()
    else:
        logger.info("Scheduler disabled; cycles run only via /monitors/trigger-all")

    yield

    await scheduler.stop()
    await listener.stop()
    await authenticator.stop()
    await database.dispose()
    logger.info("Rainwatch shut down")


app = FastAPI(
    title="Rainwatch",
    version="0.1.0",
    description=__doc__,
    openapi_tags=TAGS_METADATA,
    lifespan=lifespan,
)

register_error_handlers(app)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)
app.include_router(ingest_router)
app.include_router(admin_router)


@app.get("/health", tags=["ops"])
async def health() -> dict[str, str]:
    return {"status": "ok", "service": "rainwatch"}
