"""Shared test fixtures for the Rainwatch test suite.

Database-backed tests run against an in-memory SQLite database through
aiosqlite, so no PostgreSQL instance is needed.  Upstream services (weather
provider, ledger) are always mocked.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("ADMIN_SECRET", "test-admin-secret")

from datetime import datetime, timezone  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import rainwatch.models  # noqa: E402,F401
from rainwatch.core.database import Base  # noqa: E402
from rainwatch.core.hashing import sign_ingest_payload  # noqa: E402
from rainwatch.core.timeutil import hour_key  # noqa: E402
from rainwatch.models.monitor import Monitor, MonitorBucket, MonitorState, make_monitor_id  # noqa: E402
from rainwatch.services.ledger_events import ContractCreated, ContractSettled  # noqa: E402
from rainwatch.services.weather_client import PrecipitationRecord  # noqa: E402

HOUR = 3600
DAY = 24 * HOUR

# 2025-12-21T00:00:00Z, aligned to an hour boundary
BASE_TS = 1_766_275_200

TEST_SECRET = "test-ingest-secret-that-is-long-enough-123"


# ── Factory helpers ───────────────────────────────────────────────────────────


def make_monitor(
    location_id: str = "manila",
    contract_id: int = 1,
    coverage_start: int = BASE_TS,
    coverage_end: int = BASE_TS + 3 * DAY,
    strike_tenths_mm: int = 500,
    state: MonitorState = MonitorState.MONITORING,
    cumulative_tenths_mm: int = 0,
    last_fetch_at: int = 0,
    location_key: str = "264885",
    trigger_time: int | None = None,
) -> Monitor:
    """Create a Monitor instance for testing."""
    now = datetime.now(timezone.utc)
    return Monitor(
        id=make_monitor_id(location_id, contract_id),
        location_id=location_id,
        contract_id=contract_id,
        coverage_start=coverage_start,
        coverage_end=coverage_end,
        strike_tenths_mm=strike_tenths_mm,
        lat=14_599_500,
        lon=120_984_200,
        state=state,
        cumulative_tenths_mm=cumulative_tenths_mm,
        trigger_time=trigger_time,
        last_fetch_at=last_fetch_at,
        location_key=location_key,
        created_at=now,
        updated_at=now,
    )


def make_bucket(
    monitor: Monitor, hour_start: int, rainfall_tenths_mm: int, backfilled: bool = False
) -> MonitorBucket:
    return MonitorBucket(
        id=f"{monitor.id}:{hour_key(hour_start)}",
        monitor_id=monitor.id,
        hour_start=hour_start,
        rainfall_tenths_mm=rainfall_tenths_mm,
        backfilled=backfilled,
        raw_data=None,
        fetched_at=datetime.now(timezone.utc),
    )


def make_record(observed_at: int, precipitation_mm: float) -> PrecipitationRecord:
    return PrecipitationRecord(
        observed_at=observed_at,
        precipitation_mm=precipitation_mm,
        raw_data={"PrecipitationSummary": {"PastHour": {"Metric": {"Value": precipitation_mm}}}},
    )


def contract_created(
    contract_id: int = 1,
    location_id: str = "manila",
    coverage_start: int = BASE_TS,
    coverage_end: int = BASE_TS + 3 * DAY,
    strike_tenths_mm: int = 500,
) -> ContractCreated:
    return ContractCreated(
        contract_id=contract_id,
        location_id=location_id,
        coverage_start=coverage_start,
        coverage_end=coverage_end,
        strike_tenths_mm=strike_tenths_mm,
        lat=14_599_500,
        lon=120_984_200,
    )


def contract_settled(
    contract_id: int = 1,
    outcome: str = "Triggered",
    cumulative_tenths_mm: int = 520,
    evidence_hash: str = "ab" * 32,
) -> ContractSettled:
    return ContractSettled(
        contract_id=contract_id,
        outcome=outcome,
        cumulative_tenths_mm=cumulative_tenths_mm,
        evidence_hash=evidence_hash,
    )


def signed_headers(
    body: Any,
    timestamp_ms: int,
    nonce: str,
    secret: str = TEST_SECRET,
    scheme: str = "blake2",
) -> dict[str, str]:
    """Headers a trusted reporter would attach to an ingest request."""
    ts = str(timestamp_ms)
    return {
        "x-hmac-signature": sign_ingest_payload(secret, body, ts, nonce, scheme),
        "x-timestamp": ts,
        "x-nonce": nonce,
    }


# ── Fixtures ──────────────────────────────────────────────────────────────────


@pytest.fixture
async def session_factory():
    """Session factory bound to a fresh in-memory database."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; emit it ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _no_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
