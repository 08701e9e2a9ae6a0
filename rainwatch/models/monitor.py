"""Monitor model: the off-chain tracking record for one insurance contract.

A monitor is created when the ledger emits ``ContractCreated`` and then
walks a small state machine:

    monitoring ──► triggered ──► reported
         └───────► matured ───┘

Monitors are never deleted during normal operation; together with their
hourly buckets and evidence records they form the audit trail.  Only a
ledger reset (see ``restart_detector``) or an explicit admin clear removes
them.
"""

import enum
from datetime import datetime

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from rainwatch.core.database import Base
from rainwatch.core.timeutil import utcnow


class MonitorState(str, enum.Enum):
    MONITORING = "monitoring"
    TRIGGERED = "triggered"    # strike met inside the coverage window
    MATURED = "matured"        # coverage ended without an event
    REPORTED = "reported"      # report accepted by the ledger (terminal)


def make_monitor_id(location_id: str, contract_id: int) -> str:
    return f"{location_id}:{contract_id}"


class Monitor(Base):
    __tablename__ = "monitors"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    location_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    contract_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)

    coverage_start: Mapped[int] = mapped_column(BigInteger, nullable=False)
    coverage_end: Mapped[int] = mapped_column(BigInteger, nullable=False)
    strike_tenths_mm: Mapped[int] = mapped_column(Integer, nullable=False)

    # Microdegrees, as emitted by the ledger
    lat: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    lon: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    state: Mapped[MonitorState] = mapped_column(
        Enum(
            MonitorState,
            name="monitor_state",
            values_callable=lambda obj: [e.value for e in obj],
        ),
        nullable=False,
        default=MonitorState.MONITORING,
        index=True,
    )
    cumulative_tenths_mm: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trigger_time: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_fetch_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    location_key: Mapped[str] = mapped_column(String(32), nullable=False)

    report_tx_hash: Mapped[str | None] = mapped_column(String(130), nullable=True)
    evidence_hash: Mapped[str | None] = mapped_column(String(130), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<Monitor {self.id} {self.state.value} "
            f"cum={self.cumulative_tenths_mm / 10:.1f}mm strike={self.strike_tenths_mm / 10:.1f}mm>"
        )


class MonitorBucket(Base):
    """One hour of rainfall scoped to a monitor's coverage window."""

    __tablename__ = "monitor_buckets"

    # "monitor_id:YYYYMMDDHH"
    id: Mapped[str] = mapped_column(String(96), primary_key=True)
    monitor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    hour_start: Mapped[int] = mapped_column(BigInteger, nullable=False)
    rainfall_tenths_mm: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # True for a zero-fill placeholder, False for real upstream data
    backfilled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    raw_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        flag = " (backfilled)" if self.backfilled else ""
        return f"<MonitorBucket {self.id} {self.rainfall_tenths_mm / 10:.1f}mm{flag}>"


class EvidenceRecord(Base):
    """Evidence JSON whose hash was submitted to the ledger with a report."""

    __tablename__ = "evidence_records"

    evidence_hash: Mapped[str] = mapped_column(String(130), primary_key=True)
    monitor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
