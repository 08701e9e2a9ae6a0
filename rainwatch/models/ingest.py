"""Append-only records pushed through the authenticated ingest gateway.

Observations are keyed by ``contract_id:epoch_time`` and snapshots by
``contract_id:observed_until``; a repeated delivery never overwrites the
first copy.  Both expire after a fixed retention period.
"""

from datetime import datetime

from sqlalchemy import JSON, BigInteger, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from rainwatch.core.database import Base
from rainwatch.core.timeutil import utcnow


class ObservationRecord(Base):
    __tablename__ = "ingest_observations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    contract_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    epoch_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    location_key: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    fields: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    sample_hash: Mapped[str] = mapped_column(String(130), nullable=False, default="")
    commitment_after: Mapped[str] = mapped_column(String(130), nullable=False, default="")

    # Retention: 30 days (see ingest_store.prune_expired)
    inserted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True
    )

    def __repr__(self) -> str:
        return f"<Observation {self.id} fields={sorted(self.fields)}>"


class SnapshotRecord(Base):
    __tablename__ = "ingest_snapshots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    contract_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    observed_until: Mapped[int] = mapped_column(BigInteger, nullable=False)
    agg_state: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    commitment: Mapped[str] = mapped_column(String(130), nullable=False)

    # Retention: 90 days
    inserted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, index=True
    )

    def __repr__(self) -> str:
        return f"<Snapshot {self.id} commitment={self.commitment[:12]}...>"
