"""Hourly rain buckets and the per-location rolling window state.

Buckets are keyed by ``(location_id, bucket_index)`` where
``bucket_index = timestamp // 3600``.  A later submission for the same hour
overwrites the earlier one (a correction), it never adds to it.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from rainwatch.core.database import Base
from rainwatch.core.timeutil import utcnow


class RainBucket(Base):
    __tablename__ = "rain_buckets"

    # "location_id:bucket_index"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    location_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    bucket_index: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    bucket_start_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    rainfall_tenths_mm: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<RainBucket {self.location_id}#{self.bucket_index} "
            f"rain={self.rainfall_tenths_mm / 10:.1f}mm>"
        )


class RollingWindowState(Base):
    __tablename__ = "rolling_window_states"

    location_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_bucket_index: Mapped[int] = mapped_column(BigInteger, nullable=False)
    oldest_bucket_index: Mapped[int] = mapped_column(BigInteger, nullable=False)
    rolling_sum_tenths_mm: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<RollingWindowState {self.location_id} "
            f"[{self.oldest_bucket_index}..{self.last_bucket_index}] "
            f"sum={self.rolling_sum_tenths_mm / 10:.1f}mm>"
        )
