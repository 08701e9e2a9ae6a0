"""Ledger identity recorded between runs, used to detect chain resets."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from rainwatch.core.database import Base
from rainwatch.core.timeutil import utcnow

CHAIN_META_ID = "chain_info"


class ChainMeta(Base):
    __tablename__ = "chain_meta"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=CHAIN_META_ID)
    genesis_hash: Mapped[str] = mapped_column(String(130), nullable=False)
    last_block_number: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    # Highest event height already dispatched by the ledger listener
    last_event_height: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
