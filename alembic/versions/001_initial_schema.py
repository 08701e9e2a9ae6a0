"""Initial schema: rain buckets, monitors, evidence, ingest records, chain meta.

Revision ID: 001
Revises:
Create Date: 2025-12-21
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "rain_buckets",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("location_id", sa.String(32), nullable=False, index=True),
        sa.Column("bucket_index", sa.BigInteger, nullable=False, index=True),
        sa.Column("bucket_start_time", sa.BigInteger, nullable=False),
        sa.Column("rainfall_tenths_mm", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "rolling_window_states",
        sa.Column("location_id", sa.String(32), primary_key=True),
        sa.Column("last_bucket_index", sa.BigInteger, nullable=False),
        sa.Column("oldest_bucket_index", sa.BigInteger, nullable=False),
        sa.Column("rolling_sum_tenths_mm", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "monitors",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("location_id", sa.String(32), nullable=False, index=True),
        sa.Column("contract_id", sa.BigInteger, nullable=False, index=True),
        sa.Column("coverage_start", sa.BigInteger, nullable=False),
        sa.Column("coverage_end", sa.BigInteger, nullable=False),
        sa.Column("strike_tenths_mm", sa.Integer, nullable=False),
        sa.Column("lat", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("lon", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column(
            "state",
            sa.Enum("monitoring", "triggered", "matured", "reported", name="monitor_state"),
            nullable=False,
            server_default="monitoring",
            index=True,
        ),
        sa.Column("cumulative_tenths_mm", sa.Integer, nullable=False, server_default="0"),
        sa.Column("trigger_time", sa.BigInteger, nullable=True),
        sa.Column("last_fetch_at", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("location_key", sa.String(32), nullable=False),
        sa.Column("report_tx_hash", sa.String(130), nullable=True),
        sa.Column("evidence_hash", sa.String(130), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "monitor_buckets",
        sa.Column("id", sa.String(96), primary_key=True),
        sa.Column("monitor_id", sa.String(64), nullable=False, index=True),
        sa.Column("hour_start", sa.BigInteger, nullable=False),
        sa.Column("rainfall_tenths_mm", sa.Integer, nullable=False, server_default="0"),
        sa.Column("backfilled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("raw_data", postgresql.JSON, nullable=True),
        sa.Column("fetched_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "evidence_records",
        sa.Column("evidence_hash", sa.String(130), primary_key=True),
        sa.Column("monitor_id", sa.String(64), nullable=False, index=True),
        sa.Column("payload", postgresql.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "ingest_observations",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("contract_id", sa.BigInteger, nullable=False, index=True),
        sa.Column("epoch_time", sa.BigInteger, nullable=False),
        sa.Column("location_key", sa.String(32), nullable=False, server_default=""),
        sa.Column("fields", postgresql.JSON, nullable=False),
        sa.Column("sample_hash", sa.String(130), nullable=False, server_default=""),
        sa.Column("commitment_after", sa.String(130), nullable=False, server_default=""),
        sa.Column(
            "inserted_at", sa.DateTime(timezone=True), server_default=sa.func.now(), index=True
        ),
    )

    op.create_table(
        "ingest_snapshots",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("contract_id", sa.BigInteger, nullable=False, index=True),
        sa.Column("observed_until", sa.BigInteger, nullable=False),
        sa.Column("agg_state", postgresql.JSON, nullable=False),
        sa.Column("commitment", sa.String(130), nullable=False),
        sa.Column(
            "inserted_at", sa.DateTime(timezone=True), server_default=sa.func.now(), index=True
        ),
    )

    op.create_table(
        "chain_meta",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("genesis_hash", sa.String(130), nullable=False),
        sa.Column("last_block_number", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("last_event_height", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Window scans walk a location's buckets by index
    op.create_index(
        "ix_rain_buckets_location_index",
        "rain_buckets",
        ["location_id", "bucket_index"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("ix_rain_buckets_location_index", table_name="rain_buckets")
    op.drop_table("chain_meta")
    op.drop_table("ingest_snapshots")
    op.drop_table("ingest_observations")
    op.drop_table("evidence_records")
    op.drop_table("monitor_buckets")
    op.drop_table("monitors")
    op.drop_table("rolling_window_states")
    op.drop_table("rain_buckets")
    op.execute("DROP TYPE IF EXISTS monitor_state")
