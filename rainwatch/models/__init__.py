from rainwatch.models.chain import ChainMeta
from rainwatch.models.ingest import ObservationRecord, SnapshotRecord
from rainwatch.models.monitor import (
    EvidenceRecord,
    Monitor,
    MonitorBucket,
    MonitorState,
    make_monitor_id,
)
from rainwatch.models.rainfall import RainBucket, RollingWindowState

__all__ = [
    "ChainMeta",
    "EvidenceRecord",
    "Monitor",
    "MonitorBucket",
    "MonitorState",
    "ObservationRecord",
    "RainBucket",
    "RollingWindowState",
    "SnapshotRecord",
    "make_monitor_id",
]
