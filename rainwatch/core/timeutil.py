"""Time helpers. Contract and rainfall times are unix seconds in UTC."""

from datetime import datetime, timezone

HOUR_SECS = 3600


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ts() -> int:
    return int(utcnow().timestamp())


def hour_floor(ts: int) -> int:
    return ts - ts % HOUR_SECS


def to_iso(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def hour_key(ts: int) -> str:
    """Compact hour label used in bucket ids, e.g. ``2025122100``."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y%m%d%H")


def parse_observation_time(value: str) -> int:
    """Parse a provider ISO-8601 timestamp (with offset) into unix seconds."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())
