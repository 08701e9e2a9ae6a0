"""Inbound contract-lifecycle messages from the settlement ledger.

Raw events arrive as ``{"type": ..., "height": ..., "data": {...}}``.  They are
parsed into one dataclass per event type and handed to
``monitor_engine.dispatch_event``; unknown types are ignored.
"""

import logging
from dataclasses import dataclass
from typing import Any, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContractCreated:
    contract_id: int
    location_id: str
    coverage_start: int
    coverage_end: int
    strike_tenths_mm: int
    lat: int = 0
    lon: int = 0
    height: int = 0


@dataclass(frozen=True)
class ContractSettled:
    contract_id: int
    outcome: str
    cumulative_tenths_mm: int
    evidence_hash: str
    location_id: str | None = None
    height: int = 0


LedgerEvent = Union[ContractCreated, ContractSettled]


def parse_event(raw: Any) -> LedgerEvent | None:
    """Build a typed event from the ledger's JSON, or None if it is not ours or malformed."""
    if not isinstance(raw, dict):
        logger.warning("Dropping non-object ledger event: %r", raw)
        return None
    kind = raw.get("type")
    data = raw.get("data") or {}
    height: Any = raw.get("height", 0)
    try:
        height = int(height)
        if not isinstance(data, dict):
            raise TypeError(f"data is {type(data).__name__}, not an object")
        if kind == "ContractCreated":
            return ContractCreated(
                contract_id=int(data["contract_id"]),
                location_id=str(data["location_id"]),
                coverage_start=int(data["coverage_start"]),
                coverage_end=int(data["coverage_end"]),
                strike_tenths_mm=int(data["strike_tenths_mm"]),
                lat=int(data.get("lat", 0)),
                lon=int(data.get("lon", 0)),
                height=height,
            )
        if kind == "ContractSettled":
            location = data.get("location_id")
            return ContractSettled(
                contract_id=int(data["contract_id"]),
                outcome=str(data["outcome"]),
                cumulative_tenths_mm=int(data.get("cumulative_tenths_mm", 0)),
                evidence_hash=str(data.get("evidence_hash", "")),
                location_id=str(location) if location is not None else None,
                height=height,
            )
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning("Dropping malformed %s event at height %r: %s", kind, height, exc)
        return None

    logger.debug("Ignoring ledger event type %r", kind)
    return None
