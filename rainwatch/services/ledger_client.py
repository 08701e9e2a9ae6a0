"""HTTP client for the settlement ledger's JSON gateway.

The ledger owns contract bookkeeping; Rainwatch only reads its identity and
event stream and submits settlement reports:

- ``GET  /chain/info``                    → ``{"genesis_hash", "height"}``
- ``GET  /events?since=H``                → ``{"height", "events": [...]}``
- ``GET  /contracts/{id}/report``         → 404 until a report exists
- ``POST /contracts/{id}/report``         → ``{"accepted", "tx_hash"}``
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from rainwatch.core.config import settings
from rainwatch.core.errors import UpstreamError

logger = logging.getLogger(__name__)


class LedgerError(UpstreamError):
    code = "LEDGER_ERROR"

    def __init__(self, status: int, detail: str):
        self.status = status
        self.detail = detail
        super().__init__(f"Ledger {status}: {detail}")


@dataclass
class ChainInfo:
    genesis_hash: str
    height: int


@dataclass
class EventPage:
    height: int
    events: list[dict[str, Any]]


def _base() -> str:
    return settings.ledger_url.rstrip("/")


def _wrap_transport_error(exc: httpx.HTTPError) -> LedgerError:
    return LedgerError(0, f"Ledger at {_base()} failed: {type(exc).__name__}: {exc}")


async def _request(method: str, path: str, **kwargs: Any) -> httpx.Response:
    try:
        async with httpx.AsyncClient(timeout=settings.ledger_timeout_seconds) as client:
            return await client.request(method, f"{_base()}{path}", **kwargs)
    except httpx.HTTPError as exc:
        raise _wrap_transport_error(exc) from exc


def _json_object(resp: httpx.Response) -> dict[str, Any]:
    """Decode a JSON object body; anything else is a ledger fault."""
    try:
        data = resp.json()
    except ValueError as exc:
        raise LedgerError(resp.status_code, f"Non-JSON reply: {resp.text[:200]!r}") from exc
    if not isinstance(data, dict):
        raise LedgerError(resp.status_code, f"Expected a JSON object, got {type(data).__name__}")
    return data


async def get_chain_info() -> ChainInfo:
    """GET /chain/info: genesis identifier and current height."""
    resp = await _request("GET", "/chain/info")
    if resp.status_code >= 400:
        raise LedgerError(resp.status_code, resp.text)
    data = _json_object(resp)
    try:
        return ChainInfo(genesis_hash=str(data["genesis_hash"]), height=int(data["height"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise LedgerError(resp.status_code, f"Malformed chain info: {data!r}") from exc


async def fetch_events(since_height: int) -> EventPage:
    """GET /events: contract-lifecycle events strictly above ``since_height``."""
    resp = await _request("GET", "/events", params={"since": since_height})
    if resp.status_code >= 400:
        raise LedgerError(resp.status_code, resp.text)
    data = _json_object(resp)
    events = data.get("events") or []
    if not isinstance(events, list):
        raise LedgerError(resp.status_code, "Malformed event page: events is not a list")
    try:
        height = int(data.get("height", since_height))
    except (TypeError, ValueError) as exc:
        raise LedgerError(resp.status_code, f"Malformed event page height: {exc}") from exc
    return EventPage(height=height, events=events)


async def report_exists(contract_id: int) -> bool:
    """GET /contracts/{id}/report: True once the ledger holds a settlement report."""
    resp = await _request("GET", f"/contracts/{contract_id}/report")
    if resp.status_code == 404:
        return False
    if resp.status_code >= 400:
        raise LedgerError(resp.status_code, resp.text)
    return True


async def submit_report(
    contract_id: int,
    outcome: str,
    observed_at: int,
    cumulative_tenths_mm: int,
    evidence_hash: str,
) -> str:
    """POST /contracts/{id}/report: returns the transaction hash once accepted."""
    payload = {
        "outcome": outcome,
        "observed_at": observed_at,
        "cumulative_tenths_mm": cumulative_tenths_mm,
        "evidence_hash": evidence_hash,
        "reporter": settings.reporter_account,
    }
    resp = await _request("POST", f"/contracts/{contract_id}/report", json=payload)
    if resp.status_code >= 400:
        raise LedgerError(resp.status_code, resp.text)

    data = _json_object(resp)
    if not data.get("accepted", False):
        raise LedgerError(resp.status_code, data.get("error") or "Report rejected by ledger")
    tx_hash = data.get("tx_hash")
    if not tx_hash:
        raise LedgerError(resp.status_code, "Ledger accepted the report without a tx hash")
    return str(tx_hash)


async def probe(timeout: float = 3.0) -> bool:
    """Connectivity check for health reporting; never raises."""
    try:
        await asyncio.wait_for(get_chain_info(), timeout=timeout)
    except (LedgerError, asyncio.TimeoutError) as exc:
        logger.debug("Ledger probe failed: %s", exc)
        return False
    return True
