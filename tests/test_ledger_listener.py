"""Tests for ledger event parsing and the polling listener."""

from unittest.mock import AsyncMock, patch

import pytest

from rainwatch.models.chain import CHAIN_META_ID, ChainMeta
from rainwatch.models.monitor import Monitor, MonitorState
from rainwatch.services.ledger_client import ChainInfo, EventPage, LedgerError
from rainwatch.services.ledger_events import ContractCreated, ContractSettled, parse_event
from rainwatch.services.ledger_listener import LedgerListener
from tests.conftest import BASE_TS, DAY, make_monitor

GENESIS = "0x" + "aa" * 32


def _created(contract_id=1, height=5, **overrides):
    data = {
        "contract_id": contract_id,
        "location_id": "manila",
        "coverage_start": BASE_TS,
        "coverage_end": BASE_TS + 3 * DAY,
        "strike_tenths_mm": 500,
        "lat": 14_599_500,
        "lon": 120_984_200,
        **overrides,
    }
    return {"type": "ContractCreated", "height": height, "data": data}


def _settled(contract_id=1, height=9):
    return {
        "type": "ContractSettled",
        "height": height,
        "data": {
            "contract_id": contract_id,
            "outcome": "Triggered",
            "cumulative_tenths_mm": 610,
            "evidence_hash": "cd" * 32,
        },
    }


@pytest.fixture
def chain():
    with patch(
        "rainwatch.services.ledger_client.get_chain_info", new_callable=AsyncMock
    ) as info, patch(
        "rainwatch.services.ledger_client.fetch_events", new_callable=AsyncMock
    ) as events, patch(
        "rainwatch.services.weather_client.location_key_for", new_callable=AsyncMock
    ) as key, patch(
        "rainwatch.services.weather_client.fetch_historical_24h", new_callable=AsyncMock
    ) as history:
        info.return_value = ChainInfo(genesis_hash=GENESIS, height=10)
        events.return_value = EventPage(height=10, events=[])
        key.return_value = "264885"
        history.return_value = []
        yield info, events


class TestParseEvent:
    def test_contract_created(self):
        event = parse_event(_created(contract_id=3, height=7))
        assert isinstance(event, ContractCreated)
        assert event.contract_id == 3
        assert event.strike_tenths_mm == 500
        assert event.height == 7

    def test_contract_settled_without_location(self):
        event = parse_event(_settled())
        assert isinstance(event, ContractSettled)
        assert event.location_id is None
        assert event.outcome == "Triggered"

    def test_unknown_type_ignored(self):
        assert parse_event({"type": "PolicyPaid", "height": 1, "data": {}}) is None

    def test_malformed_event_dropped(self):
        raw = _created()
        del raw["data"]["strike_tenths_mm"]
        assert parse_event(raw) is None

    def test_non_numeric_height_dropped(self):
        assert parse_event({"type": "ContractCreated", "height": None, "data": {}}) is None
        assert parse_event({"type": "ContractSettled", "height": "abc", "data": {}}) is None

    @pytest.mark.parametrize("raw", [None, "ContractCreated", ["ContractCreated"], 7])
    def test_non_object_event_dropped(self, raw):
        assert parse_event(raw) is None

    def test_non_object_data_dropped(self):
        assert parse_event({"type": "ContractSettled", "height": 4, "data": "oops"}) is None


class TestPollOnce:
    @pytest.mark.asyncio
    async def test_first_poll_connects_and_records_chain(self, session_factory, chain):
        info, events = chain
        listener = LedgerListener(1, session_factory)

        await listener.poll_once()

        assert listener.connected
        assert not listener.last_restart.restarted
        events.assert_awaited_once_with(0)
        async with session_factory() as session:
            meta = await session.get(ChainMeta, CHAIN_META_ID)
            assert meta.genesis_hash == GENESIS
            assert meta.last_event_height == 10

    @pytest.mark.asyncio
    async def test_applies_events_and_advances_height(self, session_factory, chain):
        info, events = chain
        events.return_value = EventPage(height=12, events=[_created(), _settled()])
        listener = LedgerListener(1, session_factory)

        applied = await listener.poll_once()

        assert applied == 2
        async with session_factory() as session:
            monitor = await session.get(Monitor, "manila:1")
            assert monitor.state == MonitorState.REPORTED
            assert monitor.cumulative_tenths_mm == 610
            assert (await session.get(ChainMeta, CHAIN_META_ID)).last_event_height == 12

        events.return_value = EventPage(height=12, events=[])
        await listener.poll_once()
        events.assert_awaited_with(12)

    @pytest.mark.asyncio
    async def test_rejected_event_skipped_rest_applied(self, session_factory, chain):
        info, events = chain
        bad = _created(contract_id=2, coverage_end=BASE_TS)
        events.return_value = EventPage(height=11, events=[bad, _created(contract_id=3)])
        listener = LedgerListener(1, session_factory)

        assert await listener.poll_once() == 1
        async with session_factory() as session:
            assert await session.get(Monitor, "manila:2") is None
            assert await session.get(Monitor, "manila:3") is not None

    @pytest.mark.asyncio
    async def test_malformed_height_dropped_rest_applied(self, session_factory, chain):
        info, events = chain
        broken = {"type": "ContractCreated", "height": None, "data": {}}
        events.return_value = EventPage(height=11, events=[broken, "garbage", _created(contract_id=4)])
        listener = LedgerListener(1, session_factory)

        assert await listener.poll_once() == 1
        async with session_factory() as session:
            assert await session.get(Monitor, "manila:4") is not None
            assert (await session.get(ChainMeta, CHAIN_META_ID)).last_event_height == 11

    @pytest.mark.asyncio
    async def test_reset_ledger_wipes_state_on_connect(self, session_factory, chain):
        info, events = chain
        async with session_factory() as session:
            session.add(ChainMeta(id=CHAIN_META_ID, genesis_hash="0xold", last_block_number=500))
            session.add(make_monitor())
            await session.commit()
        listener = LedgerListener(1, session_factory)

        await listener.poll_once()

        assert listener.last_restart.restarted
        assert listener.last_restart.reason == "genesis_changed"
        async with session_factory() as session:
            assert await session.get(Monitor, "manila:1") is None

    @pytest.mark.asyncio
    async def test_ledger_error_propagates_and_leaves_disconnected(self, session_factory, chain):
        info, events = chain
        info.side_effect = LedgerError(0, "connection refused")
        listener = LedgerListener(1, session_factory)

        with pytest.raises(LedgerError):
            await listener.poll_once()
        assert not listener.connected
