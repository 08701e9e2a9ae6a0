"""Polls the ledger for contract-lifecycle events and dispatches them.

On the first successful contact the listener runs the restart check, so a
reset ledger is detected before any of its events are applied.  After that
each poll reads events above the stored ``last_event_height`` and hands them
to ``monitor_engine.dispatch_event``.  An event the engine rejects is logged
and skipped; the rest of the page still applies.
"""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rainwatch.core.database import get_session_factory
from rainwatch.core.errors import RainwatchError
from rainwatch.models.chain import CHAIN_META_ID, ChainMeta
from rainwatch.services import ledger_client, monitor_engine, restart_detector
from rainwatch.services.ledger_client import LedgerError
from rainwatch.services.ledger_events import parse_event

logger = logging.getLogger(__name__)


class LedgerListener:
    def __init__(
        self,
        interval_seconds: float,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.interval_seconds = interval_seconds
        self._session_factory = session_factory
        self._task: asyncio.Task | None = None
        self._running = False
        self.connected = False
        self.last_restart: restart_detector.RestartCheck | None = None
        self.events_applied = 0

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def connect(self, session: AsyncSession) -> None:
        info = await ledger_client.get_chain_info()
        self.last_restart = await restart_detector.check_chain_restart(
            session, info.genesis_hash, info.height
        )
        self.connected = True
        logger.info("Connected to ledger (genesis=%s, height=%d)", info.genesis_hash[:16], info.height)

    async def poll_once(self) -> int:
        """Fetch and apply one page of events; returns the number applied."""
        async with self._factory()() as session:
            try:
                if not self.connected:
                    await self.connect(session)
                    await session.commit()

                meta = await session.get(ChainMeta, CHAIN_META_ID)
                since = meta.last_event_height if meta is not None else 0
                page = await ledger_client.fetch_events(since)

                applied = 0
                for raw in page.events:
                    event = parse_event(raw)
                    if event is None:
                        continue
                    try:
                        async with session.begin_nested():
                            await monitor_engine.dispatch_event(session, event)
                        applied += 1
                    except RainwatchError as exc:
                        logger.warning("Skipping %s: %s", type(event).__name__, exc)

                if meta is not None:
                    meta.last_event_height = max(since, page.height)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        self.events_applied += applied
        if applied:
            logger.info("Applied %d ledger event(s) up to height %d", applied, page.height)
        return applied

    async def _run(self) -> None:
        logger.info("Ledger listener started (interval=%ss)", self.interval_seconds)
        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except LedgerError as exc:
                self.connected = False
                logger.debug("Ledger unreachable: %s", exc)
            except Exception:
                logger.exception("Ledger poll failed unexpectedly")

            try:
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break
        logger.info("Ledger listener stopped")

    def start(self) -> None:
        if self._task is None:
            self._running = True
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
