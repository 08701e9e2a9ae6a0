"""Periodic evaluation loop.

One cycle evaluates every ``monitoring`` monitor and prunes ingest records
past retention.  Reports that failed earlier are only retried by
``trigger_all``.  The loop runs a cycle immediately on start, then once per
tick.
Ticks come from an injected ticker: ``IntervalTicker`` in the service,
``ManualTicker`` in tests so cycles can be driven one at a time.

Runs as an asyncio background task managed by FastAPI's lifespan.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rainwatch.core.database import get_session_factory
from rainwatch.core.timeutil import now_ts
from rainwatch.services import ingest_store, monitor_engine

logger = logging.getLogger(__name__)


class Ticker(Protocol):
    async def wait(self) -> bool:
        """Block until the next tick; False once the ticker is stopped."""
        ...

    def stop(self) -> None: ...


class IntervalTicker:
    def __init__(self, interval_seconds: float):
        self.interval_seconds = interval_seconds
        self._stopped = asyncio.Event()

    async def wait(self) -> bool:
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            return True
        return False

    def stop(self) -> None:
        self._stopped.set()


class ManualTicker:
    def __init__(self):
        self._ticks: asyncio.Queue[bool] = asyncio.Queue()

    def tick(self) -> None:
        self._ticks.put_nowait(True)

    async def wait(self) -> bool:
        return await self._ticks.get()

    def stop(self) -> None:
        self._ticks.put_nowait(False)


@dataclass
class CycleResult:
    started_at: int
    evaluated: int = 0
    triggered: int = 0
    matured: int = 0
    reported: int = 0
    pruned_observations: int = 0
    pruned_snapshots: int = 0
    duration_ms: float = 0.0
    monitor_ids: list[str] = field(default_factory=list)


class SchedulerLoop:
    def __init__(
        self,
        ticker: Ticker,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        run_immediately: bool = True,
        clock: Callable[[], int] = now_ts,
    ):
        self.ticker = ticker
        self._session_factory = session_factory
        self.run_immediately = run_immediately
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

        self.cycles = 0
        self.last_cycle: CycleResult | None = None
        self.last_success_at: int | None = None
        self.last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def run_cycle(self, retry_reports: bool = False) -> CycleResult:
        """Evaluate monitoring monitors and prune expired ingest data.

        ``retry_reports`` also resubmits pending ``triggered``/``matured`` reports.
        """
        async with self._lock:
            now = self._clock()
            started = time.monotonic()
            result = CycleResult(started_at=now)

            async with self._factory()() as session:
                try:
                    evaluations = await monitor_engine.evaluate_all(
                        session, now, retry_reports=retry_reports
                    )
                    pruned = await ingest_store.prune_expired(session)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

            for ev in evaluations:
                if ev.skipped is None:
                    result.evaluated += 1
                    result.monitor_ids.append(ev.monitor_id)
                if ev.reported:
                    result.reported += 1
                elif ev.state == "triggered":
                    result.triggered += 1
                elif ev.state == "matured":
                    result.matured += 1
            result.pruned_observations, result.pruned_snapshots = pruned
            result.duration_ms = round((time.monotonic() - started) * 1000, 1)

            self.cycles += 1
            self.last_cycle = result
            self.last_success_at = now
            self.last_error = None
            logger.info(
                "Cycle %d: %d evaluated, %d triggered, %d matured, %d reported (%.1fms)",
                self.cycles, result.evaluated, result.triggered,
                result.matured, result.reported, result.duration_ms,
            )
            return result

    async def trigger_all(self) -> CycleResult:
        """Run a cycle on demand that also retries pending reports."""
        logger.info("Manual trigger: running evaluation cycle with report retry")
        return await self.run_cycle(retry_reports=True)

    async def _safe_cycle(self) -> None:
        try:
            await self.run_cycle()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.last_error = str(exc)
            logger.exception("Scheduler cycle failed unexpectedly")

    async def _run(self) -> None:
        logger.info("Scheduler started")
        if self.run_immediately:
            await self._safe_cycle()
        while await self.ticker.wait():
            await self._safe_cycle()
        logger.info("Scheduler stopped")

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self.ticker.stop()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
