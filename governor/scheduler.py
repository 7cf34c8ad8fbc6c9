"""Periodic sweeps: approval expiry, loop detection and the daily spend reset."""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import approvals, budget
from .config import settings
from .db import session_scope
from .loops import LoopSweepReport, LoopThresholds, detect_loops
from .models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    expired_approvals: int = 0
    agents_reset: int = 0
    loops: LoopSweepReport | None = None


async def run_approval_sweep(
    factory: async_sessionmaker[AsyncSession] | None = None, *, now: datetime | None = None
) -> int:
    """Expire stale approvals in one transaction."""
    async with session_scope(factory) as session:
        return await approvals.expire_stale(session, now=now)


async def run_loop_sweep(
    factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    thresholds: LoopThresholds | None = None,
    now: datetime | None = None,
) -> LoopSweepReport:
    """Run the loop detector in one transaction."""
    async with session_scope(factory) as session:
        return await detect_loops(session, thresholds=thresholds, now=now)


async def run_spend_reset(factory: async_sessionmaker[AsyncSession] | None = None) -> int:
    async with session_scope(factory) as session:
        return await budget.reset_daily_spend(session)


async def run_sweeps(
    factory: async_sessionmaker[AsyncSession] | None = None, *, now: datetime | None = None
) -> SweepSummary:
    """Run every sweep once, each in its own transaction."""
    summary = SweepSummary()
    summary.expired_approvals = await run_approval_sweep(factory, now=now)
    summary.loops = await run_loop_sweep(factory, now=now)
    summary.agents_reset = await run_spend_reset(factory)
    logger.info(
        "Sweeps done: %d approvals expired, %d loop corrections, %d agents reset",
        summary.expired_approvals,
        len(summary.loops.detections),
        summary.agents_reset,
    )
    return summary


class Scheduler:
    """Interval runner for the sweeps."""

    def __init__(
        self,
        *,
        approval_interval: timedelta | None = None,
        loop_interval: timedelta | None = None,
        factory: async_sessionmaker[AsyncSession] | None = None,
        tick_seconds: float = 1.0,
    ) -> None:
        self.approval_interval = approval_interval or timedelta(minutes=settings.approval_sweep_minutes)
        self.loop_interval = loop_interval or timedelta(minutes=settings.loop_sweep_minutes)
        self.factory = factory
        self.tick_seconds = tick_seconds
        self.shutdown_requested = False
        self._next_approval: datetime | None = None
        self._next_loop: datetime | None = None
        self._spend_day = None

    def _install_signal_handlers(self) -> None:
        def _handle_signal(signum: int, frame: object) -> None:
            self.shutdown_requested = True

        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

    async def tick(self, now: datetime | None = None) -> None:
        """Run whatever sweeps are due at ``now``."""
        now = now or utcnow()
        if self._next_approval is None or now >= self._next_approval:
            try:
                await run_approval_sweep(self.factory, now=now)
            except Exception:
                logger.exception("Approval sweep failed")
            self._next_approval = now + self.approval_interval
        if self._next_loop is None or now >= self._next_loop:
            try:
                await run_loop_sweep(self.factory, now=now)
            except Exception:
                logger.exception("Loop sweep failed")
            self._next_loop = now + self.loop_interval
        if self._spend_day != now.date():
            try:
                await run_spend_reset(self.factory)
                self._spend_day = now.date()
            except Exception:
                logger.exception("Daily spend reset failed")

    async def run_forever(self) -> None:
        self._install_signal_handlers()
        logger.info(
            "Scheduler started (approvals every %s, loops every %s)",
            self.approval_interval,
            self.loop_interval,
        )
        while not self.shutdown_requested:
            await self.tick()
            await asyncio.sleep(self.tick_seconds)
        logger.info("Scheduler stopped")
