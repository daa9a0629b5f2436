"""Periodic re-assessment and baseline sweeping."""
from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Dict, Optional, Set, Union

from .engine import EngineDecision, RiskEngine
from .errors import Blocked
from .models import AssessmentContext

logger = logging.getLogger(__name__)

ContextProvider = Callable[
    [str], Union[Optional[AssessmentContext], Awaitable[Optional[AssessmentContext]]]
]


class Monitor:
    """Runs one re-assessment task per monitored subject plus a sweep task.

    A tick that fires while the previous assessment for the same subject
    is still running is skipped, so ticks never queue up.
    """

    def __init__(
        self,
        engine: RiskEngine,
        context_provider: ContextProvider,
        *,
        interval: Optional[timedelta] = None,
        sweep_interval: Optional[timedelta] = None,
    ) -> None:
        self._engine = engine
        self._provider = context_provider
        self._interval = (interval or engine.config.monitoring_interval).total_seconds()
        self._sweep_interval = (sweep_interval or engine.config.sweep_interval).total_seconds()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._in_flight: Set[str] = set()
        self._sweeper: Optional[asyncio.Task] = None
        self.skipped_ticks = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def start(self, subject_id: str) -> None:
        """Begin periodic assessment of ``subject_id``; must run inside an event loop."""

        if self.running(subject_id):
            return
        self._tasks[subject_id] = asyncio.get_running_loop().create_task(self._tick_loop(subject_id))
        logger.info("Monitoring %s every %.1fs", subject_id, self._interval)

    def stop(self, subject_id: str) -> bool:
        task = self._tasks.pop(subject_id, None)
        if task is None:
            return False
        task.cancel()
        logger.info("Stopped monitoring %s", subject_id)
        return True

    def logout(self, subject_id: str) -> None:
        """Cancel pending ticks and clear the subject's session state."""

        self.stop(subject_id)
        self._engine.logout(subject_id)

    def running(self, subject_id: str) -> bool:
        task = self._tasks.get(subject_id)
        return task is not None and not task.done()

    def subjects(self) -> tuple:
        return tuple(subject for subject in self._tasks if self.running(subject))

    async def tick(self, subject_id: str) -> Optional[EngineDecision]:
        """Run one assessment unless one is already in flight for the subject."""

        if subject_id in self._in_flight:
            self.skipped_ticks += 1
            logger.debug("Skipping overlapping tick for %s", subject_id)
            return None
        self._in_flight.add(subject_id)
        try:
            context = self._provider(subject_id)
            if inspect.isawaitable(context):
                context = await context
            if context is None:
                return None
            return await self._engine.assess(subject_id, context)
        finally:
            self._in_flight.discard(subject_id)

    @property
    def sweeping(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    def start_sweeper(self) -> None:
        if self.sweeping:
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop_all(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        if self._sweeper is not None:
            tasks.append(self._sweeper)
            self._sweeper = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _tick_loop(self, subject_id: str) -> None:
        while True:
            try:
                await self.tick(subject_id)
            except Blocked as exc:
                logger.info("Periodic assessment of %s paused: %s", subject_id, exc)
            except Exception as exc:
                logger.exception("Monitoring loop error for %s: %s", subject_id, exc)
            await asyncio.sleep(self._interval)

    async def _sweep_loop(self) -> None:
        logger.info("Baseline sweep started (interval=%.0fs)", self._sweep_interval)
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                self._engine.sweep()
            except Exception as exc:
                logger.exception("Baseline sweep error: %s", exc)


__all__ = ["ContextProvider", "Monitor"]
