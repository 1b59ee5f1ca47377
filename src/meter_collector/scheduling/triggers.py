"""Interval and cron schedules, and the recurring trigger that drives them."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Protocol

from croniter import croniter

from meter_collector.scheduling.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class Schedule(Protocol):
    def next_after(self, dt: datetime) -> datetime:
        ...


class IntervalSchedule:
    """Fires every ``seconds`` seconds."""

    def __init__(self, seconds: float) -> None:
        if seconds <= 0:
            raise ValueError(f"interval must be positive, got {seconds}")
        self.seconds = seconds

    def next_after(self, dt: datetime) -> datetime:
        return dt + timedelta(seconds=self.seconds)

    def __repr__(self) -> str:
        return f"IntervalSchedule({self.seconds}s)"


class CronSchedule:
    """Fires on a five-field cron expression, evaluated in the clock's timezone."""

    def __init__(self, expression: str) -> None:
        if not croniter.is_valid(expression):
            raise ValueError(f"invalid cron expression: {expression!r}")
        self.expression = expression

    def next_after(self, dt: datetime) -> datetime:
        return croniter(self.expression, dt).get_next(datetime)

    def __repr__(self) -> str:
        return f"CronSchedule({self.expression!r})"


class RecurringTrigger:
    """Runs ``callback`` on every fire of ``schedule`` until stopped.

    A fire that comes due while the previous callback is still running is
    skipped, so a trigger never has two callbacks in flight.
    """

    def __init__(
        self,
        name: str,
        schedule: Schedule,
        callback: Callable[[], Awaitable[object]],
        clock: Clock | None = None,
    ) -> None:
        self.name = name
        self.schedule = schedule
        self._callback = callback
        self._clock = clock or SystemClock()
        self._task: asyncio.Task | None = None
        self._running: asyncio.Task | None = None
        self.fired = 0
        self.skipped = 0
        self.next_fire_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def callback_running(self) -> bool:
        return self._running is not None and not self._running.done()

    def start(self) -> None:
        if self.is_active:
            return
        self._task = asyncio.create_task(self._loop(), name=f"trigger-{self.name}")

    async def stop(self) -> None:
        """Cancel future fires. A callback already running is left to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.next_fire_at = None

    async def wait_idle(self) -> None:
        """Wait for an in-flight callback, if any."""
        if self._running is not None:
            await asyncio.gather(self._running, return_exceptions=True)

    async def _loop(self) -> None:
        while True:
            now = self._clock.now()
            self.next_fire_at = self.schedule.next_after(now)
            await self._clock.sleep((self.next_fire_at - now).total_seconds())

            if self.callback_running:
                self.skipped += 1
                logger.warning("Trigger %s fired while previous run still active, skipping", self.name)
                continue
            self.fired += 1
            self._running = asyncio.create_task(self._invoke(), name=f"trigger-{self.name}-run")

    async def _invoke(self) -> None:
        try:
            await self._callback()
        except Exception:
            logger.exception("Trigger %s callback failed", self.name)
