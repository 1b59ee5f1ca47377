"""Cycle scheduler: arms the collection, upload and remote-sync triggers."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING

from meter_collector.collector.engine import CycleReport
from meter_collector.config.resolve import log_runtime_settings
from meter_collector.errors import CatalogLoadError, CycleInProgressError
from meter_collector.scheduling.triggers import CronSchedule, IntervalSchedule, RecurringTrigger
from meter_collector.sync.coordinator import SyncMode

if TYPE_CHECKING:
    from meter_collector.context import AppContext

logger = logging.getLogger(__name__)

IDLE_REAP_INTERVAL_SECONDS = 60.0


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    SCHEDULED = "scheduled"
    CYCLE_RUNNING = "cycle_running"


class CycleScheduler:
    """Owns the recurring triggers of a running application.

    ``stop()`` cancels future fires immediately but lets an in-flight
    collection cycle finish and persist before transports are closed.
    """

    def __init__(self, context: AppContext) -> None:
        self._ctx = context
        self._triggers: dict[str, RecurringTrigger] = {}
        self._startup_task: asyncio.Task | None = None
        self._started = False

    @property
    def state(self) -> SchedulerState:
        if self._ctx.engine.is_running:
            return SchedulerState.CYCLE_RUNNING
        if not self._started:
            return SchedulerState.STOPPED
        return SchedulerState.SCHEDULED

    @property
    def triggers(self) -> dict[str, RecurringTrigger]:
        return dict(self._triggers)

    def describe(self) -> dict[str, object]:
        return {
            "state": self.state.value,
            "triggers": {
                name: {
                    "schedule": repr(t.schedule),
                    "next_fire_at": t.next_fire_at.isoformat() if t.next_fire_at else None,
                    "fired": t.fired,
                    "skipped": t.skipped,
                }
                for name, t in self._triggers.items()
            },
        }

    def start(self) -> None:
        if self._started:
            return
        ctx = self._ctx
        settings = ctx.settings
        log_runtime_settings(settings)

        self._add(
            "collection",
            IntervalSchedule(int(settings.collection_interval_seconds.value)),
            self._collection_tick,
        )
        if ctx.uploader is not None:
            self._add("upload", CronSchedule(str(settings.upload_cron_expression.value)), self._upload_tick)
        if ctx.remote_sync is not None:
            self._add(
                "remote_sync",
                CronSchedule(str(settings.remote_sync_cron_expression.value)),
                self._remote_sync_tick,
            )
        self._add("idle_reaper", IntervalSchedule(IDLE_REAP_INTERVAL_SECONDS), self._reap_idle)

        for trigger in self._triggers.values():
            trigger.start()
        self._started = True
        logger.info("Scheduler started with triggers: %s", ", ".join(self._triggers))

        if ctx.config.schedule.run_collection_on_start:
            self._startup_task = asyncio.create_task(self._collection_tick(), name="startup-collection")

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        for trigger in self._triggers.values():
            await trigger.stop()
        logger.info("Scheduler triggers cancelled, waiting for in-flight work")

        if self._startup_task is not None:
            await asyncio.gather(self._startup_task, return_exceptions=True)
            self._startup_task = None
        for trigger in self._triggers.values():
            await trigger.wait_idle()
        await self._ctx.engine.wait_idle()

        await self._ctx.client.close_idle()
        logger.info("Scheduler stopped")

    async def run_collection_now(self) -> CycleReport:
        """Run a cycle immediately. Raises CycleInProgressError if one is running."""
        return await self._ctx.engine.run_cycle()

    def _add(self, name: str, schedule, callback) -> None:
        self._triggers[name] = RecurringTrigger(name, schedule, callback, clock=self._ctx.clock)

    async def _collection_tick(self) -> None:
        try:
            await self._ctx.engine.run_cycle()
        except CycleInProgressError:
            logger.warning("Collection fire skipped: previous cycle still running")
        except CatalogLoadError as e:
            logger.error("Collection fire skipped: %s", e)

    async def _upload_tick(self) -> None:
        if self._ctx.uploader is not None:
            await self._ctx.uploader.upload_pending()

    async def _remote_sync_tick(self) -> None:
        await self._ctx.coordinator.trigger(SyncMode.SCHEDULED)

    async def _reap_idle(self) -> None:
        await self._ctx.client.close_idle()
