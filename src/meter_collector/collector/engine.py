"""Collection cycle engine.

One cycle reads every active meter element through a bounded pool of
worker tasks, persists the resulting readings and timeout events, and only
then marks the cycle complete in the shared status cell.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, Sequence

from meter_collector.catalog.catalog import MeterCatalog
from meter_collector.catalog.models import CatalogSnapshot, Meter
from meter_collector.collector.batching import AdaptiveBatchReader, default_shrink_limit
from meter_collector.collector.models import MeterOutcome, PendingReading, TimeoutEvent
from meter_collector.collector.telemetry import DeviceHealthTracker, TimeoutTelemetry
from meter_collector.config.schema import CollectionConfig
from meter_collector.errors import CatalogLoadError, CycleInProgressError, PersistenceError
from meter_collector.logging.context import bind_context, unbind_context
from meter_collector.protocol.client import DeviceProtocolClient
from meter_collector.scheduling.clock import Clock, SystemClock
from meter_collector.status import CollectionCycleStatus, StatusCell

logger = logging.getLogger(__name__)


class ReadingStore(Protocol):
    """Persistence collaborator for cycle output."""

    async def persist_readings(self, readings: Sequence[PendingReading]) -> list[bool]:
        """Idempotent upsert keyed on (meter, element, data point, timestamp)."""
        ...

    async def record_timeout_events(self, events: Sequence[TimeoutEvent]) -> None:
        ...

    async def mark_meters_read(self, meters: Sequence[Meter], read_at: datetime) -> None:
        ...

    async def record_cycle(self, status: CollectionCycleStatus) -> None:
        ...


@dataclass
class CycleReport:
    status: CollectionCycleStatus
    outcomes: list[MeterOutcome] = field(default_factory=list)
    readings_persisted: int = 0
    duration_seconds: float = 0.0

    @property
    def readings(self) -> list[PendingReading]:
        return [r for o in self.outcomes for r in o.readings]

    @property
    def timeout_events(self) -> list[TimeoutEvent]:
        return [e for o in self.outcomes for e in o.timeout_events]


class _BatchSizePolicy:
    """Starting batch size for each meter in one cycle.

    scope "meter": every meter starts at the configured default.
    scope "cycle": a size degraded on one meter becomes the start size for
    meters picked up later in the same cycle.
    """

    def __init__(self, default: int, scope: str) -> None:
        self._default = default
        self._scope = scope
        self._carried = default

    def initial(self) -> int:
        return self._default if self._scope == "meter" else self._carried

    def observe(self, outcome: MeterOutcome) -> None:
        if self._scope == "cycle" and outcome.final_batch_size > 0:
            self._carried = min(self._carried, outcome.final_batch_size)


class CollectionEngine:
    """Runs collection cycles. The only writer of the status cell."""

    def __init__(
        self,
        catalog: MeterCatalog,
        client: DeviceProtocolClient,
        store: ReadingStore,
        status: StatusCell,
        telemetry: TimeoutTelemetry,
        config: CollectionConfig,
        batch_timeout_ms: int,
        sequential_timeout_ms: int,
        health: DeviceHealthTracker | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._catalog = catalog
        self._store = store
        self._status = status
        self._telemetry = telemetry
        self._config = config
        self._health = health or DeviceHealthTracker()
        self._clock = clock or SystemClock()
        self._reader = AdaptiveBatchReader(
            client,
            batch_timeout_ms=batch_timeout_ms,
            sequential_timeout_ms=sequential_timeout_ms,
            max_failed_batches=(
                config.max_shrink_attempts or default_shrink_limit(config.default_batch_size)
            ),
        )
        self._cycle_lock = asyncio.Lock()
        self._cycle_seq = 0

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def health(self) -> DeviceHealthTracker:
        return self._health

    async def wait_idle(self) -> None:
        """Return once no cycle is running."""
        async with self._cycle_lock:
            pass

    async def run_cycle(self) -> CycleReport:
        """Run one full collection cycle.

        Raises CatalogLoadError if the catalog was never loaded and
        CycleInProgressError if a cycle is already running.
        """
        if not self._catalog.is_loaded:
            raise CatalogLoadError("Catalog not loaded; refusing to start a collection cycle")
        if self._cycle_lock.locked():
            raise CycleInProgressError("collection cycle already running")

        async with self._cycle_lock:
            self._cycle_seq += 1
            return await self._run(self._cycle_seq)

    async def _run(self, cycle_id: int) -> CycleReport:
        snapshot = self._catalog.snapshot
        started_at = self._clock.now().replace(microsecond=0)
        start_mono = self._clock.monotonic()
        status = CollectionCycleStatus(cycle_id=cycle_id, started_at=started_at, in_progress=True)
        self._status.publish(status)
        bind_context(cycle_id=cycle_id)
        logger.info(
            "Collection cycle %d started: %d meter elements, %d workers",
            cycle_id, len(snapshot.meters), self._config.worker_pool_size,
        )

        report = CycleReport(status=status)
        errors: list[str] = []
        try:
            report.outcomes = await self._process_meters(snapshot, started_at, cycle_id)
            for outcome in report.outcomes:
                errors.extend(outcome.errors)
            report.readings_persisted = await self._persist(report, started_at, errors)
        except Exception as e:
            logger.exception("Collection cycle %d aborted", cycle_id)
            errors.append(f"cycle aborted: {e}")
        finally:
            current = self._status.current
            final = CollectionCycleStatus(
                cycle_id=cycle_id,
                started_at=started_at,
                completed_at=self._clock.now(),
                in_progress=False,
                meters_processed=current.meters_processed,
                meters_failed=current.meters_failed,
                errors=tuple(errors),
            )
            try:
                await self._store.record_cycle(final)
            except Exception:
                logger.warning("Failed to record cycle %d status", cycle_id, exc_info=True)
            report.status = final
            report.duration_seconds = self._clock.monotonic() - start_mono
            self._status.publish(final)
            unbind_context("cycle_id")

        logger.info(
            "Collection cycle %d completed: %d/%d meters ok, %d readings persisted, "
            "%d timeouts, %.1fs",
            cycle_id,
            final.meters_processed - final.meters_failed,
            final.meters_processed,
            report.readings_persisted,
            len(report.timeout_events),
            report.duration_seconds,
        )
        return report

    async def _process_meters(
        self, snapshot: CatalogSnapshot, timestamp: datetime, cycle_id: int
    ) -> list[MeterOutcome]:
        queue: asyncio.Queue[Meter] = asyncio.Queue()
        for meter in snapshot.meters:
            queue.put_nowait(meter)

        outcomes: list[MeterOutcome] = []
        policy = _BatchSizePolicy(self._config.default_batch_size, self._config.batch_size_scope)
        worker_count = min(self._config.worker_pool_size, len(snapshot.meters))
        workers = [
            asyncio.create_task(
                self._worker(queue, snapshot, policy, timestamp, outcomes),
                name=f"collector-worker-{cycle_id}-{i}",
            )
            for i in range(worker_count)
        ]
        if workers:
            await asyncio.gather(*workers)
        return outcomes

    async def _worker(
        self,
        queue: asyncio.Queue[Meter],
        snapshot: CatalogSnapshot,
        policy: _BatchSizePolicy,
        timestamp: datetime,
        outcomes: list[MeterOutcome],
    ) -> None:
        while True:
            try:
                meter = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            registers = snapshot.registers_for(meter)
            if not registers:
                logger.warning("%s has no register mappings, skipping", meter.label)
            try:
                outcome = await self._reader.read_meter(
                    meter, registers, policy.initial(), timestamp
                )
            except Exception as e:
                # A bug in one meter's processing must not take down the worker
                logger.exception("%s: unexpected error during collection", meter.label)
                outcome = MeterOutcome(meter=meter, errors=[f"{meter.label}: {e}"])
                outcome.readings = [
                    AdaptiveBatchReader.questionable(meter, r, timestamp) for r in registers
                ]

            policy.observe(outcome)
            try:
                self._telemetry.record_all(outcome.timeout_events)
            except ValueError:
                logger.exception("%s: timeout event with mismatched timeout", meter.label)
            if outcome.failed:
                self._health.record_failure(
                    meter.device.key, outcome.errors[-1] if outcome.errors else "no readings"
                )
            elif outcome.readings:
                self._health.record_success(meter.device.key)

            outcomes.append(outcome)
            current = self._status.current
            self._status.publish(
                current.with_progress(
                    current.meters_processed + 1,
                    current.meters_failed + (1 if outcome.failed else 0),
                )
            )
            queue.task_done()

    async def _persist(self, report: CycleReport, read_at: datetime, errors: list[str]) -> int:
        readings = report.readings
        persisted = 0
        if readings:
            try:
                results = await self._store.persist_readings(readings)
                persisted = sum(1 for ok in results if ok)
                if persisted < len(readings):
                    errors.append(
                        str(PersistenceError(f"{len(readings) - persisted} of {len(readings)} readings not persisted"))
                    )
            except Exception as e:
                logger.error("Persisting %d readings failed: %s", len(readings), e)
                errors.append(str(PersistenceError(f"persist_readings failed: {e}")))

        events = report.timeout_events
        if events:
            try:
                await self._store.record_timeout_events(events)
            except Exception as e:
                logger.error("Persisting %d timeout events failed: %s", len(events), e)
                errors.append(str(PersistenceError(f"record_timeout_events failed: {e}")))

        read_meters = [o.meter for o in report.outcomes if o.good_count > 0]
        if read_meters:
            try:
                await self._store.mark_meters_read(read_meters, read_at)
            except Exception as e:
                logger.warning("Updating last-read timestamps failed: %s", e)
                errors.append(str(PersistenceError(f"mark_meters_read failed: {e}")))
        return persisted
