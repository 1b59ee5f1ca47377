"""Sync coordinator: runs remote sync only when no collection cycle is active.

A sync requested while a cycle is in progress is skipped, never queued or
retried; the skip is recorded with a snapshot of the cycle status that
caused it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from meter_collector.scheduling.clock import Clock, SystemClock
from meter_collector.status import CollectionCycleStatus, StatusCell

logger = logging.getLogger(__name__)

REASON_COLLECTION_IN_PROGRESS = "collection in progress"
REASON_SYNC_RUNNING = "sync already running"


class SyncMode(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class SyncStatus(str, Enum):
    EXECUTED = "executed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncSkipRecord:
    skipped_at: datetime
    mode: SyncMode
    reason: str
    status: CollectionCycleStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "skipped_at": self.skipped_at.isoformat(),
            "mode": self.mode.value,
            "reason": self.reason,
            "status": self.status.to_dict(),
        }


@dataclass(frozen=True)
class SyncOutcome:
    status: SyncStatus
    mode: SyncMode
    skip: SyncSkipRecord | None = None
    result: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "mode": self.mode.value,
            "skip": self.skip.to_dict() if self.skip else None,
            "result": self.result,
            "error": self.error,
        }


class RemoteSync(Protocol):
    async def run(self) -> dict[str, Any]:
        ...


class SyncRecorder(Protocol):
    """Durable sink for skip and run records (the repository)."""

    async def record_sync_skip(
        self, skipped_at: datetime, mode: str, reason: str, status: dict[str, Any]
    ) -> None:
        ...

    async def record_sync_run(
        self, started_at: datetime, completed_at: datetime, mode: str, status: str, detail: str = ""
    ) -> None:
        ...


class SyncCoordinator:
    """Gates remote sync on the collection status cell. Never writes the cell."""

    def __init__(
        self,
        status: StatusCell,
        remote_sync: RemoteSync | None,
        recorder: SyncRecorder | None = None,
        clock: Clock | None = None,
        history_size: int = 100,
    ) -> None:
        self._status = status
        self._remote_sync = remote_sync
        self._recorder = recorder
        self._clock = clock or SystemClock()
        self._skips: deque[SyncSkipRecord] = deque(maxlen=history_size)
        self._lock = asyncio.Lock()
        self.last_outcome: SyncOutcome | None = None

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def skip_history(self, limit: int | None = None) -> list[SyncSkipRecord]:
        """Skips, most recent first."""
        records = list(reversed(self._skips))
        return records[:limit] if limit is not None else records

    async def trigger(self, mode: SyncMode = SyncMode.SCHEDULED) -> SyncOutcome:
        status = self._status.current
        if status.in_progress:
            return await self._skip(mode, REASON_COLLECTION_IN_PROGRESS, status)
        if self._lock.locked():
            return await self._skip(mode, REASON_SYNC_RUNNING, status)

        async with self._lock:
            outcome = await self._execute(mode)
        self.last_outcome = outcome
        return outcome

    async def _execute(self, mode: SyncMode) -> SyncOutcome:
        if self._remote_sync is None:
            logger.warning("Remote sync requested (%s) but not configured", mode.value)
            return SyncOutcome(status=SyncStatus.FAILED, mode=mode, error="remote sync not configured")

        started = self._clock.now()
        logger.info("Remote sync started (%s)", mode.value)
        try:
            result = await self._remote_sync.run()
            outcome = SyncOutcome(status=SyncStatus.EXECUTED, mode=mode, result=result)
            logger.info("Remote sync completed: %s", result)
        except Exception as e:
            logger.error("Remote sync failed: %s", e, exc_info=True)
            outcome = SyncOutcome(status=SyncStatus.FAILED, mode=mode, error=str(e))

        if self._recorder is not None:
            try:
                await self._recorder.record_sync_run(
                    started, self._clock.now(), mode.value, outcome.status.value,
                    outcome.error or "",
                )
            except Exception:
                logger.warning("Failed to record sync run", exc_info=True)
        return outcome

    async def _skip(
        self, mode: SyncMode, reason: str, status: CollectionCycleStatus
    ) -> SyncOutcome:
        record = SyncSkipRecord(
            skipped_at=self._clock.now(), mode=mode, reason=reason, status=status
        )
        self._skips.append(record)
        logger.info(
            "Remote sync skipped (%s): %s (cycle %d, %d meters processed)",
            mode.value, reason, status.cycle_id, status.meters_processed,
        )
        if self._recorder is not None:
            try:
                await self._recorder.record_sync_skip(
                    record.skipped_at, mode.value, reason, status.to_dict()
                )
            except Exception:
                logger.warning("Failed to persist sync skip record", exc_info=True)
        outcome = SyncOutcome(status=SyncStatus.SKIPPED, mode=mode, skip=record)
        self.last_outcome = outcome
        return outcome
