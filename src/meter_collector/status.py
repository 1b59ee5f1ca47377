"""Collection cycle status shared between the collector and its readers.

The cell has exactly one writer (the collection engine). Each publish swaps
in a new frozen status object, so readers never need a lock and never see a
half-updated status.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectionCycleStatus:
    """Snapshot of the current or last collection cycle."""

    cycle_id: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    in_progress: bool = False
    meters_processed: int = 0
    meters_failed: int = 0
    errors: tuple[str, ...] = field(default_factory=tuple)

    def with_progress(self, processed: int, failed: int) -> CollectionCycleStatus:
        return replace(self, meters_processed=processed, meters_failed=failed)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat() if self.started_at else None
        data["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        data["errors"] = list(self.errors)
        return data


StatusObserver = Callable[[CollectionCycleStatus], None]


class StatusCell:
    """Single-writer, multi-reader holder of the latest cycle status."""

    def __init__(self) -> None:
        self._status = CollectionCycleStatus()
        self._observers: list[StatusObserver] = []

    @property
    def current(self) -> CollectionCycleStatus:
        return self._status

    def publish(self, status: CollectionCycleStatus) -> None:
        self._status = status
        for observer in list(self._observers):
            try:
                observer(status)
            except Exception:
                logger.exception("Status observer failed")

    def subscribe(self, observer: StatusObserver) -> Callable[[], None]:
        """Register an observer; returns a callable that unsubscribes it."""
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe
