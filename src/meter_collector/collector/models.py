"""Readings, timeout telemetry events and per-meter outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from meter_collector.catalog.models import Meter


class Quality(str, Enum):
    GOOD = "good"
    ESTIMATED = "estimated"
    QUESTIONABLE = "questionable"


class ReadSource(str, Enum):
    BATCH = "batch"
    SEQUENTIAL = "sequential"


class OperationType(str, Enum):
    BATCH = "batch"
    SEQUENTIAL = "sequential"


@dataclass(frozen=True)
class PendingReading:
    """One data point value awaiting persistence. Never mutated."""

    tenant_id: int
    meter_id: int
    element_id: int
    data_point: str
    value: float | None
    unit: str
    quality: Quality
    timestamp: datetime
    source: ReadSource

    @property
    def natural_key(self) -> tuple[int, int, str, datetime]:
        return (self.meter_id, self.element_id, self.data_point, self.timestamp)


@dataclass(frozen=True)
class TimeoutEvent:
    """A failed protocol attempt, tagged with the timeout in force for its operation."""

    operation: OperationType
    timeout_ms: int
    meter_id: int
    element_id: int
    device_key: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    detail: str = ""


@dataclass
class MeterOutcome:
    """Everything one meter produced during a cycle."""

    meter: Meter
    readings: list[PendingReading] = field(default_factory=list)
    timeout_events: list[TimeoutEvent] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    batch_sizes: list[int] = field(default_factory=list)  # size used for each batch attempt
    final_batch_size: int = 0
    fell_back_to_sequential: bool = False

    @property
    def good_count(self) -> int:
        return sum(1 for r in self.readings if r.quality == Quality.GOOD)

    @property
    def failed(self) -> bool:
        return bool(self.readings) and self.good_count == 0
