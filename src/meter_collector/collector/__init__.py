"""Adaptive batch collection of meter readings."""

from meter_collector.collector.batching import AdaptiveBatchReader, default_shrink_limit
from meter_collector.collector.engine import CollectionEngine, CycleReport, ReadingStore
from meter_collector.collector.models import (
    MeterOutcome,
    OperationType,
    PendingReading,
    Quality,
    ReadSource,
    TimeoutEvent,
)
from meter_collector.collector.telemetry import DeviceHealthTracker, TimeoutTelemetry

__all__ = [
    "AdaptiveBatchReader",
    "CollectionEngine",
    "CycleReport",
    "DeviceHealthTracker",
    "MeterOutcome",
    "OperationType",
    "PendingReading",
    "Quality",
    "ReadSource",
    "ReadingStore",
    "TimeoutEvent",
    "TimeoutTelemetry",
    "default_shrink_limit",
]
