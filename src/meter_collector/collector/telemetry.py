"""Timeout telemetry and per-device health tracking."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterable

from meter_collector.collector.models import OperationType, TimeoutEvent

logger = logging.getLogger(__name__)


class TimeoutTelemetry:
    """Append-only timeout event log with per-operation counters.

    Each operation type keeps its own configured timeout; an event recorded
    with any other value is a programming error.
    """

    def __init__(self, batch_timeout_ms: int, sequential_timeout_ms: int, history: int = 500) -> None:
        self._configured = {
            OperationType.BATCH: batch_timeout_ms,
            OperationType.SEQUENTIAL: sequential_timeout_ms,
        }
        self._counts = {OperationType.BATCH: 0, OperationType.SEQUENTIAL: 0}
        self._recent: deque[TimeoutEvent] = deque(maxlen=history)

    def configured_timeout(self, operation: OperationType) -> int:
        return self._configured[operation]

    def record(self, event: TimeoutEvent) -> None:
        expected = self._configured[event.operation]
        if event.timeout_ms != expected:
            raise ValueError(
                f"{event.operation.value} timeout event carries {event.timeout_ms}ms, "
                f"configured {expected}ms"
            )
        self._counts[event.operation] += 1
        self._recent.append(event)

    def record_all(self, events: Iterable[TimeoutEvent]) -> None:
        for event in events:
            self.record(event)

    def count(self, operation: OperationType) -> int:
        return self._counts[operation]

    def recent(self, limit: int = 50) -> list[TimeoutEvent]:
        if limit <= 0:
            return []
        return list(self._recent)[-limit:]

    def summary(self) -> dict[str, Any]:
        return {
            op.value: {"count": self._counts[op], "timeout_ms": self._configured[op]}
            for op in OperationType
        }


@dataclass
class DeviceHealth:
    """Health state of a single device."""

    device_key: str
    healthy: bool = True
    last_success: float = 0.0
    last_failure: float = 0.0
    consecutive_failures: int = 0
    total_failures: int = 0
    last_error: str = ""


class DeviceHealthTracker:
    """Tracks consecutive failed cycles per device."""

    def __init__(self, max_consecutive_failures: int = 3) -> None:
        self._max_failures = max_consecutive_failures
        self._devices: dict[str, DeviceHealth] = {}

    def _get(self, device_key: str) -> DeviceHealth:
        health = self._devices.get(device_key)
        if health is None:
            health = DeviceHealth(device_key=device_key)
            self._devices[device_key] = health
        return health

    def record_success(self, device_key: str) -> None:
        h = self._get(device_key)
        if not h.healthy:
            logger.info("Device %s recovered after %d failed cycles", device_key, h.consecutive_failures)
        h.healthy = True
        h.last_success = time.monotonic()
        h.consecutive_failures = 0

    def record_failure(self, device_key: str, error: str = "") -> None:
        h = self._get(device_key)
        h.last_failure = time.monotonic()
        h.consecutive_failures += 1
        h.total_failures += 1
        h.last_error = error
        if h.healthy and h.consecutive_failures >= self._max_failures:
            h.healthy = False
            logger.warning(
                "Device %s marked unhealthy (%d consecutive failed cycles): %s",
                device_key, h.consecutive_failures, error,
            )

    def is_healthy(self, device_key: str) -> bool:
        h = self._devices.get(device_key)
        return h.healthy if h else True

    def get_unhealthy(self) -> list[str]:
        return [key for key, h in self._devices.items() if not h.healthy]

    def get_all_health(self) -> dict[str, DeviceHealth]:
        return dict(self._devices)
