"""Adaptive batch reading for a single meter element.

For a meter with registers R and starting batch size B0:

1. Read the next ``b`` unread registers in one batch request.
2. Success: one ``good`` batch reading per register, continue with ``b``.
3. Timeout or read error: record a batch timeout event, halve ``b``
   (never below 1) and retry from the remaining unread registers.
4. A failed single-register batch, or ``K`` failed batch attempts, switches
   every still-unread register to sequential reads with the sequential
   timeout. Sequential failures become ``questionable`` null readings and
   are not retried within the cycle.

Every register in R ends up with exactly one reading.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Sequence

from meter_collector.catalog.models import Meter, RegisterMapping
from meter_collector.collector.models import (
    MeterOutcome,
    OperationType,
    PendingReading,
    Quality,
    ReadSource,
    TimeoutEvent,
)
from meter_collector.errors import (
    CollectorError,
    DeviceConnectionError,
    ProtocolDecodeError,
)
from meter_collector.protocol.client import DeviceProtocolClient

logger = logging.getLogger(__name__)


def default_shrink_limit(initial_batch_size: int) -> int:
    """floor(log2(B0)) + 1: enough attempts to walk B0 down to 1 by halving."""
    return max(1, initial_batch_size).bit_length()


class AdaptiveBatchReader:
    """Drives the protocol client through adaptive batching for one meter at a time."""

    def __init__(
        self,
        client: DeviceProtocolClient,
        batch_timeout_ms: int,
        sequential_timeout_ms: int,
        max_failed_batches: int,
    ) -> None:
        self._client = client
        self._batch_timeout_ms = batch_timeout_ms
        self._sequential_timeout_ms = sequential_timeout_ms
        self._max_failed_batches = max(1, max_failed_batches)

    async def read_meter(
        self,
        meter: Meter,
        registers: Sequence[RegisterMapping],
        initial_batch_size: int,
        timestamp: datetime,
    ) -> MeterOutcome:
        outcome = MeterOutcome(meter=meter)
        b = max(1, initial_batch_size)
        remaining = list(registers)
        failed_batches = 0

        while remaining:
            chunk = remaining[:b]
            outcome.batch_sizes.append(b)
            result = await self._client.batch_read(meter.device, chunk, self._batch_timeout_ms)

            if result.ok:
                for mapping in chunk:
                    if mapping in result.values:
                        outcome.readings.append(
                            self._reading(meter, mapping, result.values[mapping], timestamp, ReadSource.BATCH)
                        )
                    else:
                        error = result.decode_errors.get(mapping) or ProtocolDecodeError(
                            mapping.address, "missing from batch response"
                        )
                        self._record_failed_register(outcome, mapping, error, timestamp, ReadSource.BATCH)
                remaining = remaining[len(chunk):]
                continue

            if isinstance(result.error, DeviceConnectionError):
                self._abandon(outcome, remaining, result.error, timestamp, ReadSource.BATCH)
                outcome.final_batch_size = b
                return outcome

            failed_batches += 1
            outcome.timeout_events.append(
                self._timeout_event(meter, OperationType.BATCH, result.error)
            )
            if b == 1 or failed_batches >= self._max_failed_batches:
                logger.info(
                    "%s: batch reads failing at size %d after %d attempts, "
                    "falling back to sequential for %d registers",
                    meter.label, b, failed_batches, len(remaining),
                )
                break
            new_b = max(1, b // 2)
            logger.debug("%s: batch size %d -> %d (%s)", meter.label, b, new_b, result.error)
            b = new_b

        outcome.final_batch_size = b
        if remaining:
            outcome.fell_back_to_sequential = True
            await self._read_sequential(outcome, remaining, timestamp)
        return outcome

    async def _read_sequential(
        self,
        outcome: MeterOutcome,
        remaining: list[RegisterMapping],
        timestamp: datetime,
    ) -> None:
        meter = outcome.meter
        result = await self._client.sequential_read(
            meter.device, remaining, self._sequential_timeout_ms
        )
        connection_error_logged = False
        for mapping in remaining:
            if mapping in result.values:
                outcome.readings.append(
                    self._reading(meter, mapping, result.values[mapping], timestamp, ReadSource.SEQUENTIAL)
                )
                continue
            error = result.errors.get(mapping) or ProtocolDecodeError(
                mapping.address, "missing from sequential response"
            )
            if isinstance(error, DeviceConnectionError):
                outcome.readings.append(
                    self._reading(meter, mapping, None, timestamp, ReadSource.SEQUENTIAL, Quality.QUESTIONABLE)
                )
                if not connection_error_logged:
                    outcome.errors.append(f"{meter.label}: {error}")
                    connection_error_logged = True
                continue
            self._record_failed_register(outcome, mapping, error, timestamp, ReadSource.SEQUENTIAL)

    def _record_failed_register(
        self,
        outcome: MeterOutcome,
        mapping: RegisterMapping,
        error: CollectorError,
        timestamp: datetime,
        source: ReadSource,
    ) -> None:
        meter = outcome.meter
        outcome.readings.append(
            self._reading(meter, mapping, None, timestamp, source, Quality.QUESTIONABLE)
        )
        if isinstance(error, ProtocolDecodeError):
            outcome.errors.append(f"{meter.label} {mapping.data_point}: {error}")
        elif source == ReadSource.SEQUENTIAL:
            outcome.timeout_events.append(
                self._timeout_event(meter, OperationType.SEQUENTIAL, error)
            )

    def _abandon(
        self,
        outcome: MeterOutcome,
        remaining: list[RegisterMapping],
        error: CollectorError,
        timestamp: datetime,
        source: ReadSource,
    ) -> None:
        meter = outcome.meter
        logger.warning("%s: %s; %d registers not read this cycle", meter.label, error, len(remaining))
        outcome.errors.append(f"{meter.label}: {error}")
        for mapping in remaining:
            outcome.readings.append(
                self._reading(meter, mapping, None, timestamp, source, Quality.QUESTIONABLE)
            )

    def _timeout_event(
        self, meter: Meter, operation: OperationType, error: CollectorError | None
    ) -> TimeoutEvent:
        timeout_ms = (
            self._batch_timeout_ms if operation == OperationType.BATCH else self._sequential_timeout_ms
        )
        return TimeoutEvent(
            operation=operation,
            timeout_ms=timeout_ms,
            meter_id=meter.meter_id,
            element_id=meter.element_id,
            device_key=meter.device.key,
            detail=str(error) if error else "",
        )

    @classmethod
    def questionable(
        cls, meter: Meter, mapping: RegisterMapping, timestamp: datetime
    ) -> PendingReading:
        """Null placeholder for a register that could not be read at all."""
        return cls._reading(meter, mapping, None, timestamp, ReadSource.BATCH, Quality.QUESTIONABLE)

    @staticmethod
    def _reading(
        meter: Meter,
        mapping: RegisterMapping,
        value: float | None,
        timestamp: datetime,
        source: ReadSource,
        quality: Quality = Quality.GOOD,
    ) -> PendingReading:
        return PendingReading(
            tenant_id=meter.tenant_id,
            meter_id=meter.meter_id,
            element_id=meter.element_id,
            data_point=mapping.data_point,
            value=value,
            unit=mapping.unit,
            quality=quality,
            timestamp=timestamp,
            source=source,
        )
