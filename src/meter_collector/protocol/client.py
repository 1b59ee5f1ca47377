"""Device protocol client: pooled, per-device serialized register reads.

Holds at most one live transport per device address. Every operation on a
device runs under that device's lock, so requests are never interleaved on
one connection. A timed-out or broken transport is closed and dropped before
the lock is released; the next call reconnects.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence

from meter_collector.catalog.models import DeviceAddress, RegisterMapping
from meter_collector.config.schema import ProtocolConfig
from meter_collector.errors import (
    CollectorError,
    DeviceConnectionError,
    ProtocolDecodeError,
    ProtocolReadError,
    ProtocolTimeoutError,
)
from meter_collector.protocol.base import Transport, TransportFactory, default_transport_factory
from meter_collector.protocol.codec import decode_block, decode_register, plan_spans

logger = logging.getLogger(__name__)

BATCH = "batch"
SEQUENTIAL = "sequential"


@dataclass
class BatchReadResult:
    """Outcome of one batch read. ``error`` set means nothing was read."""

    values: dict[RegisterMapping, float] = field(default_factory=dict)
    decode_errors: dict[RegisterMapping, ProtocolDecodeError] = field(default_factory=dict)
    error: CollectorError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SequentialReadResult:
    """Per-register outcome of a sequential read."""

    values: dict[RegisterMapping, float] = field(default_factory=dict)
    errors: dict[RegisterMapping, CollectorError] = field(default_factory=dict)


@dataclass
class _DeviceSession:
    device: DeviceAddress
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    transport: Transport | None = None
    last_used: float = 0.0


@dataclass
class ClientStats:
    connections_opened: int = 0
    connect_failures: int = 0
    connections_recycled: int = 0
    connections_idle_closed: int = 0
    batch_reads: int = 0
    sequential_reads: int = 0
    timeouts: int = 0


class DeviceProtocolClient:
    """Batch and sequential register reads against many devices."""

    def __init__(
        self,
        config: ProtocolConfig,
        transport_factory: TransportFactory | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._factory = transport_factory or default_transport_factory(config)
        self._sleep = sleep
        self._monotonic = monotonic
        self._sessions: dict[str, _DeviceSession] = {}
        self._stats = ClientStats()

    @property
    def stats(self) -> ClientStats:
        return self._stats

    def live_connections(self) -> list[str]:
        return [
            key for key, s in self._sessions.items()
            if s.transport is not None and s.transport.connected
        ]

    async def batch_read(
        self,
        device: DeviceAddress,
        registers: Sequence[RegisterMapping],
        timeout_ms: int,
    ) -> BatchReadResult:
        """Read all ``registers`` in as few round trips as the span allows.

        The whole operation, across every request it needs, shares one
        ``timeout_ms`` deadline.
        """
        if not registers:
            return BatchReadResult()
        session = self._session(device)
        async with session.lock:
            self._stats.batch_reads += 1
            try:
                transport = await self._ensure_connected(session)
            except DeviceConnectionError as e:
                return BatchReadResult(error=e)

            try:
                blocks = await asyncio.wait_for(
                    self._read_spans(transport, registers), timeout_ms / 1000
                )
            except asyncio.TimeoutError:
                await self._recycle(session, "batch timeout")
                self._stats.timeouts += 1
                return BatchReadResult(error=ProtocolTimeoutError(BATCH, timeout_ms, device.key))
            except ProtocolReadError as e:
                await self._recycle_if_broken(session)
                return BatchReadResult(error=e)
            finally:
                session.last_used = self._monotonic()

        result = BatchReadResult()
        for start, words, members in blocks:
            values, errors = decode_block(members, start, words)
            result.values.update(values)
            result.decode_errors.update(errors)
        return result

    async def sequential_read(
        self,
        device: DeviceAddress,
        registers: Sequence[RegisterMapping],
        timeout_ms: int,
    ) -> SequentialReadResult:
        """Read registers one at a time, each with its own ``timeout_ms``.

        Failures are reported per register and never retried here. If the
        device cannot be reconnected, the remaining registers all carry that
        connection error.
        """
        result = SequentialReadResult()
        if not registers:
            return result
        session = self._session(device)
        async with session.lock:
            for index, mapping in enumerate(registers):
                self._stats.sequential_reads += 1
                try:
                    transport = await self._ensure_connected(session)
                except DeviceConnectionError as e:
                    for remaining in registers[index:]:
                        result.errors[remaining] = e
                    break

                try:
                    words = await asyncio.wait_for(
                        transport.read_registers(mapping.address, mapping.count),
                        timeout_ms / 1000,
                    )
                    result.values[mapping] = decode_register(mapping, words)
                except asyncio.TimeoutError:
                    await self._recycle(session, "sequential timeout")
                    self._stats.timeouts += 1
                    result.errors[mapping] = ProtocolTimeoutError(SEQUENTIAL, timeout_ms, device.key)
                except ProtocolReadError as e:
                    await self._recycle_if_broken(session)
                    result.errors[mapping] = e
                except ProtocolDecodeError as e:
                    result.errors[mapping] = e
                finally:
                    session.last_used = self._monotonic()
        return result

    async def close_idle(self, now: float | None = None) -> int:
        """Close transports unused for longer than the idle timeout."""
        now = self._monotonic() if now is None else now
        closed = 0
        for session in list(self._sessions.values()):
            if session.transport is None or session.lock.locked():
                continue
            if now - session.last_used < self._config.idle_timeout_seconds:
                continue
            async with session.lock:
                if session.transport is not None:
                    await self._close_transport(session)
                    self._stats.connections_idle_closed += 1
                    closed += 1
        if closed:
            logger.debug("Closed %d idle device connections", closed)
        return closed

    async def close(self) -> None:
        """Close every transport. Waits for in-flight operations per device."""
        for session in list(self._sessions.values()):
            async with session.lock:
                await self._close_transport(session)
        logger.info("Device protocol client closed")

    # ── Internals ───────────────────────────────────────

    def _session(self, device: DeviceAddress) -> _DeviceSession:
        session = self._sessions.get(device.key)
        if session is None:
            session = _DeviceSession(device=device)
            self._sessions[device.key] = session
        return session

    async def _ensure_connected(self, session: _DeviceSession) -> Transport:
        """Return a connected transport, connecting with bounded backoff."""
        if session.transport is not None and session.transport.connected:
            return session.transport
        if session.transport is not None:
            await self._close_transport(session)

        attempts = self._config.connect_attempts
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            transport = self._factory.create(session.device)
            try:
                await transport.connect()
            except DeviceConnectionError as e:
                last_error = e
                self._stats.connect_failures += 1
                logger.debug(
                    "Connect to %s failed (attempt %d/%d): %s",
                    session.device, attempt, attempts, e,
                )
                if attempt < attempts:
                    delay = min(
                        self._config.connect_backoff_seconds * attempt,
                        self._config.connect_backoff_max_seconds,
                    )
                    await self._sleep(delay)
                continue
            session.transport = transport
            self._stats.connections_opened += 1
            return transport

        logger.warning(
            "Device %s unreachable after %d connection attempts", session.device, attempts
        )
        raise DeviceConnectionError(
            session.device.key, f"unreachable after {attempts} attempts: {last_error}", attempts
        )

    async def _read_spans(
        self, transport: Transport, registers: Sequence[RegisterMapping]
    ) -> list[tuple[int, list[int], list[RegisterMapping]]]:
        blocks = []
        for start, count, members in plan_spans(registers, self._config.max_registers_per_request):
            words = await transport.read_registers(start, count)
            blocks.append((start, words, members))
        return blocks

    async def _recycle(self, session: _DeviceSession, reason: str) -> None:
        """Drop a transport whose request state is unknown."""
        if session.transport is not None:
            logger.debug("Recycling connection to %s (%s)", session.device, reason)
            await self._close_transport(session)
            self._stats.connections_recycled += 1

    async def _recycle_if_broken(self, session: _DeviceSession) -> None:
        if session.transport is not None and not session.transport.connected:
            await self._recycle(session, "link lost")

    async def _close_transport(self, session: _DeviceSession) -> None:
        transport, session.transport = session.transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except Exception:
            logger.debug("Error closing transport for %s", session.device, exc_info=True)
