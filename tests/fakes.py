"""In-memory stand-ins for field devices, storage and time used across tests."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from meter_collector.catalog.models import DeviceAddress, Meter, ProtocolKind, RegisterMapping
from meter_collector.collector.models import PendingReading, TimeoutEvent
from meter_collector.config.schema import ProtocolConfig
from meter_collector.errors import DeviceConnectionError, ProtocolReadError
from meter_collector.protocol.base import TransportFactory
from meter_collector.protocol.client import DeviceProtocolClient
from meter_collector.status import CollectionCycleStatus, StatusCell

HANG_SECONDS = 30.0


@dataclass
class FakeDevice:
    """Behaviour of one simulated device.

    ``max_request_count``: requests for more words than this never answer.
    ``unresponsive``: no request ever answers.
    ``refuse_connect``: every connection attempt fails.
    """

    words: dict[int, int] = field(default_factory=dict)
    latency: float = 0.0
    max_request_count: int | None = None
    unresponsive: bool = False
    refuse_connect: bool = False
    exception_addresses: set[int] = field(default_factory=set)
    requests: list[tuple[int, int]] = field(default_factory=list)
    connects: int = 0
    in_flight: int = 0
    max_in_flight: int = 0


class FakeNetwork:
    """Devices keyed by address plus global concurrency accounting."""

    def __init__(self) -> None:
        self.devices: dict[str, FakeDevice] = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self.transports: list[FakeTransport] = []

    def add(self, device: DeviceAddress, **kwargs: Any) -> FakeDevice:
        fake = FakeDevice(**kwargs)
        self.devices[device.key] = fake
        return fake

    def factory(self, config: ProtocolConfig | None = None) -> TransportFactory:
        factory = TransportFactory(config or ProtocolConfig())

        def build(device: DeviceAddress, _config: ProtocolConfig) -> FakeTransport:
            transport = FakeTransport(self, device)
            self.transports.append(transport)
            return transport

        factory.register(ProtocolKind.MODBUS, build)
        return factory


class FakeTransport:
    def __init__(self, network: FakeNetwork, device: DeviceAddress) -> None:
        self._network = network
        self._device = device
        self._connected = False
        self.closed = False

    @property
    def fake(self) -> FakeDevice:
        return self._network.devices[self._device.key]

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self.fake.connects += 1
        if self.fake.refuse_connect:
            raise DeviceConnectionError(self._device.key, "connection refused")
        self._connected = True

    async def close(self) -> None:
        self._connected = False
        self.closed = True

    async def read_registers(self, address: int, count: int) -> list[int]:
        fake = self.fake
        net = self._network
        fake.requests.append((address, count))
        fake.in_flight += 1
        net.in_flight += 1
        fake.max_in_flight = max(fake.max_in_flight, fake.in_flight)
        net.max_in_flight = max(net.max_in_flight, net.in_flight)
        try:
            if fake.unresponsive or (
                fake.max_request_count is not None and count > fake.max_request_count
            ):
                await asyncio.sleep(HANG_SECONDS)
            if fake.latency:
                await asyncio.sleep(fake.latency)
            if any(a in fake.exception_addresses for a in range(address, address + count)):
                raise ProtocolReadError("read", "illegal data address", self._device.key)
            return [fake.words.get(a, a) for a in range(address, address + count)]
        finally:
            fake.in_flight -= 1
            net.in_flight -= 1


def make_client(network: FakeNetwork, **overrides: Any) -> DeviceProtocolClient:
    """Protocol client over the fake network with instant connect backoff."""
    config = ProtocolConfig(connect_backoff_seconds=0.0, **overrides)

    async def no_sleep(_seconds: float) -> None:
        return None

    return DeviceProtocolClient(config, transport_factory=network.factory(config), sleep=no_sleep)


def device(n: int = 1) -> DeviceAddress:
    return DeviceAddress(host=f"10.0.0.{n}", port=502, unit_id=1)


def meter(meter_id: int, dev: DeviceAddress | None = None, element_id: int = 0, tenant_id: int = 7) -> Meter:
    return Meter(
        meter_id=meter_id,
        element_id=element_id,
        tenant_id=tenant_id,
        device=dev or device(meter_id),
    )


def registers(n: int, start: int = 0) -> list[RegisterMapping]:
    """``n`` consecutive uint16 registers."""
    return [RegisterMapping(address=start + i, data_point=f"dp_{start + i}") for i in range(n)]


class FixedClock:
    """Wall clock pinned at ``now``; real monotonic time and sleep."""

    def __init__(self, now: datetime | None = None) -> None:
        self._now = now or datetime(2026, 3, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now = self._now + timedelta(seconds=seconds)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class InMemoryCatalogSource:
    def __init__(
        self,
        meters: Sequence[Meter] = (),
        register_map: dict[DeviceAddress, list[RegisterMapping]] | None = None,
    ) -> None:
        self.meters = list(meters)
        self.register_map = dict(register_map or {})
        self.fail = False

    async def get_active_meters(self) -> list[Meter]:
        if self.fail:
            raise RuntimeError("catalog store offline")
        return list(self.meters)

    async def get_device_registers(self, device: DeviceAddress) -> list[RegisterMapping]:
        return list(self.register_map.get(device, []))


class InMemoryStore:
    """Reading store that remembers what it was given.

    With ``status`` set, records whether the cycle was still marked in
    progress at the moment readings were persisted.
    """

    def __init__(self, status: StatusCell | None = None) -> None:
        self._status = status
        self.readings: dict[tuple, PendingReading] = {}
        self.persist_calls = 0
        self.timeout_events: list[TimeoutEvent] = []
        self.cycles: list[CollectionCycleStatus] = []
        self.meters_read: list[tuple[Meter, datetime]] = []
        self.in_progress_during_persist: list[bool] = []
        self.fail_persist = False
        self.reject_keys: set[tuple] = set()
        self.persist_delay = 0.0

    async def persist_readings(self, readings: Sequence[PendingReading]) -> list[bool]:
        self.persist_calls += 1
        if self._status is not None:
            self.in_progress_during_persist.append(self._status.current.in_progress)
        if self.persist_delay:
            await asyncio.sleep(self.persist_delay)
        if self.fail_persist:
            raise RuntimeError("disk full")
        results = []
        for r in readings:
            if r.natural_key in self.reject_keys:
                results.append(False)
                continue
            self.readings[r.natural_key] = r
            results.append(True)
        return results

    async def record_timeout_events(self, events: Sequence[TimeoutEvent]) -> None:
        self.timeout_events.extend(events)

    async def mark_meters_read(self, meters: Sequence[Meter], read_at: datetime) -> None:
        self.meters_read.extend((m, read_at) for m in meters)

    async def record_cycle(self, status: CollectionCycleStatus) -> None:
        self.cycles.append(status)
