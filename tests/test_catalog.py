"""Tests for the in-memory meter catalog."""

from __future__ import annotations

import pytest

from fakes import InMemoryCatalogSource, device, meter, registers
from meter_collector.catalog.catalog import MeterCatalog
from meter_collector.catalog.models import DataType, DeviceAddress, Meter, RegisterMapping
from meter_collector.errors import CatalogLoadError


class TestModels:
    def test_device_key(self) -> None:
        dev = DeviceAddress(host="10.1.1.1", port=1502, unit_id=3)
        assert dev.key == "10.1.1.1:1502:3"
        assert str(dev) == "modbus://10.1.1.1:1502:3"

    def test_register_width(self) -> None:
        assert RegisterMapping(address=10, data_point="v").count == 1
        wide = RegisterMapping(address=10, data_point="kwh", data_type=DataType.FLOAT32)
        assert wide.count == 2
        assert wide.end == 12


@pytest.mark.asyncio
class TestMeterCatalog:
    async def test_snapshot_before_load_raises(self) -> None:
        catalog = MeterCatalog(InMemoryCatalogSource())
        assert catalog.is_loaded is False
        with pytest.raises(CatalogLoadError):
            _ = catalog.snapshot

    async def test_load_filters_inactive_and_sorts(self) -> None:
        dev = device(1)
        inactive = Meter(meter_id=1, element_id=0, tenant_id=7, device=dev, active=False)
        source = InMemoryCatalogSource(
            [meter(3, dev), inactive, meter(2, dev)],
            {dev: list(reversed(registers(3)))},
        )
        catalog = MeterCatalog(source)
        snapshot = await catalog.load()
        assert [m.meter_id for m in snapshot.meters] == [2, 3]
        assert [r.address for r in catalog.get_device_registers(dev)] == [0, 1, 2]
        assert snapshot.register_count == 3

    async def test_element_specific_registers(self) -> None:
        dev = device(1)
        shared = RegisterMapping(address=0, data_point="voltage")
        phase_a = RegisterMapping(address=1, data_point="current", element_id=1)
        phase_b = RegisterMapping(address=2, data_point="current", element_id=2)
        source = InMemoryCatalogSource(
            [meter(5, dev, element_id=1), meter(5, dev, element_id=2)],
            {dev: [shared, phase_a, phase_b]},
        )
        catalog = MeterCatalog(source)
        await catalog.load()
        m1, m2 = catalog.get_active_meters()
        assert catalog.registers_for(m1) == (shared, phase_a)
        assert catalog.registers_for(m2) == (shared, phase_b)

    async def test_load_failure_raises(self) -> None:
        source = InMemoryCatalogSource()
        source.fail = True
        with pytest.raises(CatalogLoadError):
            await MeterCatalog(source).load()

    async def test_failed_reload_keeps_previous_snapshot(self) -> None:
        dev = device(1)
        source = InMemoryCatalogSource([meter(1, dev)], {dev: registers(2)})
        catalog = MeterCatalog(source)
        first = await catalog.load()

        source.fail = True
        assert await catalog.reload() is False
        assert catalog.snapshot is first

    async def test_reload_swaps_snapshot(self) -> None:
        dev = device(1)
        source = InMemoryCatalogSource([meter(1, dev)], {dev: registers(2)})
        catalog = MeterCatalog(source)
        first = await catalog.load()

        source.meters.append(meter(2, dev))
        assert await catalog.reload() is True
        assert catalog.snapshot is not first
        assert len(first.meters) == 1
        assert len(catalog.get_active_meters()) == 2
