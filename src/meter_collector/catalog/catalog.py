"""In-memory meter & register catalog with atomic snapshot reloads."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Protocol, Sequence, runtime_checkable

from meter_collector.catalog.models import (
    CatalogSnapshot,
    DeviceAddress,
    Meter,
    RegisterMapping,
)
from meter_collector.errors import CatalogLoadError

logger = logging.getLogger(__name__)


@runtime_checkable
class CatalogSource(Protocol):
    """Backing store the catalog is loaded from."""

    async def get_active_meters(self) -> Sequence[Meter]:
        ...

    async def get_device_registers(self, device: DeviceAddress) -> Sequence[RegisterMapping]:
        ...


class MeterCatalog:
    """Read-only view of active meters and their register maps.

    Readers always see one complete snapshot: ``reload()`` builds the new
    snapshot fully before swapping the reference.
    """

    def __init__(self, source: CatalogSource) -> None:
        self._source = source
        self._snapshot: CatalogSnapshot | None = None

    @property
    def is_loaded(self) -> bool:
        return self._snapshot is not None

    @property
    def snapshot(self) -> CatalogSnapshot:
        if self._snapshot is None:
            raise CatalogLoadError("Catalog not loaded. Call load() first.")
        return self._snapshot

    async def load(self) -> CatalogSnapshot:
        """Populate the catalog. Raises CatalogLoadError on failure."""
        snapshot = await self._build_snapshot()
        self._snapshot = snapshot
        logger.info(
            "Catalog loaded: %d meter elements, %d devices, %d registers",
            len(snapshot.meters), len(snapshot.registers), snapshot.register_count,
        )
        return snapshot

    async def reload(self) -> bool:
        """Swap in a fresh snapshot. On failure the previous one stays in effect."""
        try:
            snapshot = await self._build_snapshot()
        except CatalogLoadError as e:
            logger.warning("Catalog reload failed, keeping previous snapshot: %s", e)
            return False
        self._snapshot = snapshot
        logger.info(
            "Catalog reloaded: %d meter elements, %d registers",
            len(snapshot.meters), snapshot.register_count,
        )
        return True

    def get_active_meters(self) -> tuple[Meter, ...]:
        return self.snapshot.meters

    def get_device_registers(self, device: DeviceAddress) -> tuple[RegisterMapping, ...]:
        return self.snapshot.registers.get(device, ())

    def registers_for(self, meter: Meter) -> tuple[RegisterMapping, ...]:
        return self.snapshot.registers_for(meter)

    async def _build_snapshot(self) -> CatalogSnapshot:
        try:
            meters = [m for m in await self._source.get_active_meters() if m.active]
            registers: dict[DeviceAddress, tuple[RegisterMapping, ...]] = {}
            for device in {m.device for m in meters}:
                mappings = await self._source.get_device_registers(device)
                registers[device] = tuple(sorted(set(mappings), key=lambda r: (r.address, r.data_point)))
        except CatalogLoadError:
            raise
        except Exception as e:
            raise CatalogLoadError(f"Failed to load meter catalog: {e}") from e

        return CatalogSnapshot(
            meters=tuple(sorted(meters, key=lambda m: (m.meter_id, m.element_id))),
            registers=MappingProxyType(registers),
            loaded_at=datetime.now(timezone.utc),
        )
