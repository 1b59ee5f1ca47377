"""Meter, device address and register mapping data model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Mapping


class ProtocolKind(str, Enum):
    """Field protocols a device can be reached over."""

    MODBUS = "modbus"
    BACNET = "bacnet"


class DataType(str, Enum):
    UINT16 = "uint16"
    INT16 = "int16"
    UINT32 = "uint32"
    INT32 = "int32"
    FLOAT32 = "float32"

    @property
    def width(self) -> int:
        """Number of 16-bit registers occupied."""
        return 1 if self in (DataType.UINT16, DataType.INT16) else 2


@dataclass(frozen=True)
class DeviceAddress:
    """Network address of a metering device."""

    host: str
    port: int = 502
    protocol: ProtocolKind = ProtocolKind.MODBUS
    unit_id: int = 1

    @property
    def key(self) -> str:
        return f"{self.host}:{self.port}:{self.unit_id}"

    def __str__(self) -> str:
        return f"{self.protocol.value}://{self.key}"


@dataclass(frozen=True)
class RegisterMapping:
    """One register → data point mapping on a device."""

    address: int
    data_point: str
    data_type: DataType = DataType.UINT16
    scale: float = 1.0  # raw value is divided by scale
    unit: str = ""
    element_id: int | None = None  # None = shared by every element on the device

    @property
    def count(self) -> int:
        return self.data_type.width

    @property
    def end(self) -> int:
        """First address after this register."""
        return self.address + self.count


@dataclass(frozen=True)
class Meter:
    """A (meter, element) read unit.

    A physical meter exposing several elements (e.g. phases) appears once per
    element; readings are never shared between elements.
    """

    meter_id: int
    element_id: int
    tenant_id: int
    device: DeviceAddress
    name: str = ""
    active: bool = True
    last_read_at: datetime | None = None

    @property
    def label(self) -> str:
        return f"meter {self.meter_id}/{self.element_id}"


@dataclass(frozen=True)
class CatalogSnapshot:
    """Immutable view of active meters and per-device register maps."""

    meters: tuple[Meter, ...] = ()
    registers: Mapping[DeviceAddress, tuple[RegisterMapping, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    loaded_at: datetime | None = None

    @property
    def register_count(self) -> int:
        return sum(len(r) for r in self.registers.values())

    def registers_for(self, meter: Meter) -> tuple[RegisterMapping, ...]:
        """Registers read for one meter element, in address order."""
        return tuple(
            r for r in self.registers.get(meter.device, ())
            if r.element_id is None or r.element_id == meter.element_id
        )
