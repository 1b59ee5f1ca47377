"""Meter & register catalog."""

from meter_collector.catalog.catalog import CatalogSource, MeterCatalog
from meter_collector.catalog.models import (
    CatalogSnapshot,
    DataType,
    DeviceAddress,
    Meter,
    ProtocolKind,
    RegisterMapping,
)

__all__ = [
    "CatalogSnapshot",
    "CatalogSource",
    "DataType",
    "DeviceAddress",
    "Meter",
    "MeterCatalog",
    "ProtocolKind",
    "RegisterMapping",
]
