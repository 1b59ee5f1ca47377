"""Device protocol client and transports."""

from meter_collector.protocol.base import Transport, TransportFactory, default_transport_factory
from meter_collector.protocol.client import (
    BATCH,
    SEQUENTIAL,
    BatchReadResult,
    DeviceProtocolClient,
    SequentialReadResult,
)

__all__ = [
    "BATCH",
    "SEQUENTIAL",
    "BatchReadResult",
    "DeviceProtocolClient",
    "SequentialReadResult",
    "Transport",
    "TransportFactory",
    "default_transport_factory",
]
