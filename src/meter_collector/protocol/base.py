"""Transport protocol for field devices and the per-protocol transport factory."""

from __future__ import annotations

from typing import Callable, Protocol, runtime_checkable

from meter_collector.catalog.models import DeviceAddress, ProtocolKind
from meter_collector.config.schema import ProtocolConfig
from meter_collector.errors import DeviceConnectionError


@runtime_checkable
class Transport(Protocol):
    """One connection to one device. Not safe for concurrent use."""

    @property
    def connected(self) -> bool:
        ...

    async def connect(self) -> None:
        """Open the connection. Raises DeviceConnectionError on failure."""
        ...

    async def close(self) -> None:
        ...

    async def read_registers(self, address: int, count: int) -> list[int]:
        """Read ``count`` consecutive 16-bit registers starting at ``address``.

        Raises ProtocolReadError for exception responses or a broken link.
        """
        ...


TransportBuilder = Callable[[DeviceAddress, ProtocolConfig], Transport]


class TransportFactory:
    """Maps a device's protocol kind to the transport that speaks it."""

    def __init__(self, config: ProtocolConfig) -> None:
        self._config = config
        self._builders: dict[ProtocolKind, TransportBuilder] = {}

    def register(self, kind: ProtocolKind, builder: TransportBuilder) -> None:
        self._builders[kind] = builder

    def supports(self, kind: ProtocolKind) -> bool:
        return kind in self._builders

    def create(self, device: DeviceAddress) -> Transport:
        builder = self._builders.get(device.protocol)
        if builder is None:
            raise DeviceConnectionError(
                device.key, f"no transport registered for protocol '{device.protocol.value}'"
            )
        return builder(device, self._config)


def default_transport_factory(config: ProtocolConfig) -> TransportFactory:
    """Factory with every transport shipped in this package registered."""
    from meter_collector.protocol.modbus import ModbusTcpTransport

    factory = TransportFactory(config)
    factory.register(ProtocolKind.MODBUS, ModbusTcpTransport)
    return factory
