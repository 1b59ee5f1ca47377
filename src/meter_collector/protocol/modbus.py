"""Modbus TCP transport built on pymodbus.

Registers are read as holding registers (function code 3). Timeouts are
enforced by the protocol client around each operation, so the underlying
pymodbus client is created without its own retry loop.
"""

from __future__ import annotations

import asyncio
import logging

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ModbusException

from meter_collector.catalog.models import DeviceAddress
from meter_collector.config.schema import ProtocolConfig
from meter_collector.errors import DeviceConnectionError, ProtocolReadError

logger = logging.getLogger(__name__)


class ModbusTcpTransport:
    """Single Modbus TCP connection to one device unit."""

    def __init__(self, device: DeviceAddress, config: ProtocolConfig) -> None:
        self._device = device
        self._config = config
        self._client: AsyncModbusTcpClient | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None and self._client.connected

    async def connect(self) -> None:
        """Establish the Modbus TCP connection."""
        if self._client is not None:
            self._client.close()
            self._client = None

        self._client = AsyncModbusTcpClient(
            host=self._device.host,
            port=self._device.port,
            timeout=self._config.transport_timeout_seconds,
            retries=0,
        )
        try:
            connected = await asyncio.wait_for(
                self._client.connect(), self._config.connect_timeout_seconds
            )
        except (OSError, asyncio.TimeoutError, ModbusException) as e:
            self._client.close()
            self._client = None
            raise DeviceConnectionError(self._device.key, f"connect failed: {e}") from e
        if not connected:
            self._client = None
            raise DeviceConnectionError(
                self._device.key,
                f"failed to connect to {self._device.host}:{self._device.port}",
            )
        logger.debug("Connected to %s (unit %d)", self._device, self._device.unit_id)

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.debug("Closed connection to %s", self._device)

    async def read_registers(self, address: int, count: int) -> list[int]:
        """Read a block of holding registers."""
        if self._client is None:
            raise ProtocolReadError("read", "not connected", self._device.key)
        try:
            result = await self._client.read_holding_registers(
                address, count=count, device_id=self._device.unit_id
            )
        except ModbusException as e:
            raise ProtocolReadError(
                "read", f"holding registers {address}+{count}: {e}", self._device.key
            ) from e
        if result.isError():
            raise ProtocolReadError(
                "read", f"exception response at {address}+{count}: {result}", self._device.key
            )
        return list(result.registers)
