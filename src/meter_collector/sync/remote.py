"""Pull meters and register maps from the remote catalog API."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from meter_collector.catalog.catalog import MeterCatalog
from meter_collector.catalog.models import (
    DataType,
    DeviceAddress,
    Meter,
    ProtocolKind,
    RegisterMapping,
)
from meter_collector.config.schema import SyncConfig
from meter_collector.db.repository import Repository

logger = logging.getLogger(__name__)


class RemoteRegister(BaseModel):
    address: int = Field(ge=0, le=0xFFFF)
    data_point: str
    data_type: DataType = DataType.UINT16
    scale: float = 1.0
    unit: str = ""
    element_id: int | None = None


class RemoteMeter(BaseModel):
    meter_id: int
    element_id: int = 0
    tenant_id: int
    name: str = ""
    host: str
    port: int = 502
    protocol: ProtocolKind = ProtocolKind.MODBUS
    unit_id: int = 1
    active: bool = True
    registers: list[RemoteRegister] = []

    def to_meter(self) -> Meter:
        return Meter(
            meter_id=self.meter_id,
            element_id=self.element_id,
            tenant_id=self.tenant_id,
            device=DeviceAddress(
                host=self.host, port=self.port, protocol=self.protocol, unit_id=self.unit_id
            ),
            name=self.name,
            active=self.active,
        )


class RemoteCatalogSync:
    """Fetches ``GET /meters`` and replaces the local catalog with it.

    The remote response is a list of meter elements, each carrying the
    register map of its device. Meters missing from the response are
    deactivated. The in-memory catalog is reloaded after the write commits.
    """

    def __init__(
        self,
        config: SyncConfig,
        repo: Repository,
        catalog: MeterCatalog,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._repo = repo
        self._catalog = catalog
        headers = {"Authorization": f"Bearer {config.api_key}"} if config.api_key else {}
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            headers=headers,
            timeout=config.timeout_seconds,
        )

    async def fetch(self) -> list[RemoteMeter]:
        resp = await self._client.get("/meters")
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, list):
            raise ValueError("remote catalog response is not a list")
        meters = []
        for entry in data:
            try:
                meters.append(RemoteMeter.model_validate(entry))
            except ValidationError as e:
                logger.warning("Ignoring invalid remote meter entry %r: %s", entry, e)
        return meters

    async def run(self) -> dict[str, Any]:
        remote = await self.fetch()

        registers: dict[DeviceAddress, dict[tuple[int, str], RegisterMapping]] = {}
        for rm in remote:
            device_maps = registers.setdefault(rm.to_meter().device, {})
            for rr in rm.registers:
                device_maps[(rr.address, rr.data_point)] = RegisterMapping(
                    address=rr.address,
                    data_point=rr.data_point,
                    data_type=rr.data_type,
                    scale=rr.scale,
                    unit=rr.unit,
                    element_id=rr.element_id,
                )

        deactivated = await self._repo.sync_catalog(
            [rm.to_meter() for rm in remote],
            {device: list(maps.values()) for device, maps in registers.items()},
            [(rm.meter_id, rm.element_id) for rm in remote if rm.active],
        )

        reloaded = await self._catalog.reload()
        return {
            "meters": len(remote),
            "devices": len(registers),
            "registers": sum(len(m) for m in registers.values()),
            "deactivated": deactivated,
            "catalog_reloaded": reloaded,
        }

    async def close(self) -> None:
        await self._client.aclose()
