"""Data access layer for all database operations."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Mapping, Sequence

import aiosqlite

from meter_collector.catalog.models import (
    DataType,
    DeviceAddress,
    Meter,
    ProtocolKind,
    RegisterMapping,
)
from meter_collector.collector.models import PendingReading, TimeoutEvent
from meter_collector.errors import PersistenceError
from meter_collector.status import CollectionCycleStatus

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


_UPSERT_READING = """INSERT INTO meter_readings
    (tenant_id, meter_id, meter_element_id, data_point, value,
     unit, quality, source, timestamp, created_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT (meter_id, meter_element_id, data_point, timestamp)
    DO UPDATE SET
      tenant_id = excluded.tenant_id,
      value = excluded.value,
      unit = excluded.unit,
      quality = excluded.quality,
      source = excluded.source,
      uploaded_at = NULL"""


class Repository:
    """Centralised data access for all tables.

    Serves as the catalog source for MeterCatalog and as the reading store
    for CollectionEngine.
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self.db = db
        self._write_lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Exclusive unit of writes on the shared connection.

        Only one transaction is open at a time. Commits on success, rolls
        back on any error or cancellation. Not re-entrant.
        """
        async with self._write_lock:
            try:
                yield
            except BaseException:
                await self.db.rollback()
                raise
            await self.db.commit()

    # ── Catalog ─────────────────────────────────────────────

    async def get_active_meters(self) -> list[Meter]:
        async with self.db.execute(
            "SELECT * FROM meters WHERE active = 1 ORDER BY meter_id, element_id"
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._meter_from_row(r) for r in rows]

    async def get_device_registers(self, device: DeviceAddress) -> list[RegisterMapping]:
        async with self.db.execute(
            """SELECT * FROM register_maps
               WHERE host = ? AND port = ? AND unit_id = ?
               ORDER BY address, data_point""",
            (device.host, device.port, device.unit_id),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            RegisterMapping(
                address=r["address"],
                data_point=r["data_point"],
                data_type=DataType(r["data_type"]),
                scale=r["scale"],
                unit=r["unit"],
                element_id=r["element_id"],
            )
            for r in rows
        ]

    async def upsert_meter(self, meter: Meter) -> None:
        async with self.transaction():
            await self._upsert_meter(meter)

    async def replace_device_registers(
        self, device: DeviceAddress, registers: Sequence[RegisterMapping]
    ) -> None:
        async with self.transaction():
            await self._replace_device_registers(device, registers)

    async def deactivate_meters_except(self, keep: Sequence[tuple[int, int]]) -> int:
        async with self.transaction():
            return await self._deactivate_meters_except(keep)

    async def sync_catalog(
        self,
        meters: Sequence[Meter],
        registers: Mapping[DeviceAddress, Sequence[RegisterMapping]],
        keep: Sequence[tuple[int, int]],
    ) -> int:
        """Apply a remote catalog in one transaction. Returns the deactivated count."""
        async with self.transaction():
            for m in meters:
                await self._upsert_meter(m)
            for device, maps in registers.items():
                await self._replace_device_registers(device, maps)
            return await self._deactivate_meters_except(keep)

    async def _upsert_meter(self, meter: Meter) -> None:
        await self.db.execute(
            """INSERT INTO meters
               (meter_id, element_id, tenant_id, name, host, port, protocol,
                unit_id, active, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (meter_id, element_id) DO UPDATE SET
                 tenant_id = excluded.tenant_id,
                 name = excluded.name,
                 host = excluded.host,
                 port = excluded.port,
                 protocol = excluded.protocol,
                 unit_id = excluded.unit_id,
                 active = excluded.active,
                 updated_at = excluded.updated_at""",
            (
                meter.meter_id, meter.element_id, meter.tenant_id, meter.name,
                meter.device.host, meter.device.port, meter.device.protocol.value,
                meter.device.unit_id, 1 if meter.active else 0, _now(),
            ),
        )

    async def _replace_device_registers(
        self, device: DeviceAddress, registers: Sequence[RegisterMapping]
    ) -> None:
        """Swap the full register map of one device."""
        await self.db.execute(
            "DELETE FROM register_maps WHERE host = ? AND port = ? AND unit_id = ?",
            (device.host, device.port, device.unit_id),
        )
        await self.db.executemany(
            """INSERT OR REPLACE INTO register_maps
               (host, port, unit_id, address, data_point, data_type, scale, unit, element_id)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    device.host, device.port, device.unit_id, r.address, r.data_point,
                    r.data_type.value, r.scale, r.unit, r.element_id,
                )
                for r in registers
            ],
        )

    async def _deactivate_meters_except(self, keep: Sequence[tuple[int, int]]) -> int:
        """Mark every meter not in ``keep`` (meter_id, element_id) inactive."""
        async with self.db.execute(
            "SELECT meter_id, element_id FROM meters WHERE active = 1"
        ) as cursor:
            rows = await cursor.fetchall()
        keep_set = set(keep)
        stale = [(r[0], r[1]) for r in rows if (r[0], r[1]) not in keep_set]
        if stale:
            await self.db.executemany(
                "UPDATE meters SET active = 0, updated_at = ? WHERE meter_id = ? AND element_id = ?",
                [(_now(), m, e) for m, e in stale],
            )
        return len(stale)

    @staticmethod
    def _meter_from_row(row: aiosqlite.Row) -> Meter:
        return Meter(
            meter_id=row["meter_id"],
            element_id=row["element_id"],
            tenant_id=row["tenant_id"],
            device=DeviceAddress(
                host=row["host"],
                port=row["port"],
                protocol=ProtocolKind(row["protocol"]),
                unit_id=row["unit_id"],
            ),
            name=row["name"],
            active=bool(row["active"]),
            last_read_at=_parse(row["last_read_at"]),
        )

    # ── Readings ────────────────────────────────────────────

    async def persist_readings(self, readings: Sequence[PendingReading]) -> list[bool]:
        """Upsert readings on their natural key. Returns one flag per reading.

        Re-persisting the same reading updates it in place, so a retried
        cycle never creates duplicates.
        """
        created = _now()
        results: list[bool] = []
        try:
            async with self.transaction():
                for r in readings:
                    try:
                        await self.db.execute(_UPSERT_READING, (
                            r.tenant_id, r.meter_id, r.element_id, r.data_point, r.value,
                            r.unit, r.quality.value, r.source.value,
                            r.timestamp.isoformat(), created,
                        ))
                        results.append(True)
                    except aiosqlite.IntegrityError as e:
                        logger.warning("Reading %s rejected: %s", r.natural_key, e)
                        results.append(False)
        except aiosqlite.Error as e:
            raise PersistenceError(f"persisting {len(readings)} readings failed: {e}") from e
        return results

    async def get_readings(
        self, meter_id: int | None = None, element_id: int | None = None, limit: int = 1000
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if meter_id is not None:
            clauses.append("meter_id = ?")
            params.append(meter_id)
        if element_id is not None:
            clauses.append("meter_element_id = ?")
            params.append(element_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        async with self.db.execute(
            f"SELECT * FROM meter_readings {where} ORDER BY timestamp, meter_id, "
            "meter_element_id, data_point LIMIT ?",
            params,
        ) as cursor:
            rows = await cursor.fetchall()
            return [dict(r) for r in rows]

    async def count_readings(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM meter_readings") as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def get_unuploaded_readings(self, limit: int = 500) -> list[dict[str, Any]]:
        async with self.db.execute(
            "SELECT * FROM meter_readings WHERE uploaded_at IS NULL ORDER BY id LIMIT ?",
            (limit,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [dict(r) for r in rows]

    async def mark_readings_uploaded(self, reading_ids: Sequence[int]) -> None:
        if not reading_ids:
            return
        now = _now()
        async with self.transaction():
            await self.db.executemany(
                "UPDATE meter_readings SET uploaded_at = ? WHERE id = ?",
                [(now, rid) for rid in reading_ids],
            )

    async def mark_meters_read(self, meters: Sequence[Meter], read_at: datetime) -> None:
        try:
            async with self.transaction():
                await self.db.executemany(
                    "UPDATE meters SET last_read_at = ? WHERE meter_id = ? AND element_id = ?",
                    [(read_at.isoformat(), m.meter_id, m.element_id) for m in meters],
                )
        except aiosqlite.Error as e:
            raise PersistenceError(f"updating last_read_at failed: {e}") from e

    # ── Telemetry ───────────────────────────────────────────

    async def record_timeout_events(self, events: Sequence[TimeoutEvent]) -> None:
        try:
            async with self.transaction():
                await self.db.executemany(
                    """INSERT INTO timeout_events
                       (operation, timeout_ms, meter_id, element_id, device_key, detail, occurred_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    [
                        (
                            e.operation.value, e.timeout_ms, e.meter_id, e.element_id,
                            e.device_key, e.detail, e.timestamp.isoformat(),
                        )
                        for e in events
                    ],
                )
        except aiosqlite.Error as e:
            raise PersistenceError(f"recording {len(events)} timeout events failed: {e}") from e

    async def get_timeout_events(
        self, operation: str | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        if operation:
            sql = "SELECT * FROM timeout_events WHERE operation = ? ORDER BY id DESC LIMIT ?"
            params: tuple[Any, ...] = (operation, limit)
        else:
            sql = "SELECT * FROM timeout_events ORDER BY id DESC LIMIT ?"
            params = (limit,)
        async with self.db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
            return [dict(r) for r in rows]

    async def record_cycle(self, status: CollectionCycleStatus) -> None:
        try:
            async with self.transaction():
                await self.db.execute(
                    """INSERT INTO collection_cycles
                       (cycle_id, started_at, completed_at, meters_processed, meters_failed, errors_json)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (
                        status.cycle_id, _iso(status.started_at) or _now(),
                        _iso(status.completed_at), status.meters_processed,
                        status.meters_failed, json.dumps(list(status.errors)),
                    ),
                )
        except aiosqlite.Error as e:
            raise PersistenceError(f"recording cycle {status.cycle_id} failed: {e}") from e

    async def get_recent_cycles(self, limit: int = 20) -> list[dict[str, Any]]:
        async with self.db.execute(
            "SELECT * FROM collection_cycles ORDER BY id DESC LIMIT ?", (limit,)
        ) as cursor:
            rows = await cursor.fetchall()
        result = []
        for r in rows:
            d = dict(r)
            d["errors"] = json.loads(d.pop("errors_json") or "[]")
            result.append(d)
        return result

    # ── Sync ────────────────────────────────────────────────

    async def record_sync_skip(
        self, skipped_at: datetime, mode: str, reason: str, status: dict[str, Any]
    ) -> None:
        async with self.transaction():
            await self.db.execute(
                "INSERT INTO sync_skips (skipped_at, mode, reason, status_json) VALUES (?, ?, ?, ?)",
                (skipped_at.isoformat(), mode, reason, json.dumps(status)),
            )

    async def get_sync_skips(self, limit: int = 50) -> list[dict[str, Any]]:
        async with self.db.execute(
            "SELECT * FROM sync_skips ORDER BY id DESC LIMIT ?", (limit,)
        ) as cursor:
            rows = await cursor.fetchall()
        result = []
        for r in rows:
            d = dict(r)
            d["status"] = json.loads(d.pop("status_json"))
            result.append(d)
        return result

    async def record_sync_run(
        self,
        started_at: datetime,
        completed_at: datetime,
        mode: str,
        status: str,
        detail: str = "",
    ) -> None:
        async with self.transaction():
            await self.db.execute(
                """INSERT INTO sync_runs (started_at, completed_at, mode, status, detail)
                   VALUES (?, ?, ?, ?, ?)""",
                (started_at.isoformat(), completed_at.isoformat(), mode, status, detail),
            )

    async def get_sync_runs(self, limit: int = 50) -> list[dict[str, Any]]:
        async with self.db.execute(
            "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [dict(r) for r in rows]
