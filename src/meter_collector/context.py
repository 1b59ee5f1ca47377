"""Application context: every long-lived collaborator, built once at startup."""

from __future__ import annotations

from dataclasses import dataclass, field

import aiosqlite

from meter_collector.catalog.catalog import MeterCatalog
from meter_collector.collector.engine import CollectionEngine
from meter_collector.collector.telemetry import DeviceHealthTracker, TimeoutTelemetry
from meter_collector.config.resolve import RuntimeSettings
from meter_collector.config.schema import AppConfig
from meter_collector.db.repository import Repository
from meter_collector.protocol.client import DeviceProtocolClient
from meter_collector.scheduling.clock import Clock, SystemClock
from meter_collector.status import StatusCell
from meter_collector.sync.coordinator import SyncCoordinator
from meter_collector.sync.remote import RemoteCatalogSync
from meter_collector.sync.upload import ReadingUploader


@dataclass
class AppContext:
    config: AppConfig
    settings: RuntimeSettings
    repo: Repository
    catalog: MeterCatalog
    client: DeviceProtocolClient
    telemetry: TimeoutTelemetry
    health: DeviceHealthTracker
    status: StatusCell
    engine: CollectionEngine
    coordinator: SyncCoordinator
    remote_sync: RemoteCatalogSync | None = None
    uploader: ReadingUploader | None = None
    clock: Clock = field(default_factory=SystemClock)

    @classmethod
    def build(
        cls,
        config: AppConfig,
        settings: RuntimeSettings,
        db: aiosqlite.Connection,
        client: DeviceProtocolClient | None = None,
        clock: Clock | None = None,
    ) -> AppContext:
        """Wire the collaborators together. The catalog is not loaded yet."""
        clock = clock or SystemClock()
        repo = Repository(db)
        catalog = MeterCatalog(repo)
        client = client or DeviceProtocolClient(config.protocol)
        batch_ms = int(settings.batch_read_timeout_ms.value)
        sequential_ms = int(settings.sequential_read_timeout_ms.value)
        telemetry = TimeoutTelemetry(
            batch_ms, sequential_ms, history=config.collection.telemetry_history_size
        )
        health = DeviceHealthTracker()
        status = StatusCell()
        engine = CollectionEngine(
            catalog=catalog,
            client=client,
            store=repo,
            status=status,
            telemetry=telemetry,
            config=config.collection,
            batch_timeout_ms=batch_ms,
            sequential_timeout_ms=sequential_ms,
            health=health,
            clock=clock,
        )
        remote_sync = (
            RemoteCatalogSync(config.sync, repo, catalog) if config.sync.enabled else None
        )
        coordinator = SyncCoordinator(
            status,
            remote_sync,
            recorder=repo,
            clock=clock,
            history_size=config.sync.skip_history_size,
        )
        uploader = ReadingUploader(config.upload, repo) if config.upload.enabled else None
        return cls(
            config=config,
            settings=settings,
            repo=repo,
            catalog=catalog,
            client=client,
            telemetry=telemetry,
            health=health,
            status=status,
            engine=engine,
            coordinator=coordinator,
            remote_sync=remote_sync,
            uploader=uploader,
            clock=clock,
        )

    async def close(self) -> None:
        await self.client.close()
        if self.remote_sync is not None:
            await self.remote_sync.close()
        if self.uploader is not None:
            await self.uploader.close()
