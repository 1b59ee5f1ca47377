"""Tests for the sync coordinator, remote catalog sync and reading upload."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from fakes import FixedClock, device, meter, registers
from meter_collector.catalog.catalog import MeterCatalog
from meter_collector.collector.models import PendingReading, Quality, ReadSource
from meter_collector.config.schema import SyncConfig, UploadConfig
from meter_collector.db.repository import Repository
from meter_collector.status import CollectionCycleStatus, StatusCell
from meter_collector.sync.coordinator import (
    REASON_COLLECTION_IN_PROGRESS,
    REASON_SYNC_RUNNING,
    SyncCoordinator,
    SyncMode,
    SyncStatus,
)
from meter_collector.sync.remote import RemoteCatalogSync
from meter_collector.sync.upload import ReadingUploader

TS = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class StubRemoteSync:
    def __init__(self, delay: float = 0.0, fail: bool = False) -> None:
        self.calls = 0
        self.delay = delay
        self.fail = fail

    async def run(self) -> dict:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("remote unavailable")
        return {"meters": 3}


class RecordingRecorder:
    def __init__(self) -> None:
        self.skips: list[tuple] = []
        self.runs: list[tuple] = []

    async def record_sync_skip(self, skipped_at, mode, reason, status) -> None:
        self.skips.append((skipped_at, mode, reason, status))

    async def record_sync_run(self, started_at, completed_at, mode, status, detail="") -> None:
        self.runs.append((mode, status, detail))


@pytest.mark.asyncio
class TestSyncCoordinator:
    async def test_executes_when_idle(self) -> None:
        remote = StubRemoteSync()
        recorder = RecordingRecorder()
        coordinator = SyncCoordinator(StatusCell(), remote, recorder)

        outcome = await coordinator.trigger(SyncMode.MANUAL)

        assert outcome.status == SyncStatus.EXECUTED
        assert outcome.result == {"meters": 3}
        assert remote.calls == 1
        assert recorder.runs == [("manual", "executed", "")]
        assert coordinator.skip_history() == []

    async def test_skips_during_collection(self) -> None:
        status = StatusCell()
        in_progress = CollectionCycleStatus(cycle_id=9, started_at=TS, in_progress=True, meters_processed=4)
        status.publish(in_progress)
        remote = StubRemoteSync()
        recorder = RecordingRecorder()
        coordinator = SyncCoordinator(status, remote, recorder, clock=FixedClock(TS))

        outcome = await coordinator.trigger(SyncMode.SCHEDULED)

        assert outcome.status == SyncStatus.SKIPPED
        assert outcome.skip is not None
        assert outcome.skip.reason == REASON_COLLECTION_IN_PROGRESS
        assert outcome.skip.status is in_progress
        assert remote.calls == 0
        assert len(coordinator.skip_history()) == 1
        assert recorder.skips[0][1:3] == ("scheduled", REASON_COLLECTION_IN_PROGRESS)
        assert recorder.skips[0][3]["cycle_id"] == 9

    async def test_skip_is_not_retried(self) -> None:
        status = StatusCell()
        status.publish(CollectionCycleStatus(cycle_id=1, in_progress=True))
        remote = StubRemoteSync()
        coordinator = SyncCoordinator(status, remote)

        await coordinator.trigger()
        status.publish(CollectionCycleStatus(cycle_id=1, in_progress=False))
        await asyncio.sleep(0.01)

        assert remote.calls == 0
        outcome = await coordinator.trigger()
        assert outcome.status == SyncStatus.EXECUTED
        assert remote.calls == 1

    async def test_concurrent_trigger_skipped(self) -> None:
        remote = StubRemoteSync(delay=0.03)
        coordinator = SyncCoordinator(StatusCell(), remote)

        first, second = await asyncio.gather(
            coordinator.trigger(SyncMode.SCHEDULED), coordinator.trigger(SyncMode.MANUAL)
        )

        assert first.status == SyncStatus.EXECUTED
        assert second.status == SyncStatus.SKIPPED
        assert second.skip.reason == REASON_SYNC_RUNNING
        assert remote.calls == 1

    async def test_failure_becomes_failed_outcome(self) -> None:
        recorder = RecordingRecorder()
        coordinator = SyncCoordinator(StatusCell(), StubRemoteSync(fail=True), recorder)

        outcome = await coordinator.trigger()

        assert outcome.status == SyncStatus.FAILED
        assert "remote unavailable" in outcome.error
        assert recorder.runs[0][1] == "failed"
        assert coordinator.is_running is False

    async def test_not_configured(self) -> None:
        outcome = await SyncCoordinator(StatusCell(), None).trigger(SyncMode.MANUAL)
        assert outcome.status == SyncStatus.FAILED

    async def test_skip_history_bounded_newest_first(self) -> None:
        status = StatusCell()
        coordinator = SyncCoordinator(status, StubRemoteSync(), history_size=2)
        for cycle_id in (1, 2, 3):
            status.publish(CollectionCycleStatus(cycle_id=cycle_id, in_progress=True))
            await coordinator.trigger()

        history = coordinator.skip_history()
        assert [s.status.cycle_id for s in history] == [3, 2]
        assert coordinator.skip_history(limit=1)[0].status.cycle_id == 3

    async def test_recorder_failure_does_not_raise(self) -> None:
        class BrokenRecorder(RecordingRecorder):
            async def record_sync_skip(self, *args) -> None:
                raise RuntimeError("db locked")

        status = StatusCell()
        status.publish(CollectionCycleStatus(cycle_id=1, in_progress=True))
        coordinator = SyncCoordinator(status, StubRemoteSync(), BrokenRecorder())

        outcome = await coordinator.trigger()
        assert outcome.status == SyncStatus.SKIPPED
        assert len(coordinator.skip_history()) == 1


def _remote_payload() -> list[dict]:
    return [
        {
            "meter_id": 1, "element_id": 0, "tenant_id": 7, "host": "10.0.0.1",
            "registers": [
                {"address": 0, "data_point": "voltage", "scale": 10, "unit": "V"},
                {"address": 1, "data_point": "kwh", "data_type": "uint32", "unit": "kWh"},
            ],
        },
        {"meter_id": 2, "tenant_id": 7, "host": "10.0.0.2", "port": 1502},
        {"meter_id": "broken"},
    ]


@pytest.mark.asyncio
class TestRemoteCatalogSync:
    async def test_pulls_and_reloads(self, repo: Repository) -> None:
        seen_auth: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen_auth.append(request.headers.get("authorization", ""))
            assert request.url.path == "/meters"
            return httpx.Response(200, json=_remote_payload())

        # stale local meter that the remote no longer lists
        await repo.upsert_meter(meter(99, device(99)))
        catalog = MeterCatalog(repo)
        await catalog.load()
        client = httpx.AsyncClient(
            base_url="http://catalog.test",
            headers={"Authorization": "Bearer k"},
            transport=httpx.MockTransport(handler),
        )
        sync = RemoteCatalogSync(SyncConfig(enabled=True, api_key="k"), repo, catalog, client=client)

        result = await sync.run()
        await sync.close()

        assert result["meters"] == 2
        assert result["registers"] == 2
        assert result["deactivated"] == 1
        assert result["catalog_reloaded"] is True
        assert seen_auth == ["Bearer k"]
        assert [m.meter_id for m in catalog.get_active_meters()] == [1, 2]
        regs = catalog.get_device_registers(catalog.get_active_meters()[0].device)
        assert [r.data_point for r in regs] == ["voltage", "kwh"]

    async def test_http_error_propagates(self, repo: Repository) -> None:
        client = httpx.AsyncClient(
            base_url="http://catalog.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        catalog = MeterCatalog(repo)
        sync = RemoteCatalogSync(SyncConfig(enabled=True), repo, catalog, client=client)

        with pytest.raises(httpx.HTTPStatusError):
            await sync.run()
        await sync.close()

    async def test_failed_write_does_not_lose_collected_readings(
        self, repo: Repository, monkeypatch
    ) -> None:
        async def broken(device, regs) -> None:
            await asyncio.sleep(0.01)
            raise RuntimeError("register map rejected")

        monkeypatch.setattr(repo, "_replace_device_registers", broken)
        client = httpx.AsyncClient(
            base_url="http://catalog.test",
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json=_remote_payload())
            ),
        )
        catalog = MeterCatalog(repo)
        sync = RemoteCatalogSync(SyncConfig(enabled=True), repo, catalog, client=client)

        sync_error, persisted = await asyncio.gather(
            sync.run(), repo.persist_readings(_readings(400)), return_exceptions=True
        )
        await sync.close()

        assert isinstance(sync_error, RuntimeError)
        assert persisted == [True] * 400
        assert await repo.count_readings() == 400
        assert await repo.get_active_meters() == []


def _readings(n: int) -> list[PendingReading]:
    return [
        PendingReading(
            tenant_id=7, meter_id=1, element_id=0, data_point=f"dp_{i}", value=float(i),
            unit="", quality=Quality.GOOD, timestamp=TS, source=ReadSource.BATCH,
        )
        for i in range(n)
    ]


@pytest.mark.asyncio
class TestReadingUploader:
    async def test_uploads_in_batches(self, repo: Repository) -> None:
        await repo.persist_readings(_readings(5))
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(202)

        client = httpx.AsyncClient(base_url="http://ingest.test", transport=httpx.MockTransport(handler))
        uploader = ReadingUploader(UploadConfig(enabled=True, batch_size=2), repo, client=client)

        result = await uploader.upload_pending()
        await uploader.close()

        assert result == {"uploaded": 5, "batches": 3, "error": None}
        assert [len(b["readings"]) for b in bodies] == [2, 2, 1]
        assert bodies[0]["readings"][0]["meter_element_id"] == 0
        assert await repo.get_unuploaded_readings() == []

    async def test_failed_batch_left_pending(self, repo: Repository) -> None:
        await repo.persist_readings(_readings(3))
        client = httpx.AsyncClient(
            base_url="http://ingest.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        uploader = ReadingUploader(UploadConfig(enabled=True, batch_size=2), repo, client=client)

        result = await uploader.upload_pending()
        await uploader.close()

        assert result["uploaded"] == 0
        assert result["error"]
        assert len(await repo.get_unuploaded_readings()) == 3
