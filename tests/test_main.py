"""Tests for Application lifecycle wiring."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from meter_collector.config.schema import AppConfig
from meter_collector.errors import CatalogLoadError
from meter_collector.main import Application


def _config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        db={"path": str(tmp_path / "app.db")},
        api={"enabled": False},
        schedule={"run_collection_on_start": False},
    )


class TestApplicationConstruction:
    def test_initial_state(self, tmp_path: Path) -> None:
        config = _config(tmp_path)
        app = Application(config)
        assert app.config is config
        assert app.running is False
        assert app.context is None
        assert app.scheduler is None


@pytest.mark.asyncio
class TestApplicationLifecycle:
    async def test_start_and_stop(self, tmp_path: Path) -> None:
        app = Application(_config(tmp_path))
        task = asyncio.create_task(app.start())
        for _ in range(100):
            if app.scheduler is not None:
                break
            await asyncio.sleep(0.01)

        assert app.running
        assert app.context is not None
        assert app.context.catalog.is_loaded
        assert set(app.scheduler.triggers) == {"collection", "idle_reaper"}

        await app.stop()
        await asyncio.wait_for(task, timeout=2)
        assert app.running is False

    async def test_stop_without_start_is_noop(self, tmp_path: Path) -> None:
        app = Application(_config(tmp_path))
        await app.stop()
        assert app.running is False

    async def test_catalog_failure_aborts_startup(self, tmp_path: Path, monkeypatch) -> None:
        async def broken(self):
            raise RuntimeError("meters table unreadable")

        monkeypatch.setattr(
            "meter_collector.db.repository.Repository.get_active_meters", broken
        )
        app = Application(_config(tmp_path))
        with pytest.raises(CatalogLoadError):
            await app.start()
        await app.stop()
        assert app.scheduler is None
