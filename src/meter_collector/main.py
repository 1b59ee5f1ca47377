"""Meter collector application entry point and lifecycle orchestrator.

Startup sequence:
  config → logging → SQLite → runtime settings → context →
  catalog load (fail-fast) → scheduler → status API
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
from pathlib import Path

import aiosqlite

from meter_collector import __version__
from meter_collector.config.manager import ConfigManager
from meter_collector.config.resolve import resolve_runtime_config
from meter_collector.config.schema import AppConfig
from meter_collector.context import AppContext
from meter_collector.db.engine import close_db, init_db
from meter_collector.errors import CatalogLoadError
from meter_collector.logging.structured import setup_logging
from meter_collector.scheduling.scheduler import CycleScheduler

logger = logging.getLogger(__name__)


class Application:
    """Main application lifecycle manager.

    Wires all modules together and manages startup/shutdown ordering.
    """

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self._running = False
        self._stop_event = asyncio.Event()
        self._db: aiosqlite.Connection | None = None
        self._server = None
        self.context: AppContext | None = None
        self.scheduler: CycleScheduler | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start all components in dependency order. Blocks until stopped.

        Raises CatalogLoadError when the meter catalog cannot be loaded.
        """
        logger.info("Starting meter collector v%s", __version__)
        self._running = True
        self._stop_event.clear()

        # ── 1. Database ───────────────────────────────────────
        self._db = await init_db(self.config.db.path)

        # ── 2. Runtime settings (env overrides, legacy values) ─
        settings = resolve_runtime_config(self.config, dict(os.environ))

        # ── 3. Collaborators ──────────────────────────────────
        self.context = AppContext.build(self.config, settings, self._db)

        # ── 4. Catalog: no collection without one ─────────────
        await self.context.catalog.load()

        # ── 5. Scheduler ──────────────────────────────────────
        self.scheduler = CycleScheduler(self.context)
        self.scheduler.start()

        # ── 6. Status API ─────────────────────────────────────
        if self.config.api.enabled:
            import uvicorn

            from meter_collector.api.app import create_app

            app = create_app(self.context, self.scheduler)
            uvi_config = uvicorn.Config(
                app,
                host=self.config.api.host,
                port=self.config.api.port,
                log_level="warning",
            )
            server = uvicorn.Server(uvi_config)
            # Process signal handling stays in main().
            server.install_signal_handlers = lambda: None
            self._server = server
            logger.info(
                "Status API available at http://%s:%d/api/status",
                self.config.api.host,
                self.config.api.port,
            )
            await server.serve()
        else:
            await self._stop_event.wait()

    async def stop(self) -> None:
        """Gracefully stop all components in reverse order."""
        if not self._running:
            return

        logger.info("Shutting down meter collector")
        self._running = False
        self._stop_event.set()

        if self._server is not None:
            self._server.should_exit = True

        # Waits for an in-flight collection cycle to persist
        if self.scheduler is not None:
            await self.scheduler.stop()

        if self.context is not None:
            await self.context.close()

        if self._db is not None:
            await close_db(self._db)
            self._db = None

        logger.info("Meter collector stopped")


def main() -> None:
    """Entry point for the application."""
    defaults_path = Path(os.environ.get("METER_COLLECTOR_DEFAULTS", "config.defaults.yaml"))
    user_path = Path(os.environ.get("METER_COLLECTOR_CONFIG", "config.yaml"))

    config_manager = ConfigManager(defaults_path, user_path)
    config = config_manager.load()

    setup_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=config.logging.file,
    )

    app = Application(config)
    exit_code = 0
    stop_requested = False
    signal_count = 0

    async def _run() -> None:
        nonlocal exit_code
        try:
            await app.start()
        except CatalogLoadError as e:
            logger.critical("Startup aborted: %s", e)
            exit_code = 1
        finally:
            if app.running:
                await app.stop()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def _request_stop() -> None:
        nonlocal stop_requested, signal_count
        signal_count += 1
        if signal_count >= 2:
            os._exit(130)
        if stop_requested or loop.is_closed():
            return
        stop_requested = True
        loop.call_soon_threadsafe(lambda: asyncio.create_task(app.stop()))

    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_stop)
    else:
        signal.signal(signal.SIGINT, lambda *_: _request_stop())
        if hasattr(signal, "SIGTERM"):
            signal.signal(signal.SIGTERM, lambda *_: _request_stop())

    try:
        loop.run_until_complete(_run())
    except KeyboardInterrupt:
        _request_stop()
        with contextlib.suppress(Exception):
            loop.run_until_complete(app.stop())
    finally:
        pending = [task for task in asyncio.all_tasks(loop) if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            with contextlib.suppress(Exception):
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
