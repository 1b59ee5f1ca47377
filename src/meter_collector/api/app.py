"""FastAPI application factory for the collector status API."""

from __future__ import annotations

from fastapi import FastAPI

from meter_collector import __version__
from meter_collector.api.routes import router
from meter_collector.context import AppContext
from meter_collector.scheduling.scheduler import CycleScheduler


def create_app(context: AppContext, scheduler: CycleScheduler | None = None) -> FastAPI:
    """Create the API app. Collaborators are reached through ``app.state``."""
    app = FastAPI(
        title="Meter Collector",
        description="Meter data collection engine status and control",
        version=__version__,
    )
    app.state.context = context
    app.state.scheduler = scheduler
    app.include_router(router, prefix="/api")
    return app
