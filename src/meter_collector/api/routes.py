"""REST API endpoints returning JSON data."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from meter_collector.collector.models import OperationType
from meter_collector.errors import CatalogLoadError, CycleInProgressError
from meter_collector.sync.coordinator import SyncMode

router = APIRouter()
logger = logging.getLogger(__name__)


# ── Status ───────────────────────────────────────────

@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@router.get("/status")
async def collector_status(request: Request) -> dict:
    """Current cycle status, scheduler state and resolved settings."""
    ctx = request.app.state.context
    scheduler = request.app.state.scheduler
    return {
        "cycle": ctx.status.current.to_dict(),
        "scheduler": scheduler.describe() if scheduler else {"state": "stopped", "triggers": {}},
        "settings": ctx.settings.describe(),
        "config_warnings": [str(w) for w in ctx.settings.warnings],
        "catalog": {
            "loaded": ctx.catalog.is_loaded,
            "meters": len(ctx.catalog.snapshot.meters) if ctx.catalog.is_loaded else 0,
        },
        "connections": ctx.client.live_connections(),
        "unhealthy_devices": ctx.health.get_unhealthy(),
    }


@router.get("/timeouts")
async def timeouts(request: Request, limit: int = 50) -> dict:
    ctx = request.app.state.context
    telemetry = ctx.telemetry
    return {
        "summary": telemetry.summary(),
        "recent": [
            {
                "operation": e.operation.value,
                "timeout_ms": e.timeout_ms,
                "meter_id": e.meter_id,
                "element_id": e.element_id,
                "device_key": e.device_key,
                "timestamp": e.timestamp.isoformat(),
                "detail": e.detail,
            }
            for e in telemetry.recent(limit)
        ],
        "configured": {op.value: telemetry.configured_timeout(op) for op in OperationType},
    }


# ── Sync ─────────────────────────────────────────────

@router.get("/sync/skips")
async def sync_skips(request: Request, limit: int = 50) -> dict:
    ctx = request.app.state.context
    return {"skips": [s.to_dict() for s in ctx.coordinator.skip_history(limit)]}


@router.post("/sync")
async def trigger_sync(request: Request) -> dict:
    """Manual remote sync. Returns executed, skipped or failed synchronously."""
    ctx = request.app.state.context
    outcome = await ctx.coordinator.trigger(SyncMode.MANUAL)
    return outcome.to_dict()


# ── Collection ───────────────────────────────────────

@router.post("/collection/run")
async def run_collection(request: Request) -> dict:
    ctx = request.app.state.context
    try:
        report = await ctx.engine.run_cycle()
    except CycleInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except CatalogLoadError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return {
        "status": report.status.to_dict(),
        "readings_persisted": report.readings_persisted,
        "timeout_events": len(report.timeout_events),
        "duration_seconds": round(report.duration_seconds, 3),
    }
