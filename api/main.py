#!/usr/bin/env python3
import logging
import os
from typing import Optional

import anyio
from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from db.capture_store import CAPTURE_STATUSES, LOG_LEVELS
from engine.disk_budget import get_disk_space_status
from engine.paths import LOG_DIR, build_engine_paths, resolve_config_path
from engine.core import RecorderSettings
from engine.runtime import get_runtime_info
from engine.service import RecorderService, load_settings, setup_logging
from engine.supervisor import (
    AlreadyCapturing,
    CaptureError,
    InsufficientResources,
    ProcessSpawnFailure,
    ShuttingDown,
    SourceNotFound,
)

APP_NAME = "StreamKeeper API"

_CAPTURE_ERROR_STATUS = (
    (SourceNotFound, 404),
    (AlreadyCapturing, 409),
    (ShuttingDown, 503),
    (InsufficientResources, 507),
    (ProcessSpawnFailure, 500),
)


class SourceCreateRequest(BaseModel):
    username: str
    display_name: Optional[str] = None
    auto_capture: bool = True
    monitoring_enabled: bool = True
    quality_preference: Optional[str] = None


class SourceUpdateRequest(BaseModel):
    display_name: Optional[str] = None
    is_active: Optional[bool] = None
    auto_capture: Optional[bool] = None
    monitoring_enabled: Optional[bool] = None
    quality_preference: Optional[str] = None


app = FastAPI(
    title=APP_NAME,
    description="StreamKeeper API for supervised live stream captures.",
)


@app.on_event("startup")
async def startup():
    app.state.paths = build_engine_paths()
    setup_logging(LOG_DIR)
    try:
        app.state.config_path = resolve_config_path(os.environ.get("STREAMKEEPER_CONFIG"))
        settings = load_settings(app.state.config_path)
    except ValueError as exc:
        logging.error("Config rejected, using defaults: %s", exc)
        settings = RecorderSettings()
    auto_scan = os.environ.get("STREAMKEEPER_AUTO_SCAN", "1").strip().lower() not in {"0", "false", "no", "off"}
    app.state.service = RecorderService(settings, app.state.paths)
    await app.state.service.start(auto_scan=auto_scan)


@app.on_event("shutdown")
async def shutdown():
    service = getattr(app.state, "service", None)
    if service is not None:
        await service.shutdown(reason="api shutdown")


def _service() -> RecorderService:
    service = getattr(app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service not started")
    return service


def _capture_error_status(exc: CaptureError) -> int:
    for error_type, status_code in _CAPTURE_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 400


@app.get("/api/health")
async def health():
    return {"ok": True}


@app.get("/api/version")
async def version():
    service = _service()
    return await anyio.to_thread.run_sync(get_runtime_info, service.settings.capture_binary)


@app.get("/api/sources")
async def list_sources(include_inactive: bool = False):
    service = _service()
    sources = await anyio.to_thread.run_sync(
        lambda: service.store.list_sources(include_inactive=include_inactive)
    )
    return {
        "sources": [
            {**source.__dict__, "is_capturing": service.supervisor.is_capturing(source.id)}
            for source in sources
        ]
    }


@app.post("/api/sources", status_code=201)
async def create_source(payload: SourceCreateRequest):
    service = _service()
    existing = await anyio.to_thread.run_sync(service.store.get_source_by_username, payload.username)
    if existing is not None:
        raise HTTPException(status_code=409, detail=f"Source {existing.username} already exists")
    try:
        source = await anyio.to_thread.run_sync(
            lambda: service.store.create_source(
                payload.username,
                display_name=payload.display_name,
                auto_capture=payload.auto_capture,
                monitoring_enabled=payload.monitoring_enabled,
                quality_preference=payload.quality_preference,
            )
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return source.__dict__


@app.patch("/api/sources/{source_id}")
async def update_source(source_id: int, payload: SourceUpdateRequest):
    service = _service()
    fields = payload.model_dump(exclude_none=True) if hasattr(payload, "model_dump") else payload.dict(exclude_none=True)
    source = await anyio.to_thread.run_sync(lambda: service.store.update_source(source_id, **fields))
    if source is None:
        raise HTTPException(status_code=404, detail=f"Source {source_id} not found")
    return source.__dict__


@app.post("/api/sources/{source_id}/start")
async def start_capture(source_id: int):
    service = _service()
    try:
        capture_id = await service.supervisor.start(source_id)
    except CaptureError as exc:
        raise HTTPException(status_code=_capture_error_status(exc), detail=exc.message)
    return {"ok": True, "source_id": source_id, "capture_id": capture_id}


@app.post("/api/sources/{source_id}/stop")
async def stop_capture(source_id: int):
    service = _service()
    if not service.supervisor.stop(source_id):
        raise HTTPException(status_code=404, detail=f"No active capture for source {source_id}")
    return {"ok": True, "source_id": source_id, "status": "stopping"}


@app.get("/api/captures/active")
async def active_captures():
    service = _service()
    return {
        "active": service.supervisor.list_active(),
        "count": service.supervisor.active_count(),
        "estimated_throughput": service.supervisor.estimated_throughput(),
    }


@app.get("/api/captures")
async def list_captures(
    status: Optional[str] = None,
    source_id: Optional[int] = None,
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    if status and status not in CAPTURE_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(CAPTURE_STATUSES)}")
    service = _service()
    captures = await anyio.to_thread.run_sync(
        lambda: service.store.find_captures(
            status=status,
            source_id=source_id,
            search=search,
            limit=limit,
            offset=offset,
        )
    )
    return {"captures": [capture.to_dict() for capture in captures]}


@app.get("/api/captures/{capture_id}")
async def get_capture(capture_id: int):
    service = _service()
    capture = await anyio.to_thread.run_sync(service.store.get_capture, capture_id)
    if capture is None:
        raise HTTPException(status_code=404, detail=f"Capture {capture_id} not found")
    return capture.to_dict()


@app.get("/api/stats")
async def stats():
    service = _service()
    return await service.supervisor.system_stats()


@app.get("/api/service/status")
async def service_status():
    service = _service()
    status = service.scanner.status()
    status["shutting_down"] = service.supervisor.shutting_down
    return status


@app.post("/api/service/check")
async def service_check():
    service = _service()
    started = service.scanner.trigger(reason="manual")
    return {"ok": True, "scan_started": started, "scan_in_progress": service.scanner.scan_in_progress}


@app.get("/api/logs")
async def logs(
    capture_id: Optional[int] = None,
    source_name: Optional[str] = None,
    level: Optional[str] = None,
    limit: int = Query(200, ge=1, le=1000),
):
    if level and level not in LOG_LEVELS:
        raise HTTPException(status_code=400, detail=f"level must be one of {', '.join(LOG_LEVELS)}")
    service = _service()
    entries = await anyio.to_thread.run_sync(
        lambda: service.store.list_logs(
            capture_id=capture_id,
            source_name=source_name,
            level=level,
            limit=limit,
        )
    )
    return {"logs": [entry.to_dict() for entry in entries]}


@app.get("/api/disk")
async def disk():
    service = _service()
    return await anyio.to_thread.run_sync(get_disk_space_status, service.recordings_dir)
