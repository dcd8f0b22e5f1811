"""Health check router."""

import os

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.config import VERSION, settings
from app.services import job_service

router = APIRouter()


@router.get("/health")
async def health_check():
    """Return health status with a storage writability check."""
    storage = settings.storage_dir
    probe = storage if storage.exists() else storage.parent
    storage_ok = os.access(probe, os.W_OK)

    body = {
        "status": "ok" if storage_ok else "degraded",
        "storage": "writable" if storage_ok else "read-only",
        "active_runs": len(job_service.active_run_ids()),
    }
    if storage_ok:
        return body
    return JSONResponse(body, status_code=503)


@router.get("/health/version")
async def health_version() -> dict:
    """Return application version."""
    return {"version": VERSION}
