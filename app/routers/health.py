# app/routers/health.py
from __future__ import annotations
import time
from fastapi import APIRouter, Depends
from app.core.config import settings
from app.core.deps import get_registry
from app.models.run_models import RunStatus
from app.services.registry import ProcessRegistry

router = APIRouter()

_STARTED = time.time()

@router.get("/health")
async def health(registry: ProcessRegistry = Depends(get_registry)):
    runs = registry.list_runs()
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "uptime_sec": int(time.time() - _STARTED),
        "runs_total": len(runs),
        "runs_running": sum(1 for r in runs if r.status == RunStatus.RUNNING),
    }
