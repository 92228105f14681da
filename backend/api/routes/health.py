"""Health check endpoints.

Provides:
- Basic liveness probe (/health/)
- Detailed engine status (/health/status)
"""

import platform
import sys
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends

from app.config import get_settings
from app.dependencies import get_engine
from workflow.engine import WorkflowEngine

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()
_start_datetime = datetime.now(timezone.utc).isoformat()


@router.get("/", response_model=dict[str, Any])
async def root() -> dict[str, Any]:
    """
    Get API root information and version.
    Used as a simple liveness probe.
    """
    settings = get_settings()
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "ok",
    }


@router.get("/status", response_model=dict[str, Any])
async def system_status(engine: WorkflowEngine = Depends(get_engine)) -> dict[str, Any]:
    """
    Detailed system status including uptime, versions, and engine counters.
    Intended for admin dashboards and monitoring.
    """
    settings = get_settings()
    uptime_seconds = time.monotonic() - _start_time
    hours, remainder = divmod(int(uptime_seconds), 3600)
    minutes, seconds = divmod(remainder, 60)

    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "started_at": _start_datetime,
        "uptime": f"{hours}h {minutes}m {seconds}s",
        "uptime_seconds": round(uptime_seconds, 1),
        "python": {
            "version": sys.version,
            "platform": platform.platform(),
        },
        "engine": engine.get_stats(),
    }
