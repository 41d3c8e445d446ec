"""Health check endpoints.

Provides:
- Liveness and component check (/health)
- Detailed system status (/health/status)
"""

import platform
import sys
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends

from app.dependencies import get_runtime
from app.runtime import ChainRuntime
from core.circuit_breaker import CircuitState

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()
_start_datetime = datetime.now(timezone.utc).isoformat()


@router.get("", response_model=dict[str, Any])
async def health_check(runtime: ChainRuntime = Depends(get_runtime)) -> dict[str, Any]:
    """
    Liveness probe with component summary.
    Reports "degraded" when the supervisor is stopped or a breaker is open.
    """
    open_breakers = [
        key for key, state in runtime.breakers.snapshot().items()
        if state["state"] != CircuitState.CLOSED.value
    ]
    supervisor_running = runtime.supervisor.is_running

    return {
        "status": "healthy" if supervisor_running and not open_breakers else "degraded",
        "app": runtime.settings.APP_NAME,
        "version": runtime.settings.APP_VERSION,
        "supervisor": "running" if supervisor_running else "stopped",
        "chains": len(runtime.chains),
        "modules": runtime.modules.available,
        "open_circuits": open_breakers,
    }


@router.get("/status", response_model=dict[str, Any])
async def system_status(runtime: ChainRuntime = Depends(get_runtime)) -> dict[str, Any]:
    """
    Detailed system status including uptime, versions, and execution stats.
    Intended for admin dashboards and monitoring.
    """
    uptime_seconds = time.monotonic() - _start_time
    hours, remainder = divmod(int(uptime_seconds), 3600)
    minutes, seconds = divmod(remainder, 60)

    return {
        "app": runtime.settings.APP_NAME,
        "version": runtime.settings.APP_VERSION,
        "environment": runtime.settings.ENVIRONMENT,
        "started_at": _start_datetime,
        "uptime": f"{hours}h {minutes}m {seconds}s",
        "uptime_seconds": round(uptime_seconds, 1),
        "python": {
            "version": sys.version,
            "platform": platform.platform(),
        },
        "checkpoint_backend": runtime.settings.CHECKPOINT_BACKEND,
        "supervisor": runtime.supervisor.stats(),
        "running_executions": runtime.engine.get_running_executions(),
    }
