import os
import time

import psutil
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from drainapp.config import settings

router = APIRouter()

_start_time = time.time()


def get_memory_usage() -> dict:
    proc = psutil.Process()
    mem = proc.memory_info()
    rss_mb = mem.rss / (1024 * 1024)
    return {
        "rss_mb": round(rss_mb, 1),
        "percent": round(rss_mb / settings.MEMORY_LIMIT_MB * 100, 1),
    }


@router.get("/healthz")
async def liveness():
    return {"status": "alive"}


@router.get("/ready")
async def readiness(request: Request):
    registry = getattr(request.app.state, "registry", None)
    memory = get_memory_usage()

    if registry is not None and memory["percent"] < 95:
        return {"status": "ready", "slot": settings.APP_SLOT, "memory_pct": memory["percent"]}

    reason = "session registry not initialised"
    if memory["percent"] >= 95:
        reason = f"memory at {memory['percent']}%"

    return JSONResponse(
        status_code=503,
        content={"status": "not_ready", "reason": reason},
    )


@router.get("/health/deep")
async def deep_health(request: Request):
    registry = getattr(request.app.state, "registry", None)
    memory = get_memory_usage()
    deadline = registry.drain_deadline if registry is not None else None

    return {
        "status": "ok" if registry is not None else "degraded",
        "slot": settings.APP_SLOT,
        "version": settings.APP_VERSION,
        "sessions": registry.count() if registry is not None else 0,
        "pinned_sessions": registry.pinned_count() if registry is not None else 0,
        "draining": deadline is not None,
        "drain_deadline": deadline.isoformat() if deadline else None,
        "memory_used_mb": memory["rss_mb"],
        "memory_limit_mb": settings.MEMORY_LIMIT_MB,
        "memory_pct": memory["percent"],
        "uptime_seconds": round(time.time() - _start_time, 1),
        "pid": os.getpid(),
    }
