from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from datetime import datetime
import structlog
import time

from .config import settings
from .database import db_manager
from .error_handling import error_collector
from . import __version__

logger = structlog.get_logger()

# Track application startup time for uptime calculation
app_start_time = time.time()

router = APIRouter()

def _keeper(request: Request):
    return getattr(request.app.state, "keeper", None)

@router.get("/health")
async def health_check(request: Request):
    """Liveness: the monitoring loop is running and storage answers"""
    keeper = _keeper(request)
    db_health = await db_manager.health_check()

    problems = []
    if keeper is None:
        problems.append("keeper not started")
    elif not keeper.scheduler.is_running:
        problems.append("monitoring loop stopped")
    if settings.REGISTRY_BACKEND == "mongo" and db_health["status"] != "connected":
        problems.append("database unavailable")

    if problems:
        logger.warning("Health check failed", problems=problems)
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "problems": problems,
                "timestamp": datetime.utcnow().isoformat()
            }
        )

    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": __version__
    }

@router.get("/status")
async def get_status(request: Request):
    """Scheduler state, last cycle report, cache and recent errors"""
    keeper = _keeper(request)

    return {
        "status": "operational" if keeper and keeper.scheduler.is_running else "degraded",
        "uptime_seconds": int(time.time() - app_start_time),
        "environment": settings.ENV,
        "scheduler": keeper.scheduler.status() if keeper else None,
        "price_cache": keeper.price_source.cache_info() if keeper else None,
        "ledger_sync_enabled": bool(keeper and keeper.synchronizer),
        "database": await db_manager.health_check(),
        "errors": error_collector.get_error_summary(hours=1),
        "timestamp": datetime.utcnow().isoformat()
    }
