from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import logging
import structlog
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime

from . import __version__
from .config import settings
from .database import db_manager
from .log_shipping import log_event, log_shipper
from .routes import router
from .service import build_keeper

def configure_logging(level: str = "INFO"):
    """JSON logs through the stdlib bridge, filtered at ``level``"""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

configure_logging(settings.LOG_LEVEL)

logger = structlog.get_logger()

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the registry, build the keeper and run the monitoring loop"""
    started = time.time()
    logger.info("Starting Yield Safe Keeper", env=settings.ENV, registry_backend=settings.REGISTRY_BACKEND)

    database = await db_manager.connect() if settings.REGISTRY_BACKEND == "mongo" else None
    try:
        keeper = build_keeper(settings, database)
    except Exception as e:
        logger.error("Failed to build keeper", error=str(e))
        await db_manager.disconnect()
        raise

    app.state.keeper = keeper
    await keeper.start()
    logger.info("Yield Safe Keeper ready", startup_time_seconds=round(time.time() - started, 2))
    await log_event("keeper_started", {"settlement_mode": settings.SETTLEMENT_MODE, "version": __version__})

    yield

    logger.info("Shutting down Yield Safe Keeper")
    try:
        await keeper.stop()
        await log_event("keeper_stopped", {"cycles_completed": keeper.scheduler.cycles_completed})
    finally:
        await db_manager.disconnect()
        await log_shipper.close()
    logger.info("Yield Safe Keeper shutdown complete")

app = FastAPI(
    title="Yield Safe Keeper",
    description="Impermanent-loss monitoring and protection for yield-safe vaults",
    version=__version__,
    lifespan=lifespan
)

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception in probe",
                path=request.url.path,
                error=str(exc),
                error_type=type(exc).__name__)

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "timestamp": datetime.utcnow().isoformat()}
    )

app.include_router(router)

@app.get("/")
async def root():
    return {
        "service": "Yield Safe Keeper",
        "version": __version__,
        "endpoints": {"health": "/health", "status": "/status"}
    }
