"""
encodefleet API - Main application entry point.

Job submission and status for the encoding pipeline, plus the channel
worker agents use to heartbeat, poll and report.
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from encodefleet.core.config import get_settings
from encodefleet.core.logging import configure_logging
from encodefleet.fleet.views import router as fleet_router
from encodefleet.jobs.views import router as jobs_router
from encodefleet.orchestrator import Orchestrator, get_orchestrator

settings = get_settings()
API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events."""
    configure_logging(settings.LOG_LEVEL)
    yield
    if settings.STORE_BACKEND == "mongo":
        from encodefleet.core.database import Database

        Database.disconnect()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="""
## encodefleet API

Media-encoding jobs dispatched to an autoscaled worker fleet.

- **Jobs**: submit, inspect and cancel encoding jobs
- **Fleet**: list workers and the machines behind them
- **Workers**: heartbeat, assignment polling and status reports
    """,
    lifespan=lifespan,
    docs_url=f"{API_PREFIX}/docs",
    redoc_url=f"{API_PREFIX}/redoc",
)

for router in (jobs_router, fleet_router):
    app.include_router(router, prefix=API_PREFIX)


@app.get("/", tags=["Health"])
def root():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
    }


@app.get("/health", tags=["Health"])
def health_check(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Detailed health check."""
    return {
        "status": "healthy",
        "store": settings.STORE_BACKEND,
        "provider": orchestrator.provider.name,
        "version": settings.APP_VERSION,
    }
