"""
Commission Resolution Engine

Main FastAPI application with:
- Line item resolution for the Order component
- Admin management of overrides and membership discounts
- Bulk recomputation and compliance queries over the audit trail
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from commission_engine import __version__
from commission_engine.api import admin_router, api_router
from commission_engine.config import settings
from commission_engine.exceptions import CommissionEngineError
from commission_engine.scheduler.jobs import resume_interrupted_runs, scheduler, setup_scheduler

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
    - Starts the scheduler (audit integrity checks, bulk runs)
    - Reschedules bulk runs interrupted by a previous shutdown

    Shutdown:
    - Stops the scheduler
    """
    logger.info("Starting commission engine...")

    setup_scheduler()
    scheduler.start()
    await resume_interrupted_runs()

    logger.info("Commission engine started successfully!")

    yield

    # Shutdown
    logger.info("Shutting down commission engine...")
    scheduler.shutdown(wait=False)


# Create FastAPI application
app = FastAPI(
    title="Commission Engine",
    description="Marketplace commission resolution with auditable decision trails",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)


@app.exception_handler(CommissionEngineError)
async def commission_error_handler(request: Request, exc: CommissionEngineError):
    """Render engine errors as {error_code, message, details}."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.error_code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        },
    )


# Include routers
app.include_router(api_router)  # /api/* endpoints
app.include_router(admin_router)  # /admin/* endpoints


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "commission_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=not settings.is_production,
    )
