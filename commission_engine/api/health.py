"""
Health check endpoints.

Readiness reports on the pieces a resolution depends on: the audit
trail table, the bulk run queue and the background scheduler.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine import __version__
from commission_engine.db import get_db
from commission_engine.models import BulkRun, BulkRunStatus, CommissionAuditRecord
from commission_engine.scheduler.jobs import scheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("")
async def health_check():
    """Returns 200 if the service is running."""
    return {"status": "healthy", "service": "commission-engine", "version": __version__}


@router.get("/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """
    Readiness check.

    Resolving without a writable audit trail is not allowed, so an
    unreachable or unmigrated commission_audit_records table means
    not ready. The scheduler state is informational: a stopped
    scheduler delays bulk runs but does not block resolution.
    """
    scheduler_status = "running" if scheduler.running else "stopped"
    try:
        audit_records = await db.scalar(select(func.count(CommissionAuditRecord.id)))
        active_runs = await db.scalar(
            select(func.count(BulkRun.id)).where(
                BulkRun.status.in_([BulkRunStatus.PENDING, BulkRunStatus.RUNNING])
            )
        )
    except SQLAlchemyError as e:
        logger.warning(f"Readiness check failed: {e}")
        return {
            "status": "not_ready",
            "database": f"error: {e.__class__.__name__}",
            "scheduler": scheduler_status,
        }

    return {
        "status": "ready",
        "database": "connected",
        "audit_records": audit_records,
        "active_bulk_runs": active_runs,
        "scheduler": scheduler_status,
    }


@router.get("/live")
async def liveness_check():
    """Used by the orchestrator to decide whether to restart the container."""
    return {"status": "alive"}
