"""
Background job definitions using APScheduler.

Jobs include:
- Bulk recomputation runs (one-off, triggered by administrators)
- Audit integrity verification (interval)
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from commission_engine.config import settings
from commission_engine.db import get_db_context
from commission_engine.services.engine import get_engine
from commission_engine.services.recompute import get_runner

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = AsyncIOScheduler()


async def bulk_recompute_job(run_id: int):
    """Execute (or resume) one persisted bulk recomputation."""
    try:
        summary = await get_runner().execute(run_id)
        logger.info(
            f"Bulk recompute job #{run_id}: processed={summary.processed} "
            f"corrected={summary.corrected} failed={summary.failed}"
        )
    except Exception as e:
        logger.error(f"Bulk recompute job #{run_id} error: {e}")


async def audit_integrity_job():
    """Recompute checksums of the most recent audit records."""
    logger.debug("Running audit integrity job")
    try:
        async with get_db_context() as db:
            mismatched = await get_engine().recorder.verify_recent(
                db, limit=settings.audit_verify_batch_size
            )
        if mismatched:
            logger.error(
                f"Audit integrity job: {len(mismatched)} record(s) fail checksum "
                f"verification: {mismatched}"
            )
    except Exception as e:
        logger.error(f"Audit integrity job error: {e}")


def schedule_bulk_run(run_id: int) -> None:
    """Queue a bulk run to start immediately in the background."""
    scheduler.add_job(
        bulk_recompute_job,
        trigger=DateTrigger(),
        args=[run_id],
        id=f"bulk_run_{run_id}",
        name=f"Bulk recompute #{run_id}",
        replace_existing=True,
        misfire_grace_time=None,
    )
    logger.info(f"Bulk recompute #{run_id} scheduled")


async def resume_interrupted_runs() -> int:
    """Reschedule runs left pending or running by a previous process."""
    run_ids = await get_runner().interrupted_run_ids()
    for run_id in run_ids:
        schedule_bulk_run(run_id)
    if run_ids:
        logger.info(f"Resuming {len(run_ids)} interrupted bulk run(s): {run_ids}")
    return len(run_ids)


def setup_scheduler():
    """
    Configure and add all scheduled jobs.

    Called during application startup.
    """
    scheduler.add_job(
        audit_integrity_job,
        trigger=IntervalTrigger(minutes=settings.audit_verify_interval_minutes),
        id="audit_integrity",
        name="Verify audit record checksums",
        replace_existing=True,
    )

    logger.info("Scheduler configured with jobs")
