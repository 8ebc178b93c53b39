"""Background scheduler."""

from commission_engine.scheduler.jobs import scheduler, schedule_bulk_run, setup_scheduler

__all__ = ["scheduler", "schedule_bulk_run", "setup_scheduler"]
