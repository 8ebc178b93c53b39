"""
Admin-triggered bulk recomputation.

A recomputation replays historical line items (the original audit records
matching a filter) through the engine at their original evaluation instant.
Unchanged outcomes are deduplicated; changed ones append compensating
records. Runs are persisted in bulk_runs with their checkpoint so that an
interrupted run resumes where it stopped.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commission_engine.config import settings
from commission_engine.exceptions import BulkRunNotCancellable, BulkRunNotFound
from commission_engine.models.audit import AuditAction
from commission_engine.models.bulk_run import BulkItemFailure, BulkRun, BulkRunStatus
from commission_engine.models.commission_audit import CommissionAuditRecord
from commission_engine.services.audit_recorder import RecordFilter
from commission_engine.services.bulk import (
    BatchItemFailure,
    BatchRun,
    BatchSummary,
    BulkOptions,
    BulkResolutionCoordinator,
)
from commission_engine.services.resolution import LineItem
from commission_engine.utils.audit import log_action
from commission_engine.utils.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

FILTER_KEYS = ("product_id", "vendor_id", "category_id", "evaluated_from", "evaluated_to")


class BulkRunRegistry:
    """In-flight batch runs of this process, by run id, for cancellation."""

    def __init__(self):
        self._runs: Dict[int, BatchRun] = {}

    def register(self, run_id: int, batch: BatchRun) -> None:
        self._runs[run_id] = batch

    def unregister(self, run_id: int) -> None:
        self._runs.pop(run_id, None)

    def get(self, run_id: int) -> Optional[BatchRun]:
        return self._runs.get(run_id)

    def __contains__(self, run_id: int) -> bool:
        return run_id in self._runs


_registry = BulkRunRegistry()


def get_registry() -> BulkRunRegistry:
    return _registry


def serialize_filters(filters: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-safe copy of a recompute filter."""
    result = {}
    for key in FILTER_KEYS:
        value = filters.get(key)
        if value is None:
            continue
        if isinstance(value, datetime):
            value = as_utc(value).isoformat()
        result[key] = str(value)
    return result


def record_filter_from(filters: Dict[str, Any]) -> RecordFilter:
    def _dt(value):
        return as_utc(datetime.fromisoformat(value)) if value else None

    return RecordFilter(
        product_id=filters.get("product_id"),
        vendor_id=filters.get("vendor_id"),
        category_id=filters.get("category_id"),
        evaluated_from=_dt(filters.get("evaluated_from")),
        evaluated_to=_dt(filters.get("evaluated_to")),
        originals_only=True,
    )


def line_item_from_record(record: CommissionAuditRecord) -> LineItem:
    """Rebuild the line item an original audit record was resolved from."""
    return LineItem(
        line_item_ref=record.line_item_ref,
        product_id=record.product_id,
        vendor_id=record.vendor_id,
        category_id=record.category_id,
        amount=Decimal(record.amount),
        currency=record.currency,
        at=as_utc(record.evaluated_at),
        vendor_tier=record.vendor_tier,
    )


async def historical_line_items(
    recorder,
    session_factory: async_sessionmaker[AsyncSession],
    filters: Dict[str, Any],
    page_size: int,
) -> AsyncIterator[LineItem]:
    async for record in recorder.iter_originals(
        session_factory, record_filter_from(filters), page_size=page_size,
    ):
        yield line_item_from_record(record)


async def create_run(
    db: AsyncSession,
    filters: Dict[str, Any],
    actor_id: int,
    ip_address: Optional[str] = None,
) -> BulkRun:
    """Register a pending recomputation and log who asked for it."""
    run = BulkRun(
        status=BulkRunStatus.PENDING,
        filters=serialize_filters(filters),
        requested_by=actor_id,
    )
    db.add(run)
    await db.flush()

    await log_action(
        db=db,
        actor_id=actor_id,
        action=AuditAction.TRIGGER_BULK_RECOMPUTE,
        target_type="bulk_run",
        target_id=run.id,
        action_metadata={"filters": run.filters},
        ip_address=ip_address,
    )
    await db.commit()

    logger.info(f"Bulk recompute #{run.id} requested by actor {actor_id}: {run.filters}")
    return run


async def get_run(db: AsyncSession, run_id: int) -> BulkRun:
    run = await db.get(BulkRun, run_id)
    if run is None:
        raise BulkRunNotFound(run_id)
    return run


async def list_failures(
    db: AsyncSession,
    run_id: int,
    page: int = 1,
    per_page: int = 50,
) -> list[BulkItemFailure]:
    result = await db.execute(
        select(BulkItemFailure)
        .where(BulkItemFailure.run_id == run_id)
        .order_by(BulkItemFailure.position)
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(result.scalars().all())


async def cancel_run(
    db: AsyncSession,
    run_id: int,
    actor_id: int,
    registry: Optional[BulkRunRegistry] = None,
    ip_address: Optional[str] = None,
) -> BulkRun:
    """
    Cancel a run. A pending run not yet picked up is marked cancelled
    straight away. A running batch stops pulling input: immediately when it
    runs in this process, at its next checkpoint when it runs elsewhere.

    Raises:
        BulkRunNotCancellable: the run already completed, failed or was cancelled
    """
    registry = registry or get_registry()
    run = await get_run(db, run_id)
    if run.status not in (BulkRunStatus.PENDING, BulkRunStatus.RUNNING):
        raise BulkRunNotCancellable(run_id, run.status.value)

    batch = registry.get(run_id)
    if batch is not None:
        batch.cancel()
    if batch is None and run.status == BulkRunStatus.PENDING:
        run.status = BulkRunStatus.CANCELLED
        run.finished_at = utcnow()
    else:
        run.cancel_requested = True

    await log_action(
        db=db,
        actor_id=actor_id,
        action=AuditAction.CANCEL_BULK_RECOMPUTE,
        target_type="bulk_run",
        target_id=run_id,
        action_metadata={"status": run.status.value, "in_flight": batch is not None},
        ip_address=ip_address,
    )
    await db.commit()

    logger.info(f"Bulk recompute #{run_id} cancellation requested by actor {actor_id}")
    return run


class RecomputeRunner:
    """Executes persisted bulk runs through the coordinator."""

    def __init__(
        self,
        engine,
        session_factory: async_sessionmaker[AsyncSession],
        registry: Optional[BulkRunRegistry] = None,
        concurrency: Optional[int] = None,
        checkpoint_every: Optional[int] = None,
        page_size: Optional[int] = None,
    ):
        self.engine = engine
        self.session_factory = session_factory
        self.registry = registry or get_registry()
        self.coordinator = BulkResolutionCoordinator(engine)
        self.concurrency = concurrency or settings.bulk_concurrency
        self.checkpoint_every = checkpoint_every or settings.bulk_checkpoint_every
        self.page_size = page_size or settings.bulk_page_size

    async def _save_progress(
        self,
        run_id: int,
        base: Dict[str, int],
        token: str,
        summary: BatchSummary,
        **values,
    ) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(BulkRun)
                .where(BulkRun.id == run_id)
                .values(
                    checkpoint_token=token,
                    processed_count=base["processed_count"] + summary.processed,
                    succeeded_count=base["succeeded_count"] + summary.succeeded,
                    deduplicated_count=base["deduplicated_count"] + summary.deduplicated,
                    corrected_count=base["corrected_count"] + summary.corrected,
                    failed_count=base["failed_count"] + summary.failed,
                    **values,
                )
            )
            await db.commit()

    async def _save_failure(self, run_id: int, failure: BatchItemFailure) -> None:
        """
        Store a failed item, one row per input position. A resumed run
        replays the items after its last checkpoint; their failures replace
        the rows written before the interruption.
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(BulkItemFailure).where(
                    BulkItemFailure.run_id == run_id,
                    BulkItemFailure.position == failure.position,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = BulkItemFailure(run_id=run_id, position=failure.position)
                db.add(row)
            row.line_item_ref = failure.line_item_ref
            row.payload = failure.payload
            row.error_code = failure.error_code
            row.message = failure.message
            await db.commit()

    async def _cancel_requested(self, run_id: int) -> bool:
        async with self.session_factory() as db:
            requested = await db.scalar(
                select(BulkRun.cancel_requested).where(BulkRun.id == run_id)
            )
            return bool(requested)

    async def execute(self, run_id: int) -> BatchSummary:
        """
        Run (or resume) a persisted recomputation to completion or cancellation.
        """
        async with self.session_factory() as db:
            run = await get_run(db, run_id)
            if run.status in (BulkRunStatus.COMPLETED, BulkRunStatus.CANCELLED):
                logger.info(f"Bulk recompute #{run_id} already {run.status.value}")
                return BatchSummary()
            if run.cancel_requested:
                run.status = BulkRunStatus.CANCELLED
                run.finished_at = utcnow()
                await db.commit()
                logger.info(f"Bulk recompute #{run_id} cancelled before it resumed")
                return BatchSummary()
            filters = dict(run.filters)
            checkpoint = run.checkpoint_token
            base = {
                "processed_count": run.processed_count,
                "succeeded_count": run.succeeded_count,
                "deduplicated_count": run.deduplicated_count,
                "corrected_count": run.corrected_count,
                "failed_count": run.failed_count,
            }
            run.status = BulkRunStatus.RUNNING
            run.started_at = run.started_at or utcnow()
            await db.commit()

        async def on_checkpoint(token: str, summary: BatchSummary) -> None:
            await self._save_progress(run_id, base, token, summary)
            # Cancellation requested through another process
            if not batch.cancelled and await self._cancel_requested(run_id):
                logger.info(f"Bulk recompute #{run_id}: cancellation requested, stopping")
                batch.cancel()

        async def on_failure(failure: BatchItemFailure) -> None:
            await self._save_failure(run_id, failure)

        options = BulkOptions(
            concurrency=self.concurrency,
            checkpoint_every=self.checkpoint_every,
            actor=f"bulk:{run_id}",
            on_checkpoint=on_checkpoint,
            on_failure=on_failure,
        )
        source = historical_line_items(
            self.engine.recorder, self.session_factory, filters, self.page_size,
        )
        batch = self.coordinator.resolve_batch(source, options, checkpoint=checkpoint)
        self.registry.register(run_id, batch)

        logger.info(f"Bulk recompute #{run_id} started (filters={filters}, checkpoint={checkpoint})")
        try:
            async for _ in batch:
                pass
        except Exception as e:
            logger.error(f"Bulk recompute #{run_id} failed: {e}")
            await self._save_progress(
                run_id, base, batch.checkpoint, batch.summary,
                status=BulkRunStatus.FAILED,
                error_message=str(e),
                finished_at=utcnow(),
            )
            raise
        finally:
            self.registry.unregister(run_id)

        status = BulkRunStatus.CANCELLED if batch.summary.cancelled else BulkRunStatus.COMPLETED
        await self._save_progress(
            run_id, base, batch.checkpoint, batch.summary,
            status=status,
            finished_at=utcnow(),
        )
        logger.info(f"Bulk recompute #{run_id} {status.value}")
        return batch.summary

    async def interrupted_run_ids(self) -> list[int]:
        """Ids of runs left pending or running by a previous process."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(BulkRun.id).where(
                    BulkRun.status.in_([BulkRunStatus.PENDING, BulkRunStatus.RUNNING])
                )
            )
            return [run_id for run_id in result.scalars().all() if run_id not in self.registry]


async def reopen_run(
    db: AsyncSession,
    run_id: int,
    actor_id: int,
    ip_address: Optional[str] = None,
) -> BulkRun:
    """Put a cancelled or failed run back to pending; it resumes from its checkpoint."""
    run = await get_run(db, run_id)
    if run.status in (BulkRunStatus.CANCELLED, BulkRunStatus.FAILED):
        run.status = BulkRunStatus.PENDING
        run.cancel_requested = False
        run.finished_at = None
        run.error_message = None
        await log_action(
            db=db,
            actor_id=actor_id,
            action=AuditAction.TRIGGER_BULK_RECOMPUTE,
            target_type="bulk_run",
            target_id=run_id,
            action_metadata={"resumed_from": run.checkpoint_token},
            ip_address=ip_address,
        )
        await db.commit()
        logger.info(f"Bulk recompute #{run_id} reopened by actor {actor_id}")
    return run


_runner: Optional[RecomputeRunner] = None


def get_runner() -> RecomputeRunner:
    """Process-wide runner sharing the engine and the run registry."""
    global _runner
    if _runner is None:
        from commission_engine.db import AsyncSessionLocal
        from commission_engine.services.engine import get_engine

        _runner = RecomputeRunner(get_engine(), AsyncSessionLocal)
    return _runner
