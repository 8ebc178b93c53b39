"""Admin bulk recomputation endpoints."""

from typing import Callable

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.auth.dependencies import Actor, require_admin
from commission_engine.db import get_db
from commission_engine.models.bulk_run import BulkRunStatus
from commission_engine.schemas.bulk import (
    BulkFailureListResponse,
    BulkFailureResponse,
    BulkRunCreate,
    BulkRunResponse,
)
from commission_engine.scheduler.jobs import schedule_bulk_run
from commission_engine.services import recompute
from commission_engine.utils.audit import get_client_ip

router = APIRouter(prefix="/bulk")


def get_launcher() -> Callable[[int], None]:
    """Starts a persisted run in the background."""
    return schedule_bulk_run


@router.post("", response_model=BulkRunResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_bulk_run(
    request: Request,
    data: BulkRunCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    launch: Callable[[int], None] = Depends(get_launcher),
):
    """
    Recompute historical line items matching the filter.

    Unchanged outcomes are deduplicated; changed ones get compensating
    audit records. Poll GET /bulk/{run_id} for progress.
    """
    run = await recompute.create_run(
        db,
        data.model_dump(exclude_none=True),
        actor_id=actor.id,
        ip_address=get_client_ip(request),
    )
    launch(run.id)
    return BulkRunResponse.model_validate(run)


@router.get("/{run_id}", response_model=BulkRunResponse)
async def get_bulk_run(
    run_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    run = await recompute.get_run(db, run_id)
    return BulkRunResponse.model_validate(run)


@router.get("/{run_id}/failures", response_model=BulkFailureListResponse)
async def get_bulk_failures(
    run_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
):
    """Line items the run could not resolve, with their inputs."""
    await recompute.get_run(db, run_id)
    failures = await recompute.list_failures(db, run_id, page=page, per_page=per_page)
    return BulkFailureListResponse(
        items=[BulkFailureResponse.model_validate(f) for f in failures],
        page=page,
        per_page=per_page,
    )


@router.post("/{run_id}/cancel", response_model=BulkRunResponse)
async def cancel_bulk_run(
    request: Request,
    run_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    run = await recompute.cancel_run(
        db,
        run_id,
        actor_id=actor.id,
        ip_address=get_client_ip(request),
    )
    return BulkRunResponse.model_validate(run)


@router.post("/{run_id}/resume", response_model=BulkRunResponse)
async def resume_bulk_run(
    request: Request,
    run_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    launch: Callable[[int], None] = Depends(get_launcher),
):
    """Restart a cancelled or failed run from its last checkpoint."""
    run = await recompute.reopen_run(
        db,
        run_id,
        actor_id=actor.id,
        ip_address=get_client_ip(request),
    )
    if run.status == BulkRunStatus.PENDING:
        launch(run.id)
    return BulkRunResponse.model_validate(run)
