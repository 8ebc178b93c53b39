"""Admin commission override endpoints."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.auth.dependencies import Actor, require_admin
from commission_engine.db import get_db
from commission_engine.models.override import OverrideVariant
from commission_engine.schemas.override import (
    OverrideCreate,
    OverrideExpire,
    OverrideListResponse,
    OverrideResponse,
    OverrideUpdate,
)
from commission_engine.services.engine import CommissionEngine, get_engine
from commission_engine.services.overrides import OverridePayload
from commission_engine.utils.audit import get_client_ip
from commission_engine.utils.timeutils import utcnow

router = APIRouter(prefix="/overrides")


@router.get("", response_model=OverrideListResponse)
async def list_overrides(
    variant: OverrideVariant = Query(...),
    scope_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    engine: CommissionEngine = Depends(get_engine),
):
    """Current and scheduled overrides of one scope."""
    scope_id = engine.store.validate_scope(variant, scope_id)
    rows = await engine.store.list_active(db, variant, scope_id)
    return OverrideListResponse(
        items=[OverrideResponse.model_validate(row) for row in rows],
        total=len(rows),
    )


@router.get("/active", response_model=Optional[OverrideResponse])
async def get_active_override(
    variant: OverrideVariant = Query(...),
    scope_id: Optional[str] = Query(None),
    at: Optional[datetime] = Query(None),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    engine: CommissionEngine = Depends(get_engine),
):
    """The override of a scope active at `at` (default now), or null."""
    scope_id = engine.store.validate_scope(variant, scope_id)
    match = await engine.store.find_active(db, variant, scope_id, at or utcnow())
    if match is None:
        return None
    row = await engine.store.get(db, match.override.id)
    return OverrideResponse.model_validate(row)


@router.get("/{override_id}", response_model=OverrideResponse)
async def get_override(
    override_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    engine: CommissionEngine = Depends(get_engine),
):
    row = await engine.store.get(db, override_id)
    return OverrideResponse.model_validate(row)


@router.post("", response_model=OverrideResponse, status_code=status.HTTP_201_CREATED)
async def create_override(
    request: Request,
    data: OverrideCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    engine: CommissionEngine = Depends(get_engine),
):
    """Create an override. Rejected with 409 if its window overlaps another."""
    row = await engine.store.upsert_override(
        db,
        data.variant,
        OverridePayload(
            percentage=data.percentage,
            scope_id=data.scope_id,
            valid_from=data.valid_from,
            valid_to=data.valid_to,
            note=data.note,
        ),
        actor_id=actor.id,
        ip_address=get_client_ip(request),
    )
    return OverrideResponse.model_validate(row)


@router.put("/{override_id}", response_model=OverrideResponse)
async def update_override(
    request: Request,
    override_id: int,
    data: OverrideUpdate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    engine: CommissionEngine = Depends(get_engine),
):
    """Replace an override's percentage, window and note."""
    existing = await engine.store.get(db, override_id)
    row = await engine.store.upsert_override(
        db,
        existing.variant,
        OverridePayload(
            percentage=data.percentage,
            scope_id=existing.scope_id,
            valid_from=data.valid_from,
            valid_to=data.valid_to,
            note=data.note,
        ),
        actor_id=actor.id,
        override_id=override_id,
        ip_address=get_client_ip(request),
    )
    return OverrideResponse.model_validate(row)


@router.post("/{override_id}/expire", response_model=OverrideResponse)
async def expire_override(
    request: Request,
    override_id: int,
    data: Optional[OverrideExpire] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    engine: CommissionEngine = Depends(get_engine),
):
    """End an override now (or at the given instant)."""
    row = await engine.store.expire_override(
        db,
        override_id,
        actor_id=actor.id,
        at=data.at if data else None,
        ip_address=get_client_ip(request),
    )
    return OverrideResponse.model_validate(row)


@router.delete("/{override_id}")
async def delete_override(
    request: Request,
    override_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    engine: CommissionEngine = Depends(get_engine),
):
    await engine.store.delete_override(
        db,
        override_id,
        actor_id=actor.id,
        ip_address=get_client_ip(request),
    )
    return {"success": True, "override_id": override_id}
