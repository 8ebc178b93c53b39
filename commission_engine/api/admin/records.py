"""Admin commission audit record endpoints (compliance queries)."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.auth.dependencies import Actor, require_admin
from commission_engine.db import get_db
from commission_engine.schemas.audit import (
    AuditRecordListResponse,
    AuditRecordResponse,
    AuditRecordVerifyResponse,
)
from commission_engine.services.audit_recorder import RecordFilter, verify
from commission_engine.services.engine import CommissionEngine, get_engine

router = APIRouter(prefix="/records")


@router.get("", response_model=AuditRecordListResponse)
async def list_records(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    engine: CommissionEngine = Depends(get_engine),
    recorded_by: Optional[str] = Query(None, description="Actor that triggered the resolution"),
    line_item_ref: Optional[str] = Query(None),
    product_id: Optional[str] = Query(None),
    vendor_id: Optional[str] = Query(None),
    category_id: Optional[str] = Query(None),
    selected_tier: Optional[str] = Query(None),
    evaluated_from: Optional[datetime] = Query(None),
    evaluated_to: Optional[datetime] = Query(None),
    recorded_from: Optional[datetime] = Query(None),
    recorded_to: Optional[datetime] = Query(None),
    originals_only: bool = Query(False),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
):
    """Audit records by actor, entity and time range, newest first."""
    filters = RecordFilter(
        actor=recorded_by,
        line_item_ref=line_item_ref,
        product_id=product_id,
        vendor_id=vendor_id,
        category_id=category_id,
        selected_tier=selected_tier,
        evaluated_from=evaluated_from,
        evaluated_to=evaluated_to,
        recorded_from=recorded_from,
        recorded_to=recorded_to,
        originals_only=originals_only,
    )
    records, total = await engine.recorder.query_records(db, filters, page=page, per_page=per_page)

    return AuditRecordListResponse(
        items=[AuditRecordResponse.model_validate(r) for r in records],
        total=total,
        page=page,
        per_page=per_page,
        pages=(total + per_page - 1) // per_page if total else 0,
    )


@router.get("/line-items/{line_item_ref}", response_model=list[AuditRecordResponse])
async def line_item_history(
    line_item_ref: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    engine: CommissionEngine = Depends(get_engine),
):
    """Original record and every correction for one line item."""
    records = await engine.recorder.history(db, line_item_ref)
    return [AuditRecordResponse.model_validate(r) for r in records]


async def _get_record(db: AsyncSession, engine: CommissionEngine, record_id: int):
    record = await engine.recorder.get(db, record_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Audit record not found",
        )
    return record


@router.get("/{record_id}", response_model=AuditRecordResponse)
async def get_record(
    record_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    engine: CommissionEngine = Depends(get_engine),
):
    record = await _get_record(db, engine, record_id)
    return AuditRecordResponse.model_validate(record)


@router.get("/{record_id}/verify", response_model=AuditRecordVerifyResponse)
async def verify_record(
    record_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    engine: CommissionEngine = Depends(get_engine),
):
    """Recompute the record's checksum; valid=false means it was altered."""
    record = await _get_record(db, engine, record_id)
    return AuditRecordVerifyResponse(
        id=record.id,
        valid=verify(record),
        checksum=record.checksum,
    )
