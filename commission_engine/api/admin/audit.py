"""Admin audit log API endpoints."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.auth.dependencies import Actor, require_admin
from commission_engine.db import get_db
from commission_engine.models import AuditAction, AuditLog
from commission_engine.schemas.audit import AuditLogListResponse, AuditLogResponse
from commission_engine.utils.timeutils import as_utc

router = APIRouter(prefix="/audit", tags=["Audit"])


@router.get("/list", response_model=AuditLogListResponse)
async def list_audit_logs(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    actor_id: Optional[int] = Query(None),
    action: Optional[AuditAction] = Query(None),
    target_type: Optional[str] = Query(None),
    target_id: Optional[str] = Query(None),
    created_from: Optional[datetime] = Query(None),
    created_to: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
):
    """List audit logs with filters."""
    query = select(AuditLog)

    # Apply filters
    if actor_id:
        query = query.where(AuditLog.actor_id == actor_id)

    if action:
        query = query.where(AuditLog.action == action)

    if target_type:
        query = query.where(AuditLog.target_type == target_type)

    if target_id:
        query = query.where(AuditLog.target_id == target_id)

    if created_from:
        query = query.where(AuditLog.created_at >= as_utc(created_from))

    if created_to:
        query = query.where(AuditLog.created_at < as_utc(created_to))

    # Count total
    count_query = select(func.count()).select_from(query.subquery())
    total = await db.scalar(count_query)

    # Apply sorting and pagination
    query = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    query = query.offset((page - 1) * per_page).limit(per_page)

    result = await db.execute(query)
    logs = result.scalars().all()

    return AuditLogListResponse(
        items=[
            AuditLogResponse(
                id=log.id,
                actor_id=log.actor_id,
                actor_type=log.actor_type.value,
                action=log.action.value,
                target_type=log.target_type,
                target_id=log.target_id,
                metadata=log.action_metadata,
                ip_address=log.ip_address,
                created_at=log.created_at,
            )
            for log in logs
        ],
        total=total or 0,
        page=page,
        per_page=per_page,
        pages=(total + per_page - 1) // per_page if total else 0,
    )


@router.get("/actions")
async def list_audit_actions(
    actor: Actor = Depends(require_admin),
):
    """List all possible audit actions."""
    return {
        "actions": [action.value for action in AuditAction]
    }
